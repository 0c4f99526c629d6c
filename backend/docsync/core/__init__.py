"""Cross-cutting helpers: retry, logging, clock."""
