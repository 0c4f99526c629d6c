"""Logging setup with contextual key=value records."""

import logging
import sys
from typing import Any

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s%(context)s"


class ContextFilter(logging.Filter):
    """Render the ``context`` extra as a trailing ``key=value`` suffix."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = getattr(record, "context", None)
        if isinstance(context, dict) and context:
            rendered = " ".join(f"{k}={v}" for k, v in context.items() if v is not None)
            record.context = f" | {rendered}" if rendered else ""
        elif not isinstance(context, str):
            record.context = ""
        return True


class ContextAdapter(logging.LoggerAdapter):
    """Logger adapter that merges bound context into every record.

    Extra keyword context passed per call via ``extra={"context": {...}}`` is
    merged on top of the bound context.
    """

    def process(self, msg: str, kwargs: Any) -> tuple[str, Any]:
        extra = kwargs.setdefault("extra", {})
        merged = dict(self.extra or {})
        call_context = extra.get("context")
        if isinstance(call_context, dict):
            merged.update(call_context)
        extra["context"] = merged
        return msg, kwargs

    def bind(self, **context: Any) -> "ContextAdapter":
        merged = dict(self.extra or {})
        merged.update(context)
        return ContextAdapter(self.logger, merged)


def get_logger(name: str, **context: Any) -> ContextAdapter:
    """Get a logger carrying ``context`` (project_id, run_id, path, ...)."""
    return ContextAdapter(logging.getLogger(name), context)


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_docsync", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler._docsync = True  # type: ignore[attr-defined]
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(ContextFilter())
    root.addHandler(handler)
    root.setLevel(level.upper())

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
