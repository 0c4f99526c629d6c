"""Split document text into overlapping fixed-size windows."""

from dataclasses import dataclass

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_CHUNK_OVERLAP = 200
DEFAULT_MAX_CHUNKS = 10000


@dataclass(frozen=True)
class Chunk:
    """A window of a file's text."""

    content: str
    path: str
    chunk_index: int


def chunk_text(
    content: str,
    path: str,
    size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
    max_chunks: int = DEFAULT_MAX_CHUNKS,
) -> list[Chunk]:
    """Split ``content`` into windows of ``size`` characters.

    Consecutive windows share ``overlap`` characters. When the next start
    would not move past the current one the cursor advances by a single
    character, so the loop always terminates.

    Args:
        content: Full file text
        path: File path recorded on every chunk
        size: Window length in characters
        overlap: Characters shared between consecutive windows
        max_chunks: Upper bound on the number of chunks

    Returns:
        Chunks with ``chunk_index`` 0..n-1 in order
    """
    if size <= 0:
        raise ValueError("size must be positive")
    if overlap < 0:
        raise ValueError("overlap must not be negative")
    if not content:
        return []

    chunks: list[Chunk] = []
    length = len(content)
    start = 0

    while start < length and len(chunks) < max_chunks:
        end = min(start + size, length)
        chunks.append(Chunk(content=content[start:end], path=path, chunk_index=len(chunks)))
        if end >= length:
            break

        next_start = end - overlap
        start = next_start if next_start > start else start + 1

    return chunks
