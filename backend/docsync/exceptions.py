"""Error taxonomy for the synchronization pipeline."""

import re
from enum import Enum
from typing import Any

_TOKEN_PATTERNS = (
    (re.compile(r"gh[pousr]_[A-Za-z0-9]+"), "[REDACTED]"),
    (re.compile(r"github_pat_[A-Za-z0-9_]+"), "[REDACTED]"),
    (re.compile(r"(?i)(bearer)\s+[A-Za-z0-9._\-]+"), r"\1 [REDACTED]"),
    (re.compile(r"x-access-token:[^@]+@"), "x-access-token:[REDACTED]@"),
)


def sanitize_message(message: str) -> str:
    """Remove access tokens from an error message."""
    for pattern, replacement in _TOKEN_PATTERNS:
        message = pattern.sub(replacement, message)
    return message


class ErrorKind(str, Enum):
    TRANSIENT_EXTERNAL = "transient_external"
    LOCK_CONTENTION = "lock_contention"
    PARTIAL_FILE_FAILURE = "partial_file_failure"
    RUN_FAILURE = "run_failure"
    QUEUE_EXHAUSTED = "queue_exhausted"


class SyncError(Exception):
    """Base error carrying a kind and a structured context map."""

    kind: ErrorKind = ErrorKind.RUN_FAILURE

    def __init__(self, message: str, kind: ErrorKind | None = None, **context: Any):
        self.message = sanitize_message(message)
        if kind is not None:
            self.kind = kind
        self.context = {k: v for k, v in context.items() if v is not None}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "context": {k: _jsonable(v) for k, v in self.context.items()},
        }

    @classmethod
    def from_exception(cls, exc: BaseException, **context: Any) -> "SyncError":
        """Wrap an arbitrary exception, keeping an existing SyncError's kind."""
        if isinstance(exc, SyncError):
            merged = {**context, **exc.context}
            return SyncError(exc.message, kind=exc.kind, **merged)
        return cls(f"{type(exc).__name__}: {exc}", **context)


class TransientExternalError(SyncError):
    """Network, rate-limit or 5xx failure from an external API."""

    kind = ErrorKind.TRANSIENT_EXTERNAL


class LockContentionError(SyncError):
    """The job lock could not be claimed after all fallbacks."""

    kind = ErrorKind.LOCK_CONTENTION


class FileSyncError(SyncError):
    """A single file failed to synchronize."""

    kind = ErrorKind.PARTIAL_FILE_FAILURE


class RunFailedError(SyncError):
    """An ingestion run failed and was marked ``failed``."""

    kind = ErrorKind.RUN_FAILURE


class QueueExhaustedError(SyncError):
    """A webhook job exceeded its retry budget."""

    kind = ErrorKind.QUEUE_EXHAUSTED


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return str(value)
