"""Bounded exponential-backoff retry for async operations."""

import logging
from typing import Awaitable, Callable, TypeVar

import httpx
import tenacity

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 429: rate limit; 5xx: server errors
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def is_retryable_http_error(exc: BaseException) -> bool:
    """Transport errors and 429/5xx responses are worth retrying."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return False


async def with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retry_if: Callable[[BaseException], bool] | None = None,
    description: str = "operation",
) -> T:
    """Run ``operation`` with up to ``attempts`` tries.

    Waits ``base_delay * 2**n`` seconds (capped at ``max_delay``) between
    tries. The final error is re-raised unchanged. Errors rejected by
    ``retry_if`` propagate immediately.

    Args:
        operation: Zero-argument coroutine function
        attempts: Total number of attempts (>= 1)
        base_delay: First delay in seconds
        max_delay: Upper bound for a single delay
        retry_if: Predicate selecting retryable errors (default: all)
        description: Name used in retry log lines

    Returns:
        The operation's result
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    def _log_retry(retry_state: tenacity.RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"[RETRY] {description} attempt {retry_state.attempt_number}/{attempts} "
            f"failed: {type(exc).__name__}: {exc}"
        )

    predicate = retry_if or (lambda exc: True)

    retrying = tenacity.AsyncRetrying(
        stop=tenacity.stop_after_attempt(attempts),
        wait=tenacity.wait_exponential(multiplier=base_delay, min=0, max=max_delay),
        retry=tenacity.retry_if_exception(predicate),
        before_sleep=_log_retry,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await operation()
    raise AssertionError("unreachable")  # pragma: no cover
