import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from typing_extensions import Protocol

T = TypeVar("T")

_TRANSIENT_MARKERS = (
    "port is already allocated",
    "address already in use",
    "bind",
    "read timed out",
    "timed out",
    "timeout",
    "connection reset",
    "conflict",
)


class _AsyncCallable(Protocol[T]):
    def __call__(self) -> Awaitable[T]: ...


def is_transient_error(exc: BaseException) -> bool:
    """Identify start failures caused by port/resource contention or daemon load."""
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def backoff_delay(attempt: int, *, backoff_s: float, max_backoff_s: float = 30.0, jitter_s: float = 0.0) -> float:
    """Exponential backoff for the given 1-based attempt number."""
    delay = min(max_backoff_s, backoff_s * (2 ** (attempt - 1)))
    if jitter_s > 0:
        delay += random.uniform(0, jitter_s)
    return delay


async def call_with_retries(
    func: _AsyncCallable[T],
    *,
    attempts: int = 3,
    backoff_s: float = 1.0,
    should_retry: Callable[[BaseException], bool] = is_transient_error,
    on_retry: Callable[[int, BaseException], Awaitable[None]] | None = None,
    logger: logging.Logger | None = None,
) -> T:
    """Call an async function, retrying failures that ``should_retry`` accepts."""
    log = logger or logging.getLogger(__name__)
    attempts = max(attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except Exception as exc:  # noqa: BLE001
            if attempt >= attempts or not should_retry(exc):
                raise
            delay = backoff_delay(attempt, backoff_s=backoff_s)
            log.warning(
                "Retryable error (attempt %d/%d): %s (sleep %.2fs)",
                attempt,
                attempts,
                exc,
                delay,
            )
            if on_retry is not None:
                await on_retry(attempt, exc)
            await asyncio.sleep(delay)
    raise RuntimeError("call_with_retries exhausted attempts without a result")
