from typing import Any, Awaitable, Callable, Optional, TypeVar
import asyncio
import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

NON_RETRYABLE_STATUSES = frozenset({400})


def is_retryable(error: BaseException) -> bool:
    """Client errors are final; transport failures and server errors are retried"""
    return getattr(error, "status", None) not in NON_RETRYABLE_STATUSES


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    retries: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None
) -> T:
    """
    Call fn until it succeeds, at most retries + 1 times

    Delays double after every failed attempt, starting at base_delay.
    The last error is re-raised once retries are exhausted.
    """

    delay = base_delay
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except Exception as e:
            if attempt > retries or not is_retryable(e):
                raise
            if on_retry is not None:
                on_retry(attempt, e, delay)
            logger.debug("Retrying after failure", attempt=attempt, delay=delay, error=str(e))
            await sleep(delay)
            delay *= 2
