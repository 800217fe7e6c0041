import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from core.exceptions import RateLimitError, RetryableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay_seconds: float) -> float:
    """Delay before retry number ``attempt`` (1-based): base * 2**(attempt-1)."""
    return base_delay_seconds * (2 ** (attempt - 1))


async def with_exponential_backoff(
    operation: Callable[[], Awaitable[T]],
    retries: int = 3,
    base_delay_seconds: float = 1.0,
    on_retry: Optional[Callable[[int, float, Exception], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` up to ``retries`` times.

    Only RetryableError is retried; anything else propagates on the first
    failure. After the last attempt the final RetryableError is re-raised
    unchanged so callers can still classify it.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except RetryableError as exc:
            attempt += 1
            if attempt >= retries:
                raise
            delay = backoff_delay(attempt, base_delay_seconds)
            if isinstance(exc, RateLimitError) and exc.retry_after:
                delay = max(delay, float(exc.retry_after))
            if on_retry:
                on_retry(attempt, delay, exc)
            else:
                logger.warning(
                    f"Attempt {attempt}/{retries} failed ({exc.message}). "
                    f"Retrying in {delay:.2f}s"
                )
            await sleep(delay)
