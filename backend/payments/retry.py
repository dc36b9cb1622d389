"""Bounded exponential-backoff retry for async operations."""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from payments.errors import Exhausted, TransientStorageError

T = TypeVar("T")


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    retry_on: tuple[type[BaseException], ...] = (TransientStorageError,),
    logger=None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run operation up to `attempts` times, sleeping base_delay * 2**(n-1)
    after the n-th failure. Only `retry_on` errors are retried; anything
    else propagates immediately. Raises Exhausted once every attempt has failed.
    """
    log = logger or structlog.get_logger().bind(component="retry")
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            last_error = e
            if attempt >= attempts:
                break
            delay = base_delay * (2 ** (attempt - 1))
            log.warning("retry_scheduled",
                        attempt=attempt,
                        max_attempts=attempts,
                        delay_seconds=delay,
                        error=str(e),
                        error_type=type(e).__name__)
            await sleep(delay)

    log.error("retry_exhausted", attempts=attempts, error=str(last_error))
    raise Exhausted(last_error, attempts)
