"""Backoff arithmetic and a retry helper for idempotent requests."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, TypeVar

from chatsync.errors import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(
    base_interval: float,
    multiplier: float,
    retry_count: int,
    ceiling: int,
    max_delay: float,
) -> float:
    """Delay before the next poll after *retry_count* consecutive failures.

    ``base_interval * multiplier ** retry_count`` with the exponent bounded
    by *ceiling* and the result capped at *max_delay*.
    """
    exponent = max(0, min(retry_count, ceiling))
    return min(base_interval * (multiplier ** exponent), max_delay)


async def retry_with_backoff(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    **kwargs: Any,
) -> T:
    """Call *fn* with retries on transient failures.

    Only errors classified as retryable (network failures and 5xx
    responses) are retried; 4xx responses propagate immediately.  Uses
    exponential back-off with jitter::

        delay = min(base_delay * 2^attempt, max_delay) * uniform(0.5, 1.0)

    Never use this for non-idempotent calls such as sending a message.
    """
    for attempt in range(max_attempts):
        try:
            return await fn(*args, **kwargs)
        except Exception as exc:
            if not is_retryable(exc):
                raise
            if attempt + 1 >= max_attempts:
                logger.error(
                    "All %d retry attempts exhausted for %s: %s",
                    max_attempts,
                    getattr(fn, "__qualname__", fn),
                    exc,
                )
                raise

            delay = min(base_delay * (2 ** attempt), max_delay)
            sleep_time = delay * random.uniform(0.5, 1.0)

            logger.warning(
                "Retry %d/%d for %s after %.1fs (error: %s)",
                attempt + 1,
                max_attempts,
                getattr(fn, "__qualname__", fn),
                sleep_time,
                exc,
            )
            await asyncio.sleep(sleep_time)

    raise ValueError("max_attempts must be at least 1")
