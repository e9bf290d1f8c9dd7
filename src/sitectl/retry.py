"""Retry with exponential backoff for transient failures."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bound on a single backoff sleep
MAX_BACKOFF_SECONDS = 30.0


def backoff_seconds(attempt: int, base_seconds: float) -> float:
    """Exponential backoff with up to 20% jitter for the given 1-based attempt."""
    backoff = min(base_seconds * (2 ** (attempt - 1)), MAX_BACKOFF_SECONDS)
    jitter = random.uniform(0, backoff * 0.2)
    return backoff + jitter


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    backoff_base_seconds: float,
    retry_on: tuple[type[BaseException], ...],
    description: str = "operation",
) -> T:
    """Run `operation` until it succeeds or `attempts` are used up.

    Only exceptions listed in `retry_on` are retried; anything else
    propagates immediately. The last error is re-raised when every attempt
    fails.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    last_error: BaseException | None = None

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            last_error = e

            if attempt < attempts:
                wait_time = backoff_seconds(attempt, backoff_base_seconds)
                logger.warning(
                    f"{description} failed, retrying",
                    extra={
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "wait_seconds": round(wait_time, 2),
                        "error": str(e),
                    },
                )
                await asyncio.sleep(wait_time)

    # Loop runs at least once, so last_error is set here
    assert last_error is not None, "Retry loop completed without setting last_error"
    raise last_error
