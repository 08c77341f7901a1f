"""Bounded retry with exponential backoff."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def exponential_backoff(base: float, maximum: float) -> Callable[[int], float]:
    """Delay before retry ``attempt`` (0-based): base * 2**attempt, capped at maximum."""

    def _delay(attempt: int) -> float:
        return min(base * 2**attempt, maximum)

    return _delay


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    backoff: Callable[[int], float],
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Await ``operation()`` up to ``attempts`` times, sleeping between failures.

    The last failure is re-raised unchanged. Cancellation is never retried.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    for attempt in range(attempts):
        try:
            return await operation()
        except Exception as exc:  # noqa: BLE001
            if attempt == attempts - 1:
                raise
            delay = backoff(attempt)
            logger.debug("Attempt %d/%d failed (%s); retrying in %.2fs", attempt + 1, attempts, exc, delay)
            await sleep(delay)
    raise AssertionError("unreachable")
