"""
Bounded retry with exponential backoff for gateway calls.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from app.core.exceptions import TransientGatewayError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff_seconds(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    # exponential backoff with jitter
    exp = min(cap, base * (2 ** max(0, attempt - 1)))
    jitter = random.uniform(0, exp / 3)
    return min(cap, exp + jitter)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    description: str,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retry_if: Optional[Callable[[TransientGatewayError], bool]] = None,
) -> T:
    """
    Run ``operation`` and retry it on TransientGatewayError.

    ``retry_if`` narrows which transient errors are retried; anything it
    rejects is raised immediately. Permanent errors are never retried.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except TransientGatewayError as e:
            if retry_if is not None and not retry_if(e):
                raise
            if attempt >= max_attempts:
                logger.warning("%s failed after %s attempts: %s", description, attempt, e)
                raise
            delay = compute_backoff_seconds(attempt, base=base_delay, cap=max_delay)
            logger.info("%s transient failure (attempt %s/%s), retrying in %.1fs: %s",
                        description, attempt, max_attempts, delay, e)
            await asyncio.sleep(delay)
