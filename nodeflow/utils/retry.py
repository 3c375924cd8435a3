from __future__ import annotations

import asyncio
import random


def compute_backoff(
    attempt: int, base_delay: float = 1.0, factor: float = 2.0, jitter: float = 0.0
) -> float:
    """Compute exponential backoff for the given 1-based retry attempt."""
    if base_delay <= 0:
        return 0.0
    delay = base_delay * factor ** max(attempt - 1, 0)
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base_delay: float = 1.0) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base_delay=base_delay)
    if delay > 0:
        await asyncio.sleep(delay)
