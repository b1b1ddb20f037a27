from __future__ import annotations

import asyncio

from ..contracts import RetryPolicy


def compute_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Compute capped exponential backoff in seconds for a zero-based attempt."""
    delay_ms = policy.initial_delay_ms * policy.backoff_multiplier**attempt
    return min(delay_ms, policy.max_delay_ms) / 1000.0


async def schedule_retry(attempt: int, policy: RetryPolicy) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, policy)
    await asyncio.sleep(delay)
