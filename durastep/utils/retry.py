from __future__ import annotations

import random
from typing import Optional, Sequence

from ..contracts import RetryPolicy


def compute_backoff(
    attempt: int, interval: float = 1.0, rate: float = 2.0, jitter: float = 0.0
) -> float:
    """Compute exponential backoff for retry ``attempt`` (1-based) with optional jitter."""
    delay = interval * rate ** (attempt - 1)
    return delay + random.uniform(0, jitter) if jitter else delay


def select_policy(
    policies: Sequence[RetryPolicy], exc: BaseException
) -> Optional[RetryPolicy]:
    """Return the first policy covering ``exc``, if any."""
    return next((p for p in policies if p.matches(exc)), None)


def retry_delay(
    policies: Sequence[RetryPolicy], exc: BaseException, retries_so_far: int
) -> Optional[float]:
    """Delay before the next retry of ``exc``, or ``None`` once retries are exhausted."""
    policy = select_policy(policies, exc)
    if policy is None or retries_so_far >= policy.max_attempts:
        return None
    return compute_backoff(
        retries_so_far + 1, policy.interval_seconds, policy.backoff_rate
    )
