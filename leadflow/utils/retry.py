from __future__ import annotations

import random
from datetime import datetime, timedelta


def compute_backoff(attempt: int, base: float = 2.0, jitter: float = 0.5) -> float:
    """Compute exponential backoff in seconds with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


def retry_at(now: datetime, attempt: int, base: float = 2.0, jitter: float = 0.5) -> datetime:
    """Earliest time a failed step may be attempted again."""
    return now + timedelta(seconds=compute_backoff(attempt, base, jitter))
