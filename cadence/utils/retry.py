from __future__ import annotations

import random
import time


def compute_backoff(
    attempt: int,
    base: float = 0.002,
    factor: float = 2.0,
    jitter: float = 0.003,
    cap: float = 0.1,
) -> float:
    """Compute exponential backoff with jitter, in seconds."""
    delay = min(base * factor ** attempt, cap)
    return delay + random.uniform(0, jitter)


def sleep_before_retry(attempt: int) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt)
    time.sleep(delay)
