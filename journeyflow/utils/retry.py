from __future__ import annotations

import random


def compute_backoff(attempt: int, base: float = 2.0, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter, in seconds."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


def backoff_ms(attempt: int, base: float = 2.0, jitter: float = 0.5) -> int:
    """Backoff expressed as a transport delivery delay."""
    return int(compute_backoff(attempt, base, jitter) * 1000)
