from __future__ import annotations

import random


def compute_backoff(attempt: int, base: float = 0.1, jitter: float = 1.0) -> float:
    """Compute exponential backoff with jitter, in seconds."""
    delay = base * (2**attempt)
    return delay + random.uniform(0, jitter)


def compute_keepalive_delay(interval: float) -> float:
    """Keep-alive pacing: 90% to 110% of ``interval``."""
    return interval * 0.9 + random.random() * interval * 0.2
