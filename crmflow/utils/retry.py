from __future__ import annotations

import random
from typing import Optional


def compute_backoff(
    attempt: int,
    initial: float = 60.0,
    base: float = 2.0,
    jitter: float = 0.1,
    rng: Optional[random.Random] = None,
) -> float:
    """Compute exponential backoff with jitter.

    ``attempt`` starts at 1; ``jitter`` is a fraction of the computed delay.
    """
    delay = initial * base ** max(attempt - 1, 0)
    return delay + (rng or random).uniform(0, jitter * delay)
