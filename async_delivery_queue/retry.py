"""Retry scheduling for failed delivery attempts."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Callable, Optional

DEFAULT_BACKOFF_BASE = 5.0  # seconds
DEFAULT_BACKOFF_CAP = 600.0  # 10 minutes
DEFAULT_JITTER_FRACTION = 0.3


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with multiplicative jitter.

    ``delay(n) = min(cap, base * 2 ** (n - 1)) * (1 + jitter_fraction * random())``

    where ``n`` is the number of attempts made so far (1 after the first
    failure).
    """

    base: float = DEFAULT_BACKOFF_BASE
    cap: float = DEFAULT_BACKOFF_CAP
    jitter_fraction: float = DEFAULT_JITTER_FRACTION

    def __post_init__(self) -> None:
        if self.base <= 0:
            raise ValueError("backoff base must be positive")
        if self.cap < self.base:
            raise ValueError("backoff cap must be greater than or equal to base")
        if self.jitter_fraction < 0:
            raise ValueError("jitter fraction must not be negative")

    def raw_delay(self, attempt_count: int) -> float:
        """Return the capped delay before jitter."""
        # 2 ** 30 times any sane base is far above the cap already.
        exponent = min(max(0, int(attempt_count) - 1), 30)
        return min(self.cap, self.base * (2 ** exponent))

    def delay(self, attempt_count: int, rand: Optional[Callable[[], float]] = None) -> float:
        """Return the jittered delay in seconds; always strictly positive."""
        sample = (rand or random.random)()
        return self.raw_delay(attempt_count) * (1 + self.jitter_fraction * sample)
