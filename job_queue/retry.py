"""
Retry backoff policy.

  linear       delay = base × attempts                      (default)
  exponential  delay = uniform(0, base × 2^(attempts-1))    (full jitter)

Both are capped at ``max_delay``. Delays are always pushed forward in time;
a failed job never becomes eligible immediately.
"""
from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable

from config.settings import QueueConfig


@dataclass
class RetryPolicy:
    base_delay: float = 60.0
    max_delay: float = 3600.0
    strategy: str = "linear"
    # Floor for jittered delays so a retry is never instant.
    min_delay: float = 1.0
    rand: Callable[[], float] = field(default=random.random, repr=False)

    @classmethod
    def from_config(cls, config: QueueConfig) -> "RetryPolicy":
        return cls(
            base_delay=config.retry_delay_seconds,
            max_delay=config.retry_delay_max_seconds,
            strategy=config.backoff,
        )

    def delay_for(self, attempts: int) -> timedelta:
        """Delay before the next try, given failures recorded so far (>= 1)."""
        attempts = max(1, attempts)
        if self.strategy == "exponential":
            ceiling = min(self.max_delay, self.base_delay * (2 ** (attempts - 1)))
            seconds = max(self.min_delay, ceiling * self.rand())
        else:
            seconds = min(self.max_delay, self.base_delay * attempts)
        return timedelta(seconds=seconds)
