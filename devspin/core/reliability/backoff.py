"""
Backoff — bounded retry budget with capped exponential delays.

Used by the health check engine between probe attempts. Delays grow
monotonically (no jitter) so polling never tightens as attempts pile up.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class Backoff:
    """Retry budget for one wait.

    Args:
        base_delay: Delay after the first failed attempt.
        max_delay: Upper bound for any single delay.
        max_attempts: Total attempts allowed.
        factor: Growth multiplier between consecutive delays.
    """

    base_delay: float = 0.5
    max_delay: float = 5.0
    max_attempts: int = 30
    factor: float = 2.0

    attempt: int = 0
    started_at: float = field(default_factory=time.monotonic)

    @property
    def exhausted(self) -> bool:
        """Whether all attempts have been used."""
        return self.attempt >= self.max_attempts

    def next_delay(self) -> float:
        """Record an attempt and return the delay before the next one."""
        self.attempt += 1
        delay = min(self.base_delay * (self.factor ** (self.attempt - 1)), self.max_delay)
        logger.debug(
            "Backoff attempt %d/%d, next delay %.2fs",
            self.attempt,
            self.max_attempts,
            delay,
        )
        return delay

    def delays(self) -> list[float]:
        """The full delay schedule, for planning and tests."""
        return [
            min(self.base_delay * (self.factor ** i), self.max_delay)
            for i in range(self.max_attempts)
        ]

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at
