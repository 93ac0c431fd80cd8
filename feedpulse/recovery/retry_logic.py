"""
FeedPulse Retry Backoff
=======================

Exponential backoff with jitter for feeds whose polls fail transiently.
The policy only computes delays; the scheduler owns the failure counter and
decides when a delay applies.
"""

import random
from dataclasses import dataclass
from typing import Optional

from ..config.settings import PollingSettings

# 2 ** 63 already exceeds any sensible cap
_MAX_EXPONENT = 63


@dataclass
class BackoffPolicy:
    """Configuration for retry delays."""
    base_delay: float = 60.0                # First retry delay in seconds
    max_delay: float = 3600.0               # Upper bound on any delay
    jitter: float = 0.1                     # Relative jitter, 0.1 means +/-10%
    exponential_base: float = 2.0           # Growth factor per failure

    @classmethod
    def from_settings(cls, settings: PollingSettings) -> "BackoffPolicy":
        return cls(
            base_delay=settings.backoff_base_seconds,
            max_delay=settings.backoff_max_seconds,
            jitter=settings.backoff_jitter,
        )

    def raw_delay(self, failure_count: int) -> float:
        """Delay before jitter: min(base * growth^(n-1), cap)."""
        exponent = min(max(failure_count, 1) - 1, _MAX_EXPONENT)
        return min(self.base_delay * (self.exponential_base ** exponent), self.max_delay)

    def calculate_delay(
        self,
        failure_count: int,
        retry_after: Optional[float] = None,
        rng: Optional[random.Random] = None,
    ) -> float:
        """Calculate the delay before the next attempt.

        Args:
            failure_count: Consecutive failures so far, at least 1
            retry_after: Server-requested minimum delay in seconds
            rng: Random source for jitter (module random if omitted)

        Returns:
            Delay in seconds, never above the cap unless the server asked
            for longer
        """
        delay = self.raw_delay(failure_count)

        if self.jitter:
            uniform = rng.uniform if rng is not None else random.uniform
            jitter_amount = delay * self.jitter
            delay = min(delay + uniform(-jitter_amount, jitter_amount), self.max_delay)

        if retry_after is not None and retry_after > delay:
            delay = retry_after

        return max(0.0, delay)
