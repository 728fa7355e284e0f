"""Backoff between processing attempts of a queue item.

The attempt *count* is bounded by the item's ``max_attempts``. A strategy
only decides how long a failed item rests before it can be claimed
again. Only transient failures reach the queue; fatal ones fail the
execution inside the turn.

Usage:
    strategy = RetryStrategy.from_settings(get_settings())
    item.available_at = strategy.next_available_at(attempt=2)
"""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from core.utils import utc_now


class RetryPolicy(str, Enum):
    NONE = "none"
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class RetryStrategy:
    policy: RetryPolicy
    base_delay: float = 30.0
    max_delay: float = 900.0
    jitter: float = 0.0  # fraction of the delay, applied as +/-

    @classmethod
    def none(cls) -> "RetryStrategy":
        """Every failure dead-letters the item."""
        return cls(RetryPolicy.NONE, base_delay=0.0)

    @classmethod
    def fixed(cls, delay: float = 30.0) -> "RetryStrategy":
        return cls(RetryPolicy.FIXED, base_delay=delay, max_delay=delay)

    @classmethod
    def linear(cls, base_delay: float = 30.0, max_delay: float = 600.0) -> "RetryStrategy":
        return cls(RetryPolicy.LINEAR, base_delay=base_delay, max_delay=max_delay)

    @classmethod
    def exponential(
        cls,
        base_delay: float = 30.0,
        max_delay: float = 900.0,
        jitter: float = 0.25,
    ) -> "RetryStrategy":
        return cls(RetryPolicy.EXPONENTIAL, base_delay=base_delay, max_delay=max_delay, jitter=jitter)

    @classmethod
    def from_settings(cls, settings) -> "RetryStrategy":
        """Build from ``WORKFLOW_RETRY_*`` settings.

        Raises:
            ValueError: unknown WORKFLOW_RETRY_POLICY
        """
        policy = RetryPolicy(settings.WORKFLOW_RETRY_POLICY.strip().lower())
        base = float(settings.WORKFLOW_RETRY_BASE_DELAY)
        cap = float(settings.WORKFLOW_RETRY_MAX_DELAY)
        if policy == RetryPolicy.NONE:
            return cls.none()
        if policy == RetryPolicy.FIXED:
            return cls.fixed(base)
        if policy == RetryPolicy.LINEAR:
            return cls.linear(base, cap)
        return cls.exponential(base, cap)

    def compute_delay(self, attempt: int) -> float:
        """Seconds to wait after the ``attempt``-th failure (1-based)."""
        if self.policy == RetryPolicy.NONE:
            return 0.0
        if self.policy == RetryPolicy.EXPONENTIAL:
            delay = self.base_delay * (2 ** max(attempt - 1, 0))
        elif self.policy == RetryPolicy.LINEAR:
            delay = self.base_delay * max(attempt, 1)
        else:
            delay = self.base_delay
        delay = min(delay, self.max_delay)

        if self.jitter and delay > 0:
            spread = delay * self.jitter
            delay = max(0.0, delay + random.uniform(-spread, spread))
        return round(delay, 3)

    def next_available_at(self, attempt: int, now: Optional[datetime] = None) -> datetime:
        return (now or utc_now()) + timedelta(seconds=self.compute_delay(attempt))

    def should_retry(self, attempts: int, max_attempts: int) -> bool:
        """Another claim is allowed below ``max_attempts`` unless the policy is ``none``."""
        return self.policy != RetryPolicy.NONE and attempts < max_attempts
