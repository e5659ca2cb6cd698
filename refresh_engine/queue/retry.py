"""
Market Brain — Retry Policy
─────────────────────────────
How long a failed job waits before its retry becomes claimable.

  transient       exponential with full jitter:
                  uniform(0, min(max_delay, base * 2^(attempt-1)))
  stale_data      fixed delay (give the provider's cache time to roll)
  quota_exceeded  until the next UTC midnight
  anything else   not retried
"""

import random
from dataclasses import dataclass
from typing import Callable, Optional

from refresh_engine.config import Settings
from refresh_engine.errors import QuotaExceeded, RefreshError, StalenessViolation
from refresh_engine.quota.ledger import seconds_until_reset


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts:            int   = 3
    base_delay_s:            float = 30.0
    max_delay_s:             float = 900.0
    staleness_retry_delay_s: float = 300.0

    @classmethod
    def from_settings(cls, s: Settings) -> "RetryPolicy":
        return cls(
            max_attempts            = s.max_attempts,
            base_delay_s            = s.retry_base_delay_s,
            max_delay_s             = s.retry_max_delay_s,
            staleness_retry_delay_s = s.staleness_retry_delay_s,
        )

    def should_retry(self, attempt: int, retryable: bool = True) -> bool:
        return retryable and attempt < self.max_attempts

    def backoff(self, attempt: int, rand: Callable[[float, float], float] = random.uniform) -> float:
        capped = min(self.base_delay_s * (2 ** (max(attempt, 1) - 1)), self.max_delay_s)
        return rand(0, capped)

    def delay_for(self, error: Optional[Exception], attempt: int, now: Optional[float] = None) -> float:
        if isinstance(error, QuotaExceeded):
            return seconds_until_reset(now)
        if isinstance(error, StalenessViolation):
            return self.staleness_retry_delay_s
        if isinstance(error, RefreshError) and error.retryable:
            return self.backoff(attempt)
        return 0.0
