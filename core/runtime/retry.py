"""
Retry policy — bounded attempts with capped exponential backoff.

    delay(attempt) = min(base_delay * 2 ** attempt, max_delay)

`attempt` is the zero-based index of the attempt that just failed, so the
first retry waits `base_delay`. Optional jitter scales the delay by a
random factor in [1 - jitter, 1 + jitter].
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from core.exceptions import ConfigurationError


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.0  # 0.0 disables jitter

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError(
                "max_attempts must be at least 1", setting="max_attempts"
            )
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigurationError(
                "backoff delays must not be negative", setting="base_delay"
            )
        if not 0.0 <= self.jitter <= 1.0:
            raise ConfigurationError(
                "jitter must be between 0.0 and 1.0", setting="jitter"
            )

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        if self.jitter:
            delay *= random.uniform(1.0 - self.jitter, 1.0 + self.jitter)
        return delay

    def has_attempts_left(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts
