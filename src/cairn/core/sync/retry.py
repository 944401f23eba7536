"""
Bounded exponential backoff with jitter.

Used between sync attempts after a rejected push or a failed transport
call. The delay before retry `n` (0-based) is

    min(base * 2**n, cap) * uniform(1 - jitter, 1 + jitter)

so concurrent writers that collided once spread out on the next try.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from cairn.core.config.models import SyncConfig

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """
    Backoff schedule for sync attempts.

    Attributes:
        max_attempts: Total attempts, including the first
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound on a single delay, in seconds
        jitter: Relative jitter applied to each delay
        sleep: Sleep function (replaced in tests)
        rng: Random source for jitter
    """

    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 30.0
    jitter: float = 0.25
    sleep: Callable[[float], None] = time.sleep
    rng: random.Random = field(default_factory=random.Random)

    @classmethod
    def from_config(cls, config: SyncConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay_seconds,
            max_delay=config.max_delay_seconds,
            jitter=config.jitter,
        )

    def delay(self, retry: int) -> float:
        """Delay in seconds before retry number `retry` (0-based)."""
        capped = min(self.base_delay * (2**retry), self.max_delay)
        return capped * self.rng.uniform(1 - self.jitter, 1 + self.jitter)

    def backoff(self, retry: int) -> float:
        """Sleep before retry number `retry`; returns the delay used."""
        delay = self.delay(retry)
        logger.warning(
            "Sync attempt %d of %d failed, retrying in %.2fs",
            retry + 1,
            self.max_attempts,
            delay,
        )
        self.sleep(delay)
        return delay
