"""
Exponential backoff delays with a cap and jitter.
"""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass, field

DEFAULT_BASE_DELAY = 1.0  # seconds
DEFAULT_MAX_DELAY = 60.0  # seconds
DEFAULT_MAX_ATTEMPTS = 5


@dataclass
class BackoffPolicy:
    """
    Retry timing for one class of operation.

    The delay before retry ``n`` (0-based) is ``base_delay * 2**n`` capped
    at ``max_delay``, then multiplied by a jitter factor in [0.5, 1.5) so
    concurrent workers do not retry in lockstep. The cap applies after
    jitter as well.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay
        jitter: Whether to randomize delays
        rng: Random source, injectable for deterministic tests
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    jitter: bool = True
    rng: Callable[[], float] = field(default=random.random, repr=False)

    def delay(self, retry_number: int) -> float:
        """Seconds to wait before the given retry."""
        delay = min(self.base_delay * (2**retry_number), self.max_delay)
        if self.jitter:
            delay = min(delay * (0.5 + self.rng()), self.max_delay)
        return delay

    def delays(self) -> list[float]:
        """All delays between attempts (one fewer than max_attempts)."""
        return [self.delay(n) for n in range(max(self.max_attempts - 1, 0))]
