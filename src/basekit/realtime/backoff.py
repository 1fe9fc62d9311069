"""Reconnect delay policy: exponential backoff with jitter."""

from __future__ import annotations

import random
from dataclasses import dataclass, field

# 2 ** 32 * base_delay is already far past any sane max_delay
_MAX_EXPONENT = 32


@dataclass
class Backoff:
    """
    Exponential backoff with symmetric jitter.

    delay(n) = min(max_delay, base_delay * 2**n) +/- jitter * that, clamped to [0, max_delay].
    """
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.5
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self):
        if self.base_delay <= 0 or self.max_delay <= 0:
            raise ValueError("Backoff delays must be positive")
        if not 0 <= self.jitter <= 1:
            raise ValueError("Backoff jitter must be within [0, 1]")

    def compute(self, attempt: int) -> float:
        """Delay in seconds before retry number `attempt` (0-based)."""
        delay = min(self.max_delay, self.base_delay * (2 ** min(attempt, _MAX_EXPONENT)))
        if self.jitter:
            spread = delay * self.jitter
            delay += self.rng.uniform(-spread, spread)
        return max(0.0, min(delay, self.max_delay))
