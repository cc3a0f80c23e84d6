"""Exponential backoff for retry policies.

Attempt numbers are 0-indexed (delay after the first failure = attempt 0).
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ExponentialBackoff:
    """Exponential backoff.

    Delay = min(base * (multiplier ^ attempt), max_delay), times a 0.5-1.5x
    factor when jitter is on. Deterministic by default so schedules are
    reproducible.

    Attributes:
        base: Initial delay in seconds (default: 2.0)
        multiplier: Exponential growth factor (default: 2.0)
        max_delay: Cap in seconds (default: uncapped)
        jitter: Randomize around the computed delay (default: False)
    """

    base: float = 2.0
    multiplier: float = 2.0
    max_delay: float = math.inf
    jitter: bool = False

    def delay(self, attempt: int) -> float:
        d = min(self.base * (self.multiplier ** attempt), self.max_delay)
        return d * (0.5 + random.random()) if self.jitter else d
