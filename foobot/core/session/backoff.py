from __future__ import annotations

import random
from dataclasses import dataclass

# 2**62 already exceeds any sane cap; keeps the float math finite.
_MAX_EXPONENT = 62


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Capped exponential reconnect delay with multiplicative jitter.

    delay(n) = min(maximum, min(maximum, base * 2**(n-1)) * (1 + jitter * U))
    with U uniform in [0, 1). Because `jitter` is at most 1, each uncapped
    step at least matches the previous jittered delay, so delays never
    decrease as `n` grows and never exceed `maximum`.
    """

    base: float = 1.0
    maximum: float = 300.0
    jitter: float = 0.2

    def __post_init__(self) -> None:
        if self.base < 0:
            raise ValueError("base must be non-negative")
        if self.maximum < self.base:
            raise ValueError("maximum must be >= base")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be within [0, 1]")

    def raw_delay(self, attempt: int) -> float:
        exponent = min(max(attempt, 1) - 1, _MAX_EXPONENT)
        return min(self.maximum, self.base * (2.0 ** exponent))

    def delay(self, attempt: int, rng: random.Random) -> float:
        raw = self.raw_delay(attempt)
        return min(self.maximum, raw * (1.0 + self.jitter * rng.random()))
