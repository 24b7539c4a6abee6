# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Retry Policy - Bounded exponential backoff for upload attempts.
"""

import random
from dataclasses import dataclass

from medialife.upload.classifier import ErrorCategory, is_retryable

# 2**63 seconds is already far beyond any sane clamp
_MAX_EXPONENT = 63


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff: base_delay * 2^(attempt-1), clamped to max_delay.

    With jitter > 0, up to ``jitter * delay`` is added before clamping, so
    the clamp still bounds every wait.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_delay < 0:
            raise ValueError(f"base_delay must be >= 0, got {self.base_delay}")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if not 0 <= self.jitter <= 1:
            raise ValueError(f"jitter must be within [0, 1], got {self.jitter}")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def compute_delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """
        Delay in seconds to wait after the given failed attempt.

        Args:
            attempt: 1-based number of the attempt that just failed
            rng: Optional random source for jitter (tests pass a seeded one)

        Returns:
            Seconds to sleep before the next attempt
        """
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")

        delay = self.base_delay * (2 ** min(attempt - 1, _MAX_EXPONENT))
        if self.jitter:
            source = rng if rng is not None else random
            delay += source.random() * self.jitter * delay
        return min(delay, self.max_delay)

    def should_retry(self, attempt: int, category: ErrorCategory) -> bool:
        """Return True if another attempt is allowed after ``attempt`` failed."""
        return is_retryable(category) and attempt < self.max_attempts
