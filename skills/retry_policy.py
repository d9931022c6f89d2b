"""Per-step retry delay schedule."""

from __future__ import annotations

import random

from .config import SkillEngineConfig
from .schema import Backoff, OnError, SkillStep


def backoff_multiplier(mode: Backoff, attempt: int) -> int:
    """Multiplier applied to the base delay before retry number *attempt*.

    Args:
        mode: Backoff growth mode.
        attempt: One-based retry number (1 = first retry).

    Returns:
        ``1`` for constant, ``attempt`` for linear, ``2^(attempt-1)`` for
        exponential.
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    if mode is Backoff.LINEAR:
        return attempt
    if mode is Backoff.EXPONENTIAL:
        return 2 ** (attempt - 1)
    return 1


class RetryPolicy:
    """Compute wait times between attempts of a retrying step.

    delay for retry *n* (1-indexed):
        ``min(retry_delay_ms × multiplier(n), max_retry_delay_ms) × (1 ± jitter)``
    """

    def __init__(self, config: SkillEngineConfig) -> None:
        self.max_delay_ms = config.max_retry_delay_ms
        self.jitter = config.retry_jitter

    def max_attempts(self, step: SkillStep) -> int:
        """Total dispatches allowed for *step* (first attempt plus retries)."""
        return step.retry_count + 1 if step.on_error is OnError.RETRY else 1

    def delay_ms(self, step: SkillStep, attempt: int) -> float:
        """Return the wait in milliseconds before retry number *attempt*."""
        delay = step.retry_delay_ms * backoff_multiplier(step.retry_backoff, attempt)
        delay = min(delay, self.max_delay_ms)
        if self.jitter:
            delay *= 1.0 + random.uniform(-self.jitter, self.jitter)
        return max(0.0, float(delay))
