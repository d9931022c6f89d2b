"""Frozen-dataclass configuration for the hypothesis tree engine."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class HypothesisTreeConfig:
    """Depth limit and confidence scoring constants.

    All values carry sensible defaults.  Override via constructor kwargs.
    """

    # ---- Tree shape ------------------------------------------------------
    max_depth: int = 4

    # ---- Confidence scoring ----------------------------------------------
    strong_base_score: int = 70
    weak_base_score: int = 35
    corroboration_bonus: int = 5
    corroboration_cap: int = 95
    refutation_penalty: int = 10

    def __post_init__(self) -> None:
        """Validate invariants at construction time."""
        if self.max_depth < 0:
            raise ValueError("max_depth must be >= 0")
        if not 0 <= self.weak_base_score <= self.strong_base_score <= 100:
            raise ValueError("base scores must satisfy 0 <= weak <= strong <= 100")
        if not self.strong_base_score <= self.corroboration_cap <= 100:
            raise ValueError("corroboration_cap must lie in [strong_base_score, 100]")
        if self.corroboration_bonus < 0 or self.refutation_penalty < 0:
            raise ValueError("bonus and penalty must be >= 0")
