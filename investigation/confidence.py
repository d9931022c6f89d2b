"""Deterministic confidence scoring for hypotheses.

Score for one testing pass of a hypothesis::

    base(strength)                      strong 70 / weak 35 / none 0
  + bonus × corroborating strong signals beyond the first   (capped)
  − penalty × refuting signals
    clamped to [0, 100]

Corroborating signals are additional strong supporting results on the
hypothesis itself plus ancestors that hold strong evidence, so a deep,
well-supported chain scores higher than an isolated claim.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from .config import HypothesisTreeConfig
from .schema import EvidenceQuery, EvidenceStrength


def strongest(classifications: Iterable[EvidenceStrength]) -> EvidenceStrength:
    """Return the strongest classification in *classifications* (``none`` if empty)."""
    best = EvidenceStrength.NONE
    for c in classifications:
        if c.rank > best.rank:
            best = c
    return best


def score_confidence(
    queries: Sequence[EvidenceQuery],
    strong_ancestors: int = 0,
    config: HypothesisTreeConfig | None = None,
) -> int:
    """Compute a 0-100 confidence from an evidence history.

    Args:
        queries: Evidence entries of the current testing pass.
        strong_ancestors: Number of ancestors holding strong evidence.
        config: Scoring constants.

    Returns:
        Integer confidence in ``[0, 100]``.
    """
    cfg = config or HypothesisTreeConfig()
    supporting = [q for q in queries if not q.refutes]
    refuting = sum(1 for q in queries if q.refutes)

    strength = strongest(q.classification for q in supporting)
    if strength is EvidenceStrength.STRONG:
        score = cfg.strong_base_score
    elif strength is EvidenceStrength.WEAK:
        score = cfg.weak_base_score
    else:
        score = 0

    if strength is EvidenceStrength.STRONG:
        strong_signals = sum(
            1 for q in supporting if q.classification is EvidenceStrength.STRONG
        )
        extra = (strong_signals - 1) + strong_ancestors
        score = min(score + cfg.corroboration_bonus * extra, cfg.corroboration_cap)

    score -= cfg.refutation_penalty * refuting
    return max(0, min(100, score))
