"""Hypothesis tree engine.

Tracks branching belief state about an incident's root cause: hypotheses
are proposed, tested against evidence, branched on strong evidence, pruned
on dead ends, and at most one is confirmed per investigation.
"""

from investigation.config import HypothesisTreeConfig
from investigation.schema import (
    AmbiguousConfirmation,
    DepthExceeded,
    EvidenceStrength,
    Hypothesis,
    HypothesisCategory,
    HypothesisNotFound,
    HypothesisStatus,
    HypothesisTreeError,
    InvalidTransition,
    TreeSnapshot,
)
from investigation.tree import HypothesisTree

__all__ = [
    "AmbiguousConfirmation",
    "DepthExceeded",
    "EvidenceStrength",
    "Hypothesis",
    "HypothesisCategory",
    "HypothesisNotFound",
    "HypothesisStatus",
    "HypothesisTree",
    "HypothesisTreeConfig",
    "HypothesisTreeError",
    "InvalidTransition",
    "TreeSnapshot",
]
