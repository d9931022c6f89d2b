"""Pydantic v2 schemas and typed errors for the hypothesis tree engine."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class HypothesisCategory(str, Enum):
    """Root-cause taxonomy a hypothesis belongs to."""
    INFRASTRUCTURE = "infrastructure"
    APPLICATION = "application"
    CONFIGURATION = "configuration"
    DEPENDENCY = "dependency"
    EXTERNAL = "external"


class HypothesisStatus(str, Enum):
    """Lifecycle status of a hypothesis."""
    PENDING = "pending"
    INVESTIGATING = "investigating"
    CONFIRMED = "confirmed"
    PRUNED = "pruned"


class EvidenceStrength(str, Enum):
    """How decisively a query result supports a hypothesis."""
    NONE = "none"
    WEAK = "weak"
    STRONG = "strong"

    @property
    def rank(self) -> int:
        return _STRENGTH_RANK[self]


_STRENGTH_RANK = {
    EvidenceStrength.NONE: 0,
    EvidenceStrength.WEAK: 1,
    EvidenceStrength.STRONG: 2,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Evidence ledger
# ---------------------------------------------------------------------------

class EvidenceQuery(BaseModel):
    """One evidence-gathering action issued for a hypothesis.

    Entries are append-only; the raw result lives in
    :attr:`Hypothesis.query_results` under the same ``id``.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    description: str = ""
    classification: EvidenceStrength
    refutes: bool = False
    test_pass: int = Field(default=0, ge=0)
    reasoning: str = ""
    recorded_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Hypothesis
# ---------------------------------------------------------------------------

class Hypothesis(BaseModel):
    """A candidate root-cause explanation tracked by the tree engine.

    Children are stored as ids; the engine owns the arena that resolves
    them. Instances handed out by the engine are value copies.
    """

    id: str
    parent_id: Optional[str] = None
    depth: int = Field(default=0, ge=0)
    statement: str
    category: HypothesisCategory
    status: HypothesisStatus = HypothesisStatus.PENDING
    evidence_strength: EvidenceStrength = EvidenceStrength.NONE
    confidence: int = Field(default=0, ge=0, le=100)
    reasoning: List[str] = Field(default_factory=list)
    confirming_evidence: List[str] = Field(default_factory=list)
    refuting_evidence: List[str] = Field(default_factory=list)
    queries: List[EvidenceQuery] = Field(default_factory=list)
    query_results: Dict[str, Any] = Field(default_factory=dict)
    children: List[str] = Field(default_factory=list)
    test_pass: int = Field(default=0, ge=0)
    status_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (HypothesisStatus.CONFIRMED, HypothesisStatus.PRUNED)


class TreeSnapshot(BaseModel):
    """Flattened, value-copied state of a whole hypothesis tree."""
    model_config = ConfigDict(frozen=True)

    investigation_id: str
    query: str = ""
    max_depth: int = 4
    hypotheses: List[Hypothesis] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class HypothesisTreeError(Exception):
    """Base class for rejected hypothesis tree mutations."""

    def __init__(self, message: str, hypothesis_id: Optional[str] = None) -> None:
        self.hypothesis_id = hypothesis_id
        super().__init__(message)


class HypothesisNotFound(HypothesisTreeError):
    """Raised when a hypothesis id is not part of the tree."""

    def __init__(self, hypothesis_id: str) -> None:
        super().__init__(f"Hypothesis '{hypothesis_id}' not found", hypothesis_id)


class DepthExceeded(HypothesisTreeError):
    """Raised when a new hypothesis would be deeper than the configured max."""

    def __init__(self, parent_id: Optional[str], depth: int, max_depth: int) -> None:
        self.depth = depth
        self.max_depth = max_depth
        super().__init__(
            f"Cannot create hypothesis at depth {depth} under '{parent_id}': "
            f"maximum depth is {max_depth}",
            parent_id,
        )


class InvalidTransition(HypothesisTreeError):
    """Raised when a mutation is illegal for the hypothesis' current state."""

    def __init__(self, hypothesis_id: str, operation: str, detail: str) -> None:
        self.operation = operation
        super().__init__(
            f"Cannot {operation} hypothesis '{hypothesis_id}': {detail}",
            hypothesis_id,
        )


class AmbiguousConfirmation(HypothesisTreeError):
    """Raised when confirming would produce a second confirmed root cause."""

    def __init__(self, hypothesis_id: str, conflicting_ids: List[str]) -> None:
        self.conflicting_ids = list(conflicting_ids)
        super().__init__(
            f"Cannot confirm hypothesis '{hypothesis_id}': "
            f"{', '.join(conflicting_ids)} already confirmed; "
            "disambiguation required",
            hypothesis_id,
        )
