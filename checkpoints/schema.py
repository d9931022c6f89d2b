"""Pydantic v2 schemas and typed errors for the checkpoint store."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from investigation.schema import EvidenceStrength, Hypothesis
from skills.schema import ExecutionContext


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Phase(str, Enum):
    """Investigation phase a checkpoint was taken in."""
    TRIAGE = "triage"
    HYPOTHESIZE = "hypothesize"
    INVESTIGATE = "investigate"
    CONCLUDE = "conclude"
    REMEDIATE = "remediate"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Snapshot payload
# ---------------------------------------------------------------------------

class EvidenceRecord(BaseModel):
    """One piece of gathered evidence, independent of any hypothesis."""

    source: str
    finding: str
    query: str = ""
    strength: EvidenceStrength = EvidenceStrength.NONE
    hypothesis_id: Optional[str] = None
    data: Any = None
    timestamp: datetime = Field(default_factory=_utcnow)


class Checkpoint(BaseModel):
    """Immutable point-in-time snapshot of an investigation.

    Hypotheses and execution contexts are held as value copies; the store
    serialises the whole model on save so later mutation of the live tree
    or engine never reaches a persisted checkpoint.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    investigation_id: str
    session_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    phase: Phase = Phase.TRIAGE
    query: str = ""
    confidence: int = Field(default=0, ge=0, le=100)

    hypotheses: List[Hypothesis] = Field(default_factory=list)
    executions: List[ExecutionContext] = Field(default_factory=list)
    evidence: List[EvidenceRecord] = Field(default_factory=list)

    prompt_count: int = Field(default=0, ge=0)
    tool_call_count: int = Field(default=0, ge=0)
    services_discovered: List[str] = Field(default_factory=list)
    symptoms_identified: List[str] = Field(default_factory=list)

    root_cause: Optional[str] = None
    affected_services: List[str] = Field(default_factory=list)
    summary: Optional[str] = None

    @property
    def hypothesis_count(self) -> int:
        return len(self.hypotheses)

    def execution(self, session_id: str) -> Optional[ExecutionContext]:
        """Return the stored execution context for *session_id*, if any."""
        for ctx in self.executions:
            if ctx.session_id == session_id:
                return ctx
        return None


class CheckpointListEntry(BaseModel):
    """Summary row returned by :meth:`CheckpointStore.list`."""

    id: str
    investigation_id: str
    created_at: datetime
    phase: Phase
    confidence: int
    hypothesis_count: int
    query: str = ""


class InvestigationSummary(BaseModel):
    """One investigation known to the store and its newest checkpoint."""

    investigation_id: str
    checkpoint_count: int
    latest_checkpoint: Optional[CheckpointListEntry] = None


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class CheckpointStoreError(Exception):
    """Raised when the backing database rejects a checkpoint operation.

    Missing checkpoints are not errors; lookups return ``None`` instead.
    """

    def __init__(
        self,
        message: str,
        investigation_id: Optional[str] = None,
        checkpoint_id: Optional[str] = None,
    ) -> None:
        self.investigation_id = investigation_id
        self.checkpoint_id = checkpoint_id
        super().__init__(message)
