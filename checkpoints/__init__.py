"""Checkpoint store.

Durable snapshots of hypothesis tree and skill execution state, keyed by
investigation id, with a latest pointer and bounded retention.
"""

from checkpoints.config import CheckpointStoreConfig
from checkpoints.report import (
    CheckpointReportRenderer,
    render_checkpoint,
    render_checkpoint_list,
)
from checkpoints.schema import (
    Checkpoint,
    CheckpointListEntry,
    CheckpointStoreError,
    EvidenceRecord,
    InvestigationSummary,
    Phase,
)
from checkpoints.store import (
    CheckpointStore,
    create_checkpoint,
    paused_executions,
    restore_tree,
)

__all__ = [
    "Checkpoint",
    "CheckpointListEntry",
    "CheckpointReportRenderer",
    "CheckpointStore",
    "CheckpointStoreConfig",
    "CheckpointStoreError",
    "EvidenceRecord",
    "InvestigationSummary",
    "Phase",
    "create_checkpoint",
    "paused_executions",
    "render_checkpoint",
    "render_checkpoint_list",
    "restore_tree",
]
