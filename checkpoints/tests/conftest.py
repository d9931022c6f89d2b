"""Shared fixtures for checkpoint store tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from checkpoints.config import CheckpointStoreConfig
from checkpoints.schema import Checkpoint, Phase
from checkpoints.store import CheckpointStore
from investigation.tree import HypothesisTree

BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store_config(tmp_path: Path) -> CheckpointStoreConfig:
    return CheckpointStoreConfig(
        database_url=f"sqlite:///{tmp_path / 'checkpoints.db'}",
        max_checkpoints_per_investigation=50,
    )


@pytest.fixture
def store(store_config: CheckpointStoreConfig):
    s = CheckpointStore(store_config)
    yield s
    s.close()


@pytest.fixture
def tree() -> HypothesisTree:
    t = HypothesisTree("inv-1", query="Why is checkout returning 502s?")
    root = t.propose(None, "Upstream payment service is failing", "dependency")
    t.propose(None, "Recent deploy broke checkout", "application")
    t.record_evidence(root.id, {"errors": 412}, "strong", "5xx spike on payments")
    return t


def make_checkpoint(
    investigation_id: str = "inv-1",
    minutes: int = 0,
    phase: Phase = Phase.INVESTIGATE,
    **fields,
) -> Checkpoint:
    """Checkpoint created *minutes* after a fixed base time."""
    return Checkpoint(
        investigation_id=investigation_id,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        phase=phase,
        **fields,
    )
