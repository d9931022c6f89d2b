"""Durable, per-investigation checkpoint store backed by SQLAlchemy.

Checkpoints are append-only snapshots grouped by investigation id.  Each
investigation also has one mutable "latest" pointer row.  A save inserts
the snapshot, moves the pointer and evicts the oldest excess snapshots in
a single transaction, so a reader never sees a pointer to a checkpoint
that has not been committed.

Writes for the same investigation are serialised by an in-process lock;
writes for different investigations proceed independently.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Generator, Iterable, List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from checkpoints.config import CheckpointStoreConfig
from checkpoints.database.connection import DatabaseConnection
from checkpoints.database.models import CheckpointRecord, LatestCheckpoint
from checkpoints.schema import (
    Checkpoint,
    CheckpointListEntry,
    CheckpointStoreError,
    EvidenceRecord,
    InvestigationSummary,
    Phase,
)
from integration.logger import get_logger
from investigation.config import HypothesisTreeConfig
from investigation.tree import HypothesisTree
from skills.schema import ExecutionContext

_logger = get_logger(__name__)


def _to_db_time(value: datetime) -> datetime:
    """Normalise to naive UTC so ordering is consistent across backends."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_time(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class CheckpointStore:
    """Save, load, list and prune investigation checkpoints.

    Args:
        config: Store configuration.  Ignored when *connection* is given,
            except for the retention limit.
        connection: Optional pre-built :class:`DatabaseConnection`.
        create_tables: Create the schema on construction.
    """

    def __init__(
        self,
        config: Optional[CheckpointStoreConfig] = None,
        connection: Optional[DatabaseConnection] = None,
        create_tables: bool = True,
    ) -> None:
        self.config = config or CheckpointStoreConfig()
        self._conn = connection or DatabaseConnection(self.config)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        if create_tables:
            with self._translate_errors("create_tables"):
                self._conn.create_tables()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save(self, checkpoint: Checkpoint) -> str:
        """Persist *checkpoint* and return its id.

        Raises:
            CheckpointStoreError: The database rejected the write.  The
                previous state, including the latest pointer, is unchanged.
        """
        inv = checkpoint.investigation_id
        payload = checkpoint.model_dump_json()
        created_at = _to_db_time(checkpoint.created_at)

        with self._lock_for(inv), self._translate_errors("save", inv, checkpoint.id):
            with self._conn.session() as sess:
                sequence = self._next_sequence(sess, inv)
                sess.add(CheckpointRecord(
                    id=checkpoint.id,
                    investigation_id=inv,
                    session_id=checkpoint.session_id,
                    created_at=created_at,
                    sequence=sequence,
                    phase=checkpoint.phase.value,
                    query=checkpoint.query,
                    confidence=checkpoint.confidence,
                    hypothesis_count=checkpoint.hypothesis_count,
                    payload=payload,
                ))
                sess.flush()
                self._advance_latest(sess, inv, checkpoint.id, created_at, sequence)
                evicted = self._evict(sess, inv)

        _logger.info(
            "Checkpoint saved",
            investigation_id=inv,
            checkpoint_id=checkpoint.id,
            phase=checkpoint.phase.value,
            confidence=checkpoint.confidence,
            evicted=len(evicted),
        )
        return checkpoint.id

    def delete(self, investigation_id: str, checkpoint_id: str) -> bool:
        """Delete one checkpoint; returns ``False`` if it does not exist."""
        with self._lock_for(investigation_id), \
                self._translate_errors("delete", investigation_id, checkpoint_id):
            with self._conn.session() as sess:
                record = self._get_record(sess, investigation_id, checkpoint_id)
                if record is None:
                    return False
                pointer = sess.get(LatestCheckpoint, investigation_id)
                if pointer is not None and pointer.checkpoint_id == checkpoint_id:
                    self._repoint_latest(sess, investigation_id, pointer, exclude=checkpoint_id)
                    sess.flush()
                sess.execute(delete(CheckpointRecord).where(CheckpointRecord.id == checkpoint_id))

        _logger.info("Checkpoint deleted", investigation_id=investigation_id, checkpoint_id=checkpoint_id)
        return True

    def delete_all(self, investigation_id: str) -> int:
        """Delete every checkpoint of *investigation_id*; returns how many."""
        with self._lock_for(investigation_id), \
                self._translate_errors("delete_all", investigation_id):
            with self._conn.session() as sess:
                sess.execute(
                    delete(LatestCheckpoint)
                    .where(LatestCheckpoint.investigation_id == investigation_id)
                )
                result = sess.execute(
                    delete(CheckpointRecord)
                    .where(CheckpointRecord.investigation_id == investigation_id)
                )
                count = result.rowcount or 0

        _logger.info("Checkpoints purged", investigation_id=investigation_id, count=count)
        return count

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load(self, investigation_id: str, checkpoint_id: str) -> Optional[Checkpoint]:
        with self._translate_errors("load", investigation_id, checkpoint_id):
            with self._conn.session() as sess:
                record = self._get_record(sess, investigation_id, checkpoint_id)
                return self._decode(record) if record is not None else None

    def load_latest(self, investigation_id: str) -> Optional[Checkpoint]:
        """Return the newest checkpoint via the latest pointer."""
        with self._translate_errors("load_latest", investigation_id):
            with self._conn.session() as sess:
                record = sess.execute(
                    select(CheckpointRecord)
                    .join(LatestCheckpoint, LatestCheckpoint.checkpoint_id == CheckpointRecord.id)
                    .where(LatestCheckpoint.investigation_id == investigation_id)
                ).scalar_one_or_none()
                return self._decode(record) if record is not None else None

    def list(self, investigation_id: str) -> List[CheckpointListEntry]:
        """Checkpoints of *investigation_id*, newest first."""
        with self._translate_errors("list", investigation_id):
            with self._conn.session() as sess:
                rows = sess.execute(
                    select(CheckpointRecord)
                    .where(CheckpointRecord.investigation_id == investigation_id)
                    .order_by(CheckpointRecord.created_at.desc(), CheckpointRecord.sequence.desc())
                ).scalars().all()
                return [self._entry(r) for r in rows]

    def list_investigations(self) -> List[InvestigationSummary]:
        """Every investigation with stored checkpoints, most recently updated first."""
        with self._translate_errors("list_investigations"):
            with self._conn.session() as sess:
                counts = dict(sess.execute(
                    select(CheckpointRecord.investigation_id, func.count(CheckpointRecord.id))
                    .group_by(CheckpointRecord.investigation_id)
                ).all())
                latest = {
                    r.investigation_id: r
                    for r in sess.execute(
                        select(CheckpointRecord)
                        .join(LatestCheckpoint, LatestCheckpoint.checkpoint_id == CheckpointRecord.id)
                    ).scalars().all()
                }

        summaries = [
            InvestigationSummary(
                investigation_id=inv,
                checkpoint_count=count,
                latest_checkpoint=self._entry(latest[inv]) if inv in latest else None,
            )
            for inv, count in counts.items()
        ]
        summaries.sort(
            key=lambda s: (
                s.latest_checkpoint.created_at if s.latest_checkpoint else datetime.min.replace(tzinfo=timezone.utc),
                s.investigation_id,
            ),
            reverse=True,
        )
        return summaries

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _lock_for(self, investigation_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(investigation_id)
            if lock is None:
                lock = self._locks[investigation_id] = threading.Lock()
            return lock

    @contextmanager
    def _translate_errors(
        self,
        operation: str,
        investigation_id: Optional[str] = None,
        checkpoint_id: Optional[str] = None,
    ) -> Generator[None, None, None]:
        try:
            yield
        except SQLAlchemyError as exc:
            _logger.error(
                "Checkpoint store operation failed",
                operation=operation,
                investigation_id=investigation_id,
                checkpoint_id=checkpoint_id,
                error=str(exc),
            )
            raise CheckpointStoreError(
                f"Checkpoint {operation} failed: {exc}",
                investigation_id=investigation_id,
                checkpoint_id=checkpoint_id,
            ) from exc

    @staticmethod
    def _get_record(sess: Session, investigation_id: str, checkpoint_id: str) -> Optional[CheckpointRecord]:
        return sess.execute(
            select(CheckpointRecord).where(
                CheckpointRecord.id == checkpoint_id,
                CheckpointRecord.investigation_id == investigation_id,
            )
        ).scalar_one_or_none()

    @staticmethod
    def _next_sequence(sess: Session, investigation_id: str) -> int:
        current = sess.execute(
            select(func.max(CheckpointRecord.sequence))
            .where(CheckpointRecord.investigation_id == investigation_id)
        ).scalar()
        return (current or 0) + 1

    @staticmethod
    def _advance_latest(
        sess: Session,
        investigation_id: str,
        checkpoint_id: str,
        created_at: datetime,
        sequence: int,
    ) -> None:
        now = _to_db_time(datetime.now(timezone.utc))
        pointer = sess.get(LatestCheckpoint, investigation_id)
        if pointer is None:
            sess.add(LatestCheckpoint(
                investigation_id=investigation_id,
                checkpoint_id=checkpoint_id,
                created_at=created_at,
                sequence=sequence,
                updated_at=now,
            ))
            return
        # A back-dated checkpoint joins the history but does not become latest.
        if (created_at, sequence) >= (pointer.created_at, pointer.sequence):
            pointer.checkpoint_id = checkpoint_id
            pointer.created_at = created_at
            pointer.sequence = sequence
            pointer.updated_at = now

    @staticmethod
    def _repoint_latest(
        sess: Session,
        investigation_id: str,
        pointer: LatestCheckpoint,
        exclude: str,
    ) -> None:
        successor = sess.execute(
            select(CheckpointRecord)
            .where(
                CheckpointRecord.investigation_id == investigation_id,
                CheckpointRecord.id != exclude,
            )
            .order_by(CheckpointRecord.created_at.desc(), CheckpointRecord.sequence.desc())
            .limit(1)
        ).scalar_one_or_none()
        if successor is None:
            sess.delete(pointer)
            return
        pointer.checkpoint_id = successor.id
        pointer.created_at = successor.created_at
        pointer.sequence = successor.sequence
        pointer.updated_at = _to_db_time(datetime.now(timezone.utc))

    def _evict(self, sess: Session, investigation_id: str) -> List[str]:
        limit = self.config.max_checkpoints_per_investigation
        total = sess.execute(
            select(func.count(CheckpointRecord.id))
            .where(CheckpointRecord.investigation_id == investigation_id)
        ).scalar() or 0
        if total <= limit:
            return []
        stale = list(sess.execute(
            select(CheckpointRecord.id)
            .where(CheckpointRecord.investigation_id == investigation_id)
            .order_by(CheckpointRecord.created_at.asc(), CheckpointRecord.sequence.asc())
            .limit(total - limit)
        ).scalars().all())
        sess.execute(delete(CheckpointRecord).where(CheckpointRecord.id.in_(stale)))
        _logger.debug("Old checkpoints evicted", investigation_id=investigation_id, checkpoint_ids=stale)
        return stale

    @staticmethod
    def _decode(record: CheckpointRecord) -> Checkpoint:
        try:
            return Checkpoint.model_validate_json(record.payload)
        except ValidationError as exc:
            raise CheckpointStoreError(
                f"Checkpoint '{record.id}' has an unreadable payload: {exc}",
                investigation_id=record.investigation_id,
                checkpoint_id=record.id,
            ) from exc

    @staticmethod
    def _entry(record: CheckpointRecord) -> CheckpointListEntry:
        return CheckpointListEntry(
            id=record.id,
            investigation_id=record.investigation_id,
            created_at=_from_db_time(record.created_at),
            phase=Phase(record.phase),
            confidence=record.confidence or 0,
            hypothesis_count=record.hypothesis_count or 0,
            query=record.query or "",
        )


# ---------------------------------------------------------------------------
# Snapshot helpers
# ---------------------------------------------------------------------------

def create_checkpoint(
    tree: HypothesisTree,
    phase: Phase | str,
    *,
    session_id: Optional[str] = None,
    executions: Iterable[ExecutionContext] = (),
    evidence: Iterable[EvidenceRecord] = (),
    prompt_count: int = 0,
    tool_call_count: int = 0,
    services_discovered: Iterable[str] = (),
    symptoms_identified: Iterable[str] = (),
    root_cause: Optional[str] = None,
    affected_services: Iterable[str] = (),
    summary: Optional[str] = None,
) -> Checkpoint:
    """Snapshot a live tree and execution contexts into a :class:`Checkpoint`.

    When *root_cause* is omitted the confirmed hypothesis statement is used.
    """
    if root_cause is None:
        confirmed = tree.confirmed()
        root_cause = confirmed.statement if confirmed is not None else None
    return Checkpoint(
        investigation_id=tree.investigation_id,
        session_id=session_id,
        phase=Phase(phase),
        query=tree.query,
        confidence=tree.overall_confidence(),
        hypotheses=tree.all(),
        executions=[ctx.model_copy(deep=True) for ctx in executions],
        evidence=[e.model_copy(deep=True) for e in evidence],
        prompt_count=prompt_count,
        tool_call_count=tool_call_count,
        services_discovered=list(services_discovered),
        symptoms_identified=list(symptoms_identified),
        root_cause=root_cause,
        affected_services=list(affected_services),
        summary=summary,
    )


def restore_tree(
    checkpoint: Checkpoint,
    config: Optional[HypothesisTreeConfig] = None,
) -> HypothesisTree:
    """Rebuild a live :class:`HypothesisTree` from a stored checkpoint."""
    return HypothesisTree.from_hypotheses(
        checkpoint.investigation_id,
        checkpoint.hypotheses,
        query=checkpoint.query,
        config=config,
    )


def paused_executions(checkpoint: Checkpoint) -> List[Tuple[str, str]]:
    """``(session_id, approval_id)`` pairs still awaiting a decision."""
    return [
        (ctx.session_id, ctx.pending_approval.id)
        for ctx in checkpoint.executions
        if ctx.pending_approval is not None and not ctx.pending_approval.is_resolved
    ]
