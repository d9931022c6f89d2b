"""SQLAlchemy ORM models for the checkpoint tables."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base for checkpoint models."""
    pass


class CheckpointRecord(Base):
    """One immutable checkpoint; the full model is kept as JSON in ``payload``.

    ``created_at`` is stored as naive UTC.  ``sequence`` increases per
    investigation and breaks ties between equal timestamps.
    """

    __tablename__ = "checkpoints"

    id = Column(String(64), primary_key=True)
    investigation_id = Column(String(128), nullable=False, index=True)
    session_id = Column(String(128), nullable=True)
    created_at = Column(DateTime, nullable=False)
    sequence = Column(Integer, nullable=False)
    phase = Column(String(32), nullable=False)
    query = Column(Text, default="")
    confidence = Column(Integer, default=0)
    hypothesis_count = Column(Integer, default=0)
    payload = Column(Text, nullable=False)

    __table_args__ = (
        Index("ix_checkpoints_investigation_order", "investigation_id", "created_at", "sequence"),
    )


class LatestCheckpoint(Base):
    """Per-investigation pointer at the newest checkpoint."""

    __tablename__ = "latest_checkpoints"

    investigation_id = Column(String(128), primary_key=True)
    checkpoint_id = Column(String(64), ForeignKey("checkpoints.id"), nullable=False)
    created_at = Column(DateTime, nullable=False)
    sequence = Column(Integer, nullable=False)
    updated_at = Column(
        DateTime, default=lambda: datetime.now(timezone.utc).replace(tzinfo=None), nullable=False,
    )
