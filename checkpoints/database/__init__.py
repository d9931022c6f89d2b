"""SQLAlchemy persistence for checkpoints."""

from checkpoints.database.connection import DatabaseConnection
from checkpoints.database.models import Base, CheckpointRecord, LatestCheckpoint

__all__ = ["Base", "CheckpointRecord", "DatabaseConnection", "LatestCheckpoint"]
