"""Frozen-dataclass configuration for the checkpoint store."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class CheckpointStoreConfig:
    """Database location, retention and report template settings."""

    # ---- Storage ---------------------------------------------------------
    database_url: str = "sqlite:///checkpoints.db"
    echo_sql: bool = False

    # ---- Retention -------------------------------------------------------
    max_checkpoints_per_investigation: int = 50

    # ---- Reports ---------------------------------------------------------
    templates_dir: str = field(
        default_factory=lambda: os.path.join(os.path.dirname(__file__), "templates"),
    )

    def __post_init__(self) -> None:
        if not self.database_url:
            raise ValueError("database_url must not be empty")
        if self.max_checkpoints_per_investigation < 1:
            raise ValueError("max_checkpoints_per_investigation must be >= 1")
