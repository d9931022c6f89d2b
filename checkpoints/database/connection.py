"""SQLAlchemy engine and session handling for the checkpoint store."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from checkpoints.config import CheckpointStoreConfig
from integration.logger import get_logger

_logger = get_logger(__name__)

# Seconds a SQLite writer waits on a locked database file.
_SQLITE_BUSY_TIMEOUT = 30


def _is_memory_url(url: str) -> bool:
    return ":memory:" in url or url in ("sqlite://", "sqlite:///")


def _enable_sqlite_foreign_keys(dbapi_conn: Any, _record: Any) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class DatabaseConnection:
    """Engine plus a transactional session factory.

    SQLite databases are opened shareable across threads with foreign keys
    enforced; in-memory URLs share one connection so every session sees the
    same tables.  Server backends get a pre-pinged connection pool.
    """

    def __init__(self, config: Optional[CheckpointStoreConfig] = None) -> None:
        self.config = config or CheckpointStoreConfig()
        url = self.config.database_url
        self._is_sqlite = url.startswith("sqlite")

        options: Dict[str, Any] = {"echo": self.config.echo_sql}
        if self._is_sqlite:
            options["connect_args"] = {
                "check_same_thread": False,
                "timeout": _SQLITE_BUSY_TIMEOUT,
            }
            if _is_memory_url(url):
                options["poolclass"] = StaticPool
        else:
            options.update(pool_size=5, max_overflow=10, pool_pre_ping=True)

        self._engine: Engine = create_engine(url, **options)
        if self._is_sqlite:
            event.listen(self._engine, "connect", _enable_sqlite_foreign_keys)
        self._make_session = sessionmaker(bind=self._engine, expire_on_commit=False)

    def create_tables(self) -> None:
        from checkpoints.database.models import Base

        Base.metadata.create_all(self._engine)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """One unit of work: commit when the block exits cleanly, else roll back."""
        sess = self._make_session()
        try:
            yield sess
            sess.commit()
        except Exception:
            sess.rollback()
            raise
        finally:
            sess.close()

    def close(self) -> None:
        self._engine.dispose()
        _logger.info("Checkpoint database closed", url=self._engine.url.render_as_string())
