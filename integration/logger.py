"""Structured logging via *structlog*, tagged with the current investigation id.

Every log line emitted inside :func:`investigation_context` (or after
:func:`bind_investigation_id`) carries ``investigation_id``.  The id lives
in a context variable, so concurrent asyncio tasks keep their own value.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Generator, List, Optional

import structlog

_investigation_id: ContextVar[str] = ContextVar("investigation_id", default="")

_CONFIGURED = False


# ── context ────────────────────────────────────────────────────────


def bind_investigation_id(investigation_id: str) -> None:
    """Tag log entries in the current context with *investigation_id*."""
    _investigation_id.set(investigation_id)


def get_investigation_id() -> str:
    return _investigation_id.get()


@contextmanager
def investigation_context(investigation_id: str) -> Generator[None, None, None]:
    """Tag log entries inside the block, then restore the previous id."""
    token = _investigation_id.set(investigation_id)
    try:
        yield
    finally:
        _investigation_id.reset(token)


# ── structlog processors ──────────────────────────────────────────


def _add_investigation_id(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Add the bound id unless the call site passed its own."""
    iid = _investigation_id.get()
    if iid:
        event_dict.setdefault("investigation_id", iid)
    return event_dict


# ── setup ──────────────────────────────────────────────────────────


def setup_logging(log_level: str = "INFO", json_logs: Optional[bool] = None) -> None:
    """Configure *structlog* on top of stdlib logging.

    Only the first call takes effect.

    Args:
        log_level: One of ``DEBUG``, ``INFO``, ``WARNING``, ``ERROR``.
        json_logs: Force JSON (``True``) or console (``False``) output.
            Defaults to console on a TTY and JSON otherwise.
    """
    global _CONFIGURED  # noqa: PLW0603
    if _CONFIGURED:
        return
    _CONFIGURED = True

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    if json_logs is None:
        json_logs = not sys.stderr.isatty()

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric_level)

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        _add_investigation_id,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_logs:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger backed by the stdlib logger *name*.

    The logger is a lazy proxy, so modules may create it at import time and
    still pick up the configuration applied later by :func:`setup_logging`.
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
