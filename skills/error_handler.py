"""Step failure categorisation and recording."""

from __future__ import annotations

import asyncio

from pydantic import ValidationError

from integration.logger import get_logger

from .schema import (
    SkillTimeout,
    StepError,
    StepTimeout,
    TemplateResolutionError,
    UnknownAction,
)

_logger = get_logger(__name__)


class ErrorHandler:
    """Categorise step exceptions into :class:`StepError` audit records.

    Records are returned to the caller, which keeps them on the owning
    execution context so they are checkpointed with it.
    """

    def categorize_error(self, error: BaseException) -> str:
        """Return a canonical error-type label for *error*.

        Returns:
            One of ``TIMEOUT``, ``SKILL_TIMEOUT``, ``TEMPLATE_ERROR``,
            ``UNKNOWN_ACTION``, ``VALIDATION_ERROR``, ``ACTION_ERROR``.
        """
        if isinstance(error, (StepTimeout, asyncio.TimeoutError)):
            return "TIMEOUT"
        if isinstance(error, SkillTimeout):
            return "SKILL_TIMEOUT"
        if isinstance(error, TemplateResolutionError):
            return "TEMPLATE_ERROR"
        if isinstance(error, UnknownAction):
            return "UNKNOWN_ACTION"
        if isinstance(error, ValidationError):
            return "VALIDATION_ERROR"
        return "ACTION_ERROR"

    def handle_step_error(
        self,
        session_id: str,
        step_id: str,
        error: BaseException,
        attempt: int = 1,
    ) -> StepError:
        """Log a failed attempt and return its audit record."""
        error_type = self.categorize_error(error)
        record = StepError(
            session_id=session_id,
            step_id=step_id,
            error_type=error_type,
            error_message=str(error),
            attempt=attempt,
        )
        _logger.error(
            "Step attempt failed",
            session_id=session_id,
            step_id=step_id,
            error_type=error_type,
            attempt=attempt,
            error=str(error),
        )
        return record
