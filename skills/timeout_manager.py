"""Step timeout enforcement via ``asyncio.wait_for``."""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from integration.logger import get_logger

from .schema import StepTimeout

_logger = get_logger(__name__)
T = TypeVar("T")


class TimeoutManager:
    """Enforce per-step timeouts.

    Violation counts are kept per skill by
    :class:`~skills.metrics_collector.MetricsCollector`.
    """

    async def execute_with_timeout(
        self,
        awaitable: Awaitable[T],
        timeout_ms: float,
        step_id: str = "",
        session_id: str = "",
    ) -> T:
        """Await *awaitable* with an upper bound of *timeout_ms*.

        Args:
            awaitable: The dispatched action.
            timeout_ms: Maximum milliseconds to wait.
            step_id: Step label for logging.
            session_id: Owning execution context.

        Returns:
            Result of the awaitable.

        Raises:
            ValueError: If *timeout_ms* is not positive.
            StepTimeout: If the action does not finish in time.
        """
        if timeout_ms <= 0:
            raise ValueError("timeout_ms must be > 0")

        try:
            return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError as exc:
            _logger.warning(
                "Step timeout exceeded",
                step_id=step_id,
                session_id=session_id,
                timeout_ms=timeout_ms,
            )
            raise StepTimeout(step_id, timeout_ms) from exc
