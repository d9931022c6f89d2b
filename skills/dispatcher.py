"""Action name → tool handler dispatch."""

from __future__ import annotations

import asyncio
import inspect
import threading
from typing import Any, Awaitable, Callable, Dict, List, Union

from integration.logger import get_logger

from .schema import UnknownAction

_logger = get_logger(__name__)

ActionHandler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


class ToolDispatcher:
    """Registry of callables that perform step actions.

    Handlers receive the step's resolved parameters and may be plain
    functions or coroutines. Any exception they raise is a step failure.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, ActionHandler] = {}
        self._lock = threading.Lock()

    def register(self, action: str, handler: ActionHandler) -> None:
        """Register (or replace) the handler for *action*."""
        with self._lock:
            if action in self._handlers:
                _logger.warning("Replacing action handler", action=action)
            self._handlers[action] = handler

    def has(self, action: str) -> bool:
        with self._lock:
            return action in self._handlers

    def actions(self) -> List[str]:
        with self._lock:
            return sorted(self._handlers)

    async def execute(self, action: str, parameters: Dict[str, Any]) -> Any:
        """Invoke the handler for *action* with *parameters*.

        Coroutine handlers are awaited on the loop. Plain functions run in a
        worker thread so a blocking handler neither stalls other contexts
        nor escapes the step timeout; a timed-out thread is not interrupted
        and finishes on its own.

        Raises:
            UnknownAction: If no handler is registered.
        """
        with self._lock:
            handler = self._handlers.get(action)
        if handler is None:
            raise UnknownAction(action)
        if inspect.iscoroutinefunction(handler):
            return await handler(parameters)
        result = await asyncio.to_thread(handler, parameters)
        if inspect.isawaitable(result):
            result = await result
        return result
