"""
Language handler contract and the per-process execution registry.

The registry is created once at startup, holds the handler table and the
executions currently in flight, and is shut down with the process.
"""

import abc
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from perfscope.errors import DuplicateExecution, UnsupportedLanguage
from perfscope.events import LanguageInfo, TraceEvent, TrackingOptions

logger = logging.getLogger(__name__)

EventSink = Callable[[TraceEvent], Any]


class LanguageHandler(abc.ABC):
    """Instruments and runs snippets of one language."""

    language_id: str
    display_name: str
    version: str

    @property
    @abc.abstractmethod
    def default_timeout(self) -> float:
        ...

    @abc.abstractmethod
    def instrument(self, source: str, options: TrackingOptions) -> str:
        ...

    @abc.abstractmethod
    async def execute(
        self,
        instrumented: str,
        stdin: List[str],
        options: TrackingOptions,
        on_event: EventSink,
        *,
        execution_id: str,
        timeout: Optional[float] = None,
    ):
        """Run instrumented source in a fresh sandbox; returns Success or Failure."""

    def complexity_hint(self, source: str) -> Tuple[str, str]:
        return "O(n)", "No static analysis for this language"

    def describe(self) -> LanguageInfo:
        return LanguageInfo(id=self.language_id, name=self.display_name, version=self.version)


class ExecutionRegistry:
    def __init__(self):
        self._handlers: Dict[str, LanguageHandler] = {}
        self._in_flight: Dict[str, Optional[asyncio.Task]] = {}
        self._closed = False

    # --- languages ---

    def register(self, language_id: str, handler: LanguageHandler) -> None:
        if language_id in self._handlers:
            raise ValueError(f"A handler for '{language_id}' is already registered")
        self._handlers[language_id] = handler
        logger.info("Registered %s handler", language_id)

    def resolve(self, language_id: str) -> LanguageHandler:
        handler = self._handlers.get(language_id)
        if handler is None:
            raise UnsupportedLanguage(language_id)
        return handler

    def languages(self) -> List[LanguageInfo]:
        return [handler.describe() for handler in self._handlers.values()]

    # --- executions ---

    def claim(self, execution_id: str) -> None:
        if self._closed:
            raise RuntimeError("Execution registry is shut down")
        if execution_id in self._in_flight:
            raise DuplicateExecution(execution_id)
        self._in_flight[execution_id] = None

    def attach(self, execution_id: str, task: asyncio.Task) -> None:
        self._in_flight[execution_id] = task

    def release(self, execution_id: str) -> None:
        self._in_flight.pop(execution_id, None)

    def is_running(self, execution_id: str) -> bool:
        return execution_id in self._in_flight

    @property
    def in_flight(self) -> List[str]:
        return list(self._in_flight)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Stop accepting work and wait for running executions to settle."""
        self._closed = True
        tasks = [task for task in self._in_flight.values() if task is not None]
        if not tasks:
            return
        logger.info("Waiting for %d executions to finish", len(tasks))
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


def default_registry() -> ExecutionRegistry:
    from perfscope.js_tracer import JavaScriptHandler
    from perfscope.python_tracer import PythonHandler

    registry = ExecutionRegistry()
    registry.register("python", PythonHandler())
    registry.register("javascript", JavaScriptHandler())
    return registry
