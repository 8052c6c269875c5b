"""
Drives one request through handler selection, instrumentation, the sandbox
and metric aggregation.
"""

import asyncio
import inspect
import logging
from typing import Any, AsyncIterator, Callable, List, Optional

from perfscope.config import settings
from perfscope.errors import ErrorKind, InstrumentationFailure
from perfscope.events import (
    CamelModel,
    ExecutionOutcome,
    ExecutionRequest,
    Failure,
    Success,
    TraceEvent,
)
from perfscope.metrics import ExecutionMetrics, aggregate
from perfscope.registry import EventSink, ExecutionRegistry, LanguageHandler

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, str], Any]

_END = object()


class ExecutionReport(CamelModel):
    execution_id: str
    language: str
    outcome: ExecutionOutcome
    metrics: Optional[ExecutionMetrics] = None


class ExecutionHandle:
    """
    What the caller gets back from ExecutionOrchestrator.execute.

    `result` resolves once with an ExecutionReport. `events()` yields the
    trace events of the run in order and ends before `result` resolves.
    """

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        self.result: asyncio.Future = asyncio.get_running_loop().create_future()
        self._stream: asyncio.Queue = asyncio.Queue()

    def _publish(self, event: TraceEvent) -> None:
        self._stream.put_nowait(event)

    def _close(self) -> None:
        self._stream.put_nowait(_END)

    async def events(self) -> AsyncIterator[TraceEvent]:
        while True:
            item = await self._stream.get()
            if item is _END:
                return
            yield item

    def __await__(self):
        return asyncio.shield(self.result).__await__()


async def _call(callback: Optional[Callable], *args) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class ExecutionOrchestrator:
    def __init__(self, registry: ExecutionRegistry, channel_size: Optional[int] = None):
        self.registry = registry
        self.channel_size = channel_size or settings.channel_size

    def execute(
        self,
        request: ExecutionRequest,
        sink: Optional[EventSink] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ExecutionHandle:
        """
        Start a run and return its handle. Must be called from a running
        event loop.

        Raises UnsupportedLanguage or DuplicateExecution before anything is
        allocated for the run.
        """
        handler = self.registry.resolve(request.language)
        self.registry.claim(request.execution_id)
        handle = ExecutionHandle(request.execution_id)
        task = asyncio.get_running_loop().create_task(self._run(handler, request, handle, sink, on_progress))
        self.registry.attach(request.execution_id, task)
        logger.info("Execution %s started (%s)", request.execution_id, request.language)
        return handle

    async def run(self, request: ExecutionRequest, sink: Optional[EventSink] = None) -> ExecutionReport:
        return await self.execute(request, sink)

    async def _run(
        self,
        handler: LanguageHandler,
        request: ExecutionRequest,
        handle: ExecutionHandle,
        sink: Optional[EventSink],
        on_progress: Optional[ProgressCallback],
    ) -> None:
        execution_id = request.execution_id
        try:
            report = await self._drive(handler, request, handle, sink, on_progress)
        except asyncio.CancelledError:
            handle._close()
            self.registry.release(execution_id)
            if not handle.result.done():
                handle.result.cancel()
            raise
        except Exception as e:
            logger.exception("Execution %s failed internally", execution_id)
            handle._close()
            self.registry.release(execution_id)
            if not handle.result.done():
                handle.result.set_exception(e)
            return

        handle._close()
        self.registry.release(execution_id)
        if not handle.result.done():
            handle.result.set_result(report)

    async def _drive(
        self,
        handler: LanguageHandler,
        request: ExecutionRequest,
        handle: ExecutionHandle,
        sink: Optional[EventSink],
        on_progress: Optional[ProgressCallback],
    ) -> ExecutionReport:
        execution_id = request.execution_id

        try:
            # off the loop: handlers may parse large sources or shell out to check them
            instrumented = await asyncio.to_thread(handler.instrument, request.code, request.options)
        except InstrumentationFailure as e:
            logger.info("Execution %s: instrumentation failed: %s", execution_id, e.message)
            outcome = Failure(
                kind=ErrorKind.INSTRUMENTATION_FAILURE,
                message=e.message,
                source_line=e.details.get("line", "unknown"),
            )
            return ExecutionReport(execution_id=execution_id, language=request.language, outcome=outcome)
        await _call(on_progress, "instrumentation", "complete")

        trace: List[TraceEvent] = []
        channel: asyncio.Queue = asyncio.Queue(maxsize=self.channel_size)

        async def pump() -> None:
            while True:
                event = await channel.get()
                if event is _END:
                    return
                trace.append(event)
                try:
                    await _call(sink, event)
                except Exception:
                    logger.exception("Execution %s: event sink raised", execution_id)
                handle._publish(event)

        pumping = asyncio.ensure_future(pump())
        try:
            await _call(on_progress, "execution", "started")
            outcome = await handler.execute(
                instrumented,
                request.stdin,
                request.options,
                channel.put,
                execution_id=execution_id,
                timeout=request.timeout,
            )
            await channel.put(_END)
            await pumping
        finally:
            if not pumping.done():
                pumping.cancel()

        metrics = None
        if isinstance(outcome, Success):
            metrics = aggregate(trace, outcome.total_duration_ms, handler.complexity_hint(request.code))
            logger.info(
                "Execution %s completed in %.1fms with %d events",
                execution_id, outcome.total_duration_ms, len(trace),
            )
        else:
            logger.info("Execution %s failed: %s %s", execution_id, outcome.kind.value, outcome.message)
        return ExecutionReport(execution_id=execution_id, language=request.language, outcome=outcome, metrics=metrics)
