import asyncio

import pytest

from perfscope.errors import InstrumentationFailure
from perfscope.events import FunctionCall, LineExecution, MemorySample, Success
from perfscope.orchestrator import ExecutionOrchestrator
from perfscope.registry import ExecutionRegistry, LanguageHandler


def sample_events():
    return [
        MemorySample(timestamp_ms=1.0, rss=1000),
        FunctionCall(timestamp_ms=2.0, name="work", caller="global", arg_summaries=["3"], duration_ms=1.5),
        LineExecution(timestamp_ms=3.0, source_line=1, source_text="work(3)", duration_ms=0.2),
        MemorySample(timestamp_ms=4.0, rss=3000),
    ]


class FakeHandler(LanguageHandler):
    """Handler that replays canned events instead of starting a process."""

    language_id = "fake"
    display_name = "Fake"
    version = "1"

    def __init__(self, events=None, delay=0.0):
        self.events = sample_events() if events is None else events
        self.delay = delay
        self.calls = 0

    @property
    def default_timeout(self) -> float:
        return 1.0

    def instrument(self, source, options):
        if source == "unparseable":
            raise InstrumentationFailure("cannot rewrite snippet", line=1)
        return source

    async def execute(self, instrumented, stdin, options, on_event, *, execution_id, timeout=None):
        self.calls += 1
        for event in self.events:
            await on_event(event)
        if self.delay:
            await asyncio.sleep(self.delay)
        # duration follows the snippet length so comparisons have something to judge
        return Success(output=instrumented, trace=list(self.events), total_duration_ms=float(len(instrumented)))


@pytest.fixture
def fake_handler():
    return FakeHandler()


@pytest.fixture
def registry(fake_handler):
    registry = ExecutionRegistry()
    registry.register("fake", fake_handler)
    return registry


@pytest.fixture
def orchestrator(registry):
    return ExecutionOrchestrator(registry, channel_size=2)
