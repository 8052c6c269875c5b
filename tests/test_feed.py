import asyncio

import pytest

from perfscope.errors import ErrorKind
from perfscope.events import Failure, MemorySample, Success
from perfscope.feed import ExecutionFeed, FeedStore
from perfscope.metrics import aggregate
from perfscope.orchestrator import ExecutionReport


def _report(success=True):
    if success:
        outcome = Success(output="ok\n", total_duration_ms=1.0)
        return ExecutionReport(execution_id="e", language="python", outcome=outcome, metrics=aggregate([], 1.0))
    outcome = Failure(kind=ErrorKind.TIMEOUT, message="Execution timed out after 200ms", timeout_ms=200)
    return ExecutionReport(execution_id="e", language="python", outcome=outcome)


@pytest.mark.asyncio
async def test_late_follower_replays_everything():
    feed = ExecutionFeed("e")
    feed.progress("instrumentation", "complete")
    feed.update(MemorySample(timestamp_ms=1.0, rss=64))
    feed.complete(_report())

    messages = [message async for message in feed.follow()]
    assert [m["type"] for m in messages] == ["progress", "update", "complete"]
    assert messages[1]["event"] == "memory"
    assert messages[1]["data"]["rss"] == 64
    assert messages[2]["result"]["output"] == "ok\n"
    assert "summary" in messages[2]["metrics"]


@pytest.mark.asyncio
async def test_live_follower_waits_for_messages():
    feed = ExecutionFeed("e")

    async def produce():
        await asyncio.sleep(0.01)
        feed.progress("instrumentation", "complete")
        await asyncio.sleep(0.01)
        feed.complete(_report(success=False))

    producer = asyncio.ensure_future(produce())
    messages = [message async for message in feed.follow()]
    await producer
    assert [m["type"] for m in messages] == ["progress", "error"]
    assert messages[1]["message"] == "Execution timed out after 200ms"


def test_nothing_is_published_after_completion():
    feed = ExecutionFeed("e")
    feed.error("boom")
    feed.progress("execution", "started")
    assert len(feed.messages) == 1


def test_store_evicts_oldest_finished_feeds():
    store = FeedStore(retention=2)
    first = store.create("a")
    first.error("done")
    store.create("b")
    store.create("c")
    assert store.get("a") is None
    assert store.get("b") is not None
    assert len(store) == 2
