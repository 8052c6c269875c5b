import json

import pytest

from perfscope.errors import ProtocolDecodeError
from perfscope.events import FunctionCall, MemorySample
from perfscope.probe import COMPLETE_PREFIX, ERROR_PREFIX, EVENT_PREFIX
from perfscope.protocol import FrameKind, aggregate_trace, split_line


def _event_line(event, data, head=""):
    return head + EVENT_PREFIX + json.dumps({"event": event, "data": data}) + "\n"


def test_plain_output_passes_through():
    frames = split_line("hello world\n")
    assert len(frames) == 1
    assert frames[0].kind is FrameKind.OUTPUT
    assert frames[0].text == "hello world\n"


def test_event_frame_is_decoded():
    frames = split_line(_event_line("functionCall", {"timestampMs": 1.5, "name": "f", "caller": "global"}))
    assert [f.kind for f in frames] == [FrameKind.EVENT]
    event = frames[0].event
    assert isinstance(event, FunctionCall)
    assert event.name == "f"
    assert event.timestamp_ms == 1.5


def test_sentinel_after_unterminated_print():
    frames = split_line(_event_line("memory", {"timestampMs": 0.0, "rss": 42}, head="partial"))
    assert frames[0].kind is FrameKind.OUTPUT
    assert frames[0].text == "partial"
    assert isinstance(frames[1].event, MemorySample)


def test_terminal_frames_keep_payload():
    complete = split_line(COMPLETE_PREFIX + json.dumps({"executionTime": 3.0}) + "\n")
    assert complete[0].kind is FrameKind.COMPLETE
    assert complete[0].payload["executionTime"] == 3.0

    error = split_line(ERROR_PREFIX + json.dumps({"message": "ValueError: x", "line": 4}) + "\n")
    assert error[0].kind is FrameKind.ERROR
    assert error[0].payload["line"] == 4


@pytest.mark.parametrize("line", [
    EVENT_PREFIX + "{not json\n",
    EVENT_PREFIX + json.dumps({"event": "nonsense", "data": {}}) + "\n",
    EVENT_PREFIX + json.dumps({"event": "memory", "data": {"rss": 1}}) + "\n",
    COMPLETE_PREFIX + "[1, 2]\n",
])
def test_malformed_frames_raise(line):
    with pytest.raises(ProtocolDecodeError):
        split_line(line)


def test_malformed_frame_keeps_leading_output():
    with pytest.raises(ProtocolDecodeError) as info:
        split_line("before" + EVENT_PREFIX + "garbage\n")
    assert info.value.details["output"] == "before"


def test_aggregate_trace_sorts_and_drops_bad_samples():
    payload = {
        "memoryUsage": [{"timestampMs": 5.0, "rss": 10}, {"rss": "bad"}],
        "functionCalls": [{"timestampMs": 2.0, "name": "g", "durationMs": 1.0}],
        "executionFlow": [{"timestampMs": 2.0, "sourceLine": 3, "sourceText": "g()"}],
    }
    trace = aggregate_trace(payload)
    assert [event.kind for event in trace] == ["functionCall", "executionFlow", "memory"]
    assert [event.timestamp_ms for event in trace] == [2.0, 2.0, 5.0]
