"""
Out-of-band framing multiplexed over the sandboxed program's stdout.

A framed line is a sentinel prefix followed by one line of JSON. The
sentinel may appear after ordinary text on the same line when the program
printed without a trailing newline; the text before it is ordinary output.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from perfscope.errors import ProtocolDecodeError
from perfscope.events import EVENT_TYPES, TraceEvent
from perfscope.probe import COMPLETE_PREFIX, ERROR_PREFIX, EVENT_PREFIX

logger = logging.getLogger(__name__)

PREFIXES = (EVENT_PREFIX, COMPLETE_PREFIX, ERROR_PREFIX)


class FrameKind(str, Enum):
    OUTPUT = "output"
    EVENT = "event"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class Frame:
    kind: FrameKind
    text: str = ""
    event: Optional[TraceEvent] = None
    payload: Dict[str, Any] = field(default_factory=dict)


_KINDS = {
    EVENT_PREFIX: FrameKind.EVENT,
    COMPLETE_PREFIX: FrameKind.COMPLETE,
    ERROR_PREFIX: FrameKind.ERROR,
}

# Keys of the final aggregate payload, mapped to their event kind
AGGREGATE_KEYS = {
    "memoryUsage": "memory",
    "functionCalls": "functionCall",
    "variableStates": "variableState",
    "executionFlow": "executionFlow",
}


def decode_event(event: str, data: Any) -> TraceEvent:
    model = EVENT_TYPES.get(event)
    if model is None:
        raise ValueError(f"unknown event kind {event!r}")
    return model.model_validate(data)


def _find_sentinel(line: str):
    best = None
    for prefix in PREFIXES:
        index = line.find(prefix)
        if index != -1 and (best is None or index < best[0]):
            best = (index, prefix)
    return best


def split_line(line: str) -> List[Frame]:
    """
    Split one stdout line into frames.

    Raises ProtocolDecodeError when a sentinel is present but its payload is
    not valid; any ordinary text in front of it is returned on the error.
    """
    found = _find_sentinel(line)
    if found is None:
        return [Frame(FrameKind.OUTPUT, text=line)]

    index, prefix = found
    frames = []
    if index:
        frames.append(Frame(FrameKind.OUTPUT, text=line[:index]))
    body = line[index + len(prefix):].rstrip("\r\n")
    kind = _KINDS[prefix]
    try:
        payload = json.loads(body)
        if not isinstance(payload, dict):
            raise ValueError("payload is not an object")
        if kind is FrameKind.EVENT:
            frames.append(Frame(kind, event=decode_event(payload.get("event"), payload.get("data")), payload=payload))
        else:
            frames.append(Frame(kind, payload=payload))
    except (ValueError, ValidationError) as exc:
        error = ProtocolDecodeError(f"Malformed {kind.value} frame: {exc}", line)
        error.details["output"] = line[:index]
        raise error from exc
    return frames


def aggregate_trace(payload: Dict[str, Any]) -> List[TraceEvent]:
    """
    Rebuild the trace the program reported in its completion payload.

    Samples that fail validation are dropped the same way live frames are.
    """
    events = []
    for key, kind in AGGREGATE_KEYS.items():
        for data in payload.get(key) or []:
            try:
                events.append(decode_event(kind, data))
            except (ValueError, ValidationError) as exc:
                logger.warning("Dropping malformed %s sample from completion payload: %s", kind, exc)
    # stable sort keeps emission order for equal timestamps
    events.sort(key=lambda event: event.timestamp_ms)
    return events
