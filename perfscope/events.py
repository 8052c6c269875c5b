"""
Shared vocabulary of the execution pipeline.

Trace events are produced by the instrumented program, decoded by the
sandbox, buffered by the orchestrator and folded by the aggregator. The wire
form (probe payloads, HTTP bodies) is camelCase; attributes are snake_case.
"""

import uuid
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from perfscope.errors import ErrorKind

SUMMARY_LIMIT = 100


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class TrackingOptions(CamelModel):
    track_memory: bool = True
    track_variables: bool = True
    track_functions: bool = True
    track_execution_flow: bool = True


# --- Trace events ---

class MemorySample(CamelModel):
    kind: Literal["memory"] = "memory"
    timestamp_ms: float
    rss: int
    vms: int = 0
    allocated_delta: int = 0
    deallocated_delta: int = 0


class FunctionCall(CamelModel):
    kind: Literal["functionCall"] = "functionCall"
    timestamp_ms: float
    name: str
    caller: Optional[str] = None
    arg_summaries: List[str] = []
    duration_ms: float = 0.0

    @field_validator("arg_summaries")
    @classmethod
    def _clip_args(cls, value: List[str]) -> List[str]:
        return [clip(arg) for arg in value]


class VariableState(CamelModel):
    kind: Literal["variableState"] = "variableState"
    timestamp_ms: float
    name: str
    type_name: str
    value_summary: str
    source_line: Optional[int] = None

    @field_validator("value_summary")
    @classmethod
    def _clip_value(cls, value: str) -> str:
        return clip(value)


class LineExecution(CamelModel):
    kind: Literal["executionFlow"] = "executionFlow"
    timestamp_ms: float
    source_line: int
    source_text: str = ""
    duration_ms: float = 0.0


TraceEvent = Annotated[
    Union[MemorySample, FunctionCall, VariableState, LineExecution],
    Field(discriminator="kind"),
]

EVENT_TYPES = {
    "memory": MemorySample,
    "functionCall": FunctionCall,
    "variableState": VariableState,
    "executionFlow": LineExecution,
}


def clip(text: str, limit: int = SUMMARY_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit - 3] + "..."


def split_input(text: Optional[str]) -> List[str]:
    """Stdin as typed into a text box: one entry per line, outer blank lines dropped."""
    text = (text or "").strip()
    return text.split("\n") if text else []


# --- Requests and outcomes ---

class ExecutionRequest(CamelModel):
    code: str
    language: str
    stdin: List[str] = []
    options: TrackingOptions = TrackingOptions()
    execution_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timeout: Optional[float] = Field(default=None, gt=0)  # seconds

    @field_validator("stdin", mode="before")
    @classmethod
    def _split_input(cls, value):
        if value is None or isinstance(value, str):
            return split_input(value)
        return value


class Success(CamelModel):
    status: Literal["success"] = "success"
    output: str = ""
    trace: List[TraceEvent] = []
    total_duration_ms: float = 0.0
    stderr: str = ""


class Failure(CamelModel):
    status: Literal["failure"] = "failure"
    kind: ErrorKind
    message: str
    source_line: Union[int, str, None] = None
    stack: Optional[str] = None
    timeout_ms: Optional[float] = None


ExecutionOutcome = Annotated[Union[Success, Failure], Field(discriminator="status")]


class LanguageInfo(CamelModel):
    id: str
    name: str
    version: str
