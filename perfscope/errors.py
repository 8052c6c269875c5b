from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    UNSUPPORTED_LANGUAGE = "UnsupportedLanguage"
    DUPLICATE_EXECUTION = "DuplicateExecution"
    INSTRUMENTATION_FAILURE = "InstrumentationFailure"
    RUNTIME_ERROR = "RuntimeError"
    TIMEOUT = "Timeout"
    PROTOCOL_DECODE_ERROR = "ProtocolDecodeError"


class ExecutionError(Exception):
    """Base class for everything the execution pipeline raises on purpose."""

    kind: ErrorKind = ErrorKind.RUNTIME_ERROR

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, **self.details}


class UnsupportedLanguage(ExecutionError):
    kind = ErrorKind.UNSUPPORTED_LANGUAGE

    def __init__(self, language: str):
        super().__init__(f"Language '{language}' is not supported", language=language)
        self.language = language


class DuplicateExecution(ExecutionError):
    kind = ErrorKind.DUPLICATE_EXECUTION

    def __init__(self, execution_id: str):
        super().__init__(f"Execution '{execution_id}' is already in flight", execution_id=execution_id)
        self.execution_id = execution_id


class InstrumentationFailure(ExecutionError):
    kind = ErrorKind.INSTRUMENTATION_FAILURE


class ProtocolDecodeError(ExecutionError):
    kind = ErrorKind.PROTOCOL_DECODE_ERROR

    def __init__(self, message: str, line: str):
        super().__init__(message, line=line[:200])
        self.line = line


class ComparisonError(ExecutionError):
    """One side of a comparison or profiling run did not succeed."""

    def __init__(self, side: str, kind: ErrorKind, message: str, source_line: Optional[Any] = None):
        super().__init__(f"{side} run failed: {message}", side=side, source_line=source_line)
        self.kind = kind
        self.side = side
