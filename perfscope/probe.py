"""
Runtime hooks for instrumented Python snippets.

This file is copied next to the instrumented script inside the sandbox and
imported by it, so it must only depend on the standard library and psutil.
Every hook checks its tracking option at call time: the rewritten source
always calls the hooks and disabled concerns cost a function call.
"""

import functools
import inspect
import json
import os
import sys
import time
import traceback

import psutil

EVENT_PREFIX = "__PERFSCOPE_EVENT__"
COMPLETE_PREFIX = "__PERFSCOPE_COMPLETE__"
ERROR_PREFIX = "__PERFSCOPE_ERROR__"

SNIPPET_FILENAME = "<snippet>"
SUMMARY_LIMIT = 100
MEMORY_SAMPLE_INTERVAL_MS = 5.0

_collector = None


def summarize(value):
    try:
        text = repr(value)
    except Exception:
        return "<unrepresentable>"
    if len(text) > SUMMARY_LIMIT:
        text = text[:SUMMARY_LIMIT - 3] + "..."
    return text


class _NoopTimer:
    __slots__ = ()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False


_NOOP = _NoopTimer()


class _LineTimer:
    __slots__ = ("collector", "line", "started")

    def __init__(self, collector, line):
        self.collector = collector
        self.line = line

    def __enter__(self):
        self.started = time.perf_counter()
        return self

    def __exit__(self, *exc_info):
        self.collector.record_line(self.line, self.started)
        return False


class Collector:
    def __init__(self, options, line_map, source_lines):
        self.options = options
        self.line_map = line_map
        self.source_lines = source_lines
        self.memory_usage = []
        self.function_calls = []
        self.variable_states = []
        self.execution_flow = []
        self.stack = []
        self.finished = False
        self.script = os.path.abspath(sys.argv[0]) if sys.argv and sys.argv[0] else None
        self._out = sys.__stdout__ or sys.stdout
        self._process = psutil.Process(os.getpid())
        self._last_rss = None
        self._last_sample = None
        self._last_ts = 0.0
        self.started = time.perf_counter()

    def now(self):
        ts = (time.perf_counter() - self.started) * 1000.0
        # perf_counter is monotonic, the clamp keeps float rounding honest
        if ts < self._last_ts:
            ts = self._last_ts
        self._last_ts = ts
        return ts

    def write(self, prefix, payload):
        self._out.write(prefix + json.dumps(payload, default=str) + "\n")
        self._out.flush()

    def emit(self, event, bucket, data):
        bucket.append(data)
        self.write(EVENT_PREFIX, {"event": event, "data": data})

    # --- memory ---

    def sample_memory(self, force=False):
        if not self.options.get("trackMemory"):
            return
        ts = self.now()
        if not force and self._last_sample is not None and ts - self._last_sample < MEMORY_SAMPLE_INTERVAL_MS:
            return
        self._last_sample = ts
        info = self._process.memory_info()
        delta = 0 if self._last_rss is None else info.rss - self._last_rss
        self._last_rss = info.rss
        self.emit("memory", self.memory_usage, {
            "timestampMs": ts,
            "rss": info.rss,
            "vms": info.vms,
            "allocatedDelta": max(delta, 0),
            "deallocatedDelta": max(-delta, 0),
        })

    # --- lines ---

    def record_line(self, line, started):
        duration = (time.perf_counter() - started) * 1000.0
        text = self.source_lines[line - 1].strip() if 0 < line <= len(self.source_lines) else ""
        self.emit("executionFlow", self.execution_flow, {
            "timestampMs": self.now(),
            "sourceLine": line,
            "sourceText": text,
            "durationMs": duration,
        })

    # --- functions ---

    def enter(self, name):
        if not self.options.get("trackFunctions"):
            return None
        caller = self.stack[-1] if self.stack else "global"
        self.stack.append(name)
        return name, caller, time.perf_counter()

    def leave(self, token, args, kwargs):
        if token is None:
            return
        name, caller, started = token
        duration = (time.perf_counter() - started) * 1000.0
        if self.stack:
            self.stack.pop()
        summaries = [summarize(arg) for arg in args]
        summaries.extend(f"{key}={summarize(value)}"[:SUMMARY_LIMIT] for key, value in kwargs.items())
        self.emit("functionCall", self.function_calls, {
            "timestampMs": self.now(),
            "name": name,
            "caller": caller,
            "argSummaries": summaries,
            "durationMs": duration,
        })
        self.sample_memory()

    # --- termination ---

    def failing_line(self, exc):
        if isinstance(exc, SyntaxError) and exc.filename == SNIPPET_FILENAME and exc.lineno:
            return exc.lineno
        line = None
        for frame, lineno in traceback.walk_tb(exc.__traceback__):
            filename = frame.f_code.co_filename
            if filename == SNIPPET_FILENAME:
                line = lineno
            elif self.script and os.path.abspath(filename) == self.script:
                mapped = self.line_map.get(lineno) if self.line_map is not None else None
                if mapped is not None:
                    line = mapped
        return line if line is not None else "unknown"

    def finish(self, exc=None):
        if self.finished:
            return
        self.finished = True
        if isinstance(exc, SystemExit) and exc.code in (None, 0):
            exc = None
        self.sample_memory(force=True)
        if exc is None:
            self.write(COMPLETE_PREFIX, {
                "executionTime": self.now(),
                "memoryUsage": self.memory_usage,
                "functionCalls": self.function_calls,
                "variableStates": self.variable_states,
                "executionFlow": self.execution_flow,
            })
            return
        self.write(ERROR_PREFIX, {
            "message": f"{type(exc).__name__}: {exc}",
            "type": type(exc).__name__,
            "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            "line": self.failing_line(exc),
        })


# --- hooks called from instrumented source ---

def start(options, line_map=None, source_lines=()):
    global _collector
    _collector = Collector(options, line_map, list(source_lines))
    # traced functions put one wrapper frame under every user frame
    sys.setrecursionlimit(sys.getrecursionlimit() * 2 + 100)
    _collector.sample_memory(force=True)


def line(number):
    if not _collector.options.get("trackExecutionFlow"):
        return _NOOP
    return _LineTimer(_collector, number)


def var(name, value, number):
    if not _collector.options.get("trackVariables"):
        return
    _collector.emit("variableState", _collector.variable_states, {
        "timestampMs": _collector.now(),
        "name": name,
        "typeName": type(value).__name__,
        "valueSummary": summarize(value),
        "sourceLine": number,
    })


def traced(func):
    if inspect.isgeneratorfunction(func) or inspect.isasyncgenfunction(func):
        return func

    if inspect.iscoroutinefunction(func):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            token = _collector.enter(func.__name__)
            try:
                return await func(*args, **kwargs)
            finally:
                _collector.leave(token, args, kwargs)
        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        token = _collector.enter(func.__name__)
        try:
            return func(*args, **kwargs)
        finally:
            _collector.leave(token, args, kwargs)
    return wrapper


def finish(exc=None):
    _collector.finish(exc)
