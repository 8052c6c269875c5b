import subprocess
import sys
import time
import uuid

import pytest

from perfscope.errors import ErrorKind
from perfscope.events import Failure, Success, TrackingOptions
from perfscope.python_tracer import PythonHandler


async def run_python(code, stdin=None, options=None, timeout=None):
    handler = PythonHandler()
    options = options or TrackingOptions()
    events = []
    outcome = await handler.execute(
        handler.instrument(code, options),
        stdin or [],
        options,
        events.append,
        execution_id=str(uuid.uuid4()),
        timeout=timeout,
    )
    return outcome, events


@pytest.mark.asyncio
async def test_output_is_not_polluted_by_frames():
    outcome, events = await run_python("print('hello')\nprint('world')\n")
    assert isinstance(outcome, Success), outcome
    assert outcome.output == "hello\nworld\n"
    assert events


@pytest.mark.asyncio
async def test_output_without_trailing_newline():
    outcome, _ = await run_python("print('a', end='')\nx = 1\n")
    assert isinstance(outcome, Success), outcome
    assert outcome.output == "a"


@pytest.mark.asyncio
async def test_events_arrive_in_timestamp_order():
    outcome, events = await run_python(
        "def square(n):\n    return n * n\n\nvalues = [square(i) for i in range(20)]\n"
    )
    assert isinstance(outcome, Success), outcome
    timestamps = [event.timestamp_ms for event in events]
    assert timestamps == sorted(timestamps)
    calls = [event for event in events if event.kind == "functionCall"]
    assert len(calls) == 20
    assert outcome.total_duration_ms >= timestamps[-1]


@pytest.mark.asyncio
async def test_recursive_calls_record_their_caller():
    outcome, events = await run_python(
        "def fact(n):\n    return 1 if n <= 1 else n * fact(n - 1)\n\nresult = fact(4)\n"
    )
    assert isinstance(outcome, Success), outcome
    callers = [event.caller for event in events if event.kind == "functionCall"]
    # innermost call finishes first
    assert callers == ["fact", "fact", "fact", "global"]


@pytest.mark.asyncio
async def test_runtime_error_reports_original_line():
    outcome, _ = await run_python("x = 1\ny = 0\nz = x / y\n")
    assert isinstance(outcome, Failure)
    assert outcome.kind is ErrorKind.RUNTIME_ERROR
    assert outcome.source_line == 3
    assert outcome.message.startswith("ZeroDivisionError")


@pytest.mark.asyncio
async def test_error_inside_function_reports_raising_line():
    outcome, _ = await run_python("def boom():\n    raise ValueError('nope')\n\nboom()\n")
    assert isinstance(outcome, Failure)
    assert outcome.source_line == 2
    assert outcome.message == "ValueError: nope"


@pytest.mark.asyncio
async def test_syntax_error_is_a_runtime_failure():
    outcome, _ = await run_python("def broken(:\n    pass\n")
    assert isinstance(outcome, Failure)
    assert outcome.kind is ErrorKind.RUNTIME_ERROR
    assert outcome.source_line == 1


@pytest.mark.asyncio
async def test_timeout_kills_the_program():
    outcome, _ = await run_python("import time\nwhile True:\n    time.sleep(0.01)\n", timeout=0.2)
    assert isinstance(outcome, Failure)
    assert outcome.kind is ErrorKind.TIMEOUT
    assert outcome.timeout_ms == 200
    assert "200ms" in outcome.message


@pytest.mark.asyncio
async def test_stdin_lines_are_fed():
    outcome, _ = await run_python("a = input()\nb = input()\nprint(int(a) + int(b))\n", stdin=["2", "40"])
    assert isinstance(outcome, Success), outcome
    assert outcome.output == "42\n"


@pytest.mark.asyncio
async def test_sys_exit_zero_is_success():
    outcome, _ = await run_python("import sys\nprint('bye')\nsys.exit(0)\n")
    assert isinstance(outcome, Success), outcome
    assert outcome.output == "bye\n"


@pytest.mark.asyncio
async def test_hard_exit_without_completion():
    outcome, _ = await run_python("import os\nos._exit(3)\n")
    assert isinstance(outcome, Failure)
    assert outcome.kind is ErrorKind.RUNTIME_ERROR
    assert "exited with code 3" in outcome.message


@pytest.mark.asyncio
async def test_final_trace_matches_streamed_events():
    outcome, events = await run_python("total = 0\nfor i in range(5):\n    total += i\n")
    assert isinstance(outcome, Success), outcome
    assert len(outcome.trace) == len(events)
    assert {event.kind for event in outcome.trace} == {"memory", "variableState", "executionFlow"}


QUIET = TrackingOptions(track_memory=False, track_variables=False, track_functions=False,
                        track_execution_flow=False)

TRANSPARENCY_SNIPPETS = [
    '"""Module doc."""\nprint(__doc__)\n',
    "from __future__ import annotations\nx: list[int] = [3, 1, 2]\nprint(sorted(x), __name__)\n",
    "def fib(n):\n    return n if n < 2 else fib(n - 1) + fib(n - 2)\n\nprint([fib(i) for i in range(10)])\n",
    "class Point:\n    def __init__(self, x):\n        self.x = x\n\n    def __repr__(self):\n        return f'Point({self.x})'\n\nprint(Point(4), Point.__init__.__name__)\n",
    "a, *rest = 'hello'\nfor i, c in enumerate(rest):\n    if i % 2:\n        continue\n    print(i, c)\nelse:\n    print('done')\n",
]


@pytest.mark.asyncio
@pytest.mark.parametrize("code", TRANSPARENCY_SNIPPETS)
async def test_instrumented_output_matches_plain_run(code, tmp_path):
    script = tmp_path / "plain.py"
    script.write_text(code)
    plain = subprocess.run([sys.executable, str(script)], capture_output=True, text=True, check=True)

    for options in (QUIET, TrackingOptions()):
        outcome, _ = await run_python(code, options=options)
        assert isinstance(outcome, Success), outcome
        assert outcome.output == plain.stdout


@pytest.mark.asyncio
async def test_timeout_is_enforced_promptly():
    started = time.perf_counter()
    outcome, _ = await run_python("while True:\n    pass\n", timeout=0.2)
    elapsed = time.perf_counter() - started
    assert isinstance(outcome, Failure)
    assert outcome.kind is ErrorKind.TIMEOUT
    # 200ms plus kill grace and interpreter start-up
    assert elapsed < 0.2 + 1.5
