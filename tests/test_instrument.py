import sys

import pytest

from perfscope import probe
from perfscope.events import TrackingOptions
from perfscope.instrument import HEADER_LINES, PROBE_MODULE, instrument_python
from perfscope.protocol import FrameKind, split_line


@pytest.fixture
def run_in_process(monkeypatch, capfd):
    """Execute instrumented source in this interpreter and collect its frames."""
    monkeypatch.setitem(sys.modules, PROBE_MODULE, probe)
    monkeypatch.setattr(sys, "setrecursionlimit", lambda limit: None)

    def run(source, options=None):
        namespace = {"__name__": "__main__"}
        code = instrument_python(source, options or TrackingOptions())
        exec(compile(code, "snippet.py", "exec"), namespace)
        frames = []
        for line in capfd.readouterr().out.splitlines(keepends=True):
            frames.extend(split_line(line))
        return namespace, frames

    return run


def _events(frames, kind):
    return [f.event for f in frames if f.kind is FrameKind.EVENT and f.event.kind == kind]


def test_rewrite_adds_hooks_and_compiles():
    code = instrument_python("total = 0\nfor i in range(3):\n    total += i\nprint(total)\n", TrackingOptions())
    lines = code.splitlines()
    assert lines[0] == "# instrumented by perfscope"
    assert lines[1] == f"import {PROBE_MODULE} as __probe__"
    assert lines[2].startswith("__probe__.start(")
    assert len(lines) > HEADER_LINES
    assert "__probe__.line(1)" in code
    assert "__probe__.var('total', total, 3)" in code
    assert "__probe__.var('i', i, 2)" in code
    compile(code, "snippet.py", "exec")


def test_future_imports_are_hoisted():
    code = instrument_python("from __future__ import annotations\nx: int = 5\n", TrackingOptions())
    assert code.splitlines()[0] == "from __future__ import annotations"
    compile(code, "snippet.py", "exec")


def test_unparseable_snippet_runs_through_exec():
    code = instrument_python("def broken(:\n    pass\n", TrackingOptions())
    assert "exec(compile(" in code
    compile(code, "snippet.py", "exec")


def test_program_behaviour_is_preserved(run_in_process):
    source = (
        "def greet(name):\n"
        "    \"\"\"Say hello.\"\"\"\n"
        "    return 'hi ' + name\n"
        "\n"
        "class Box:\n"
        "    \"\"\"Holds one value.\"\"\"\n"
        "    size = 3\n"
        "\n"
        "message = greet('bob')\n"
    )
    namespace, frames = run_in_process(source)
    assert namespace["message"] == "hi bob"
    assert namespace["greet"].__doc__ == "Say hello."
    assert namespace["Box"].__doc__ == "Holds one value."
    assert namespace["Box"].size == 3
    assert frames[-1].kind is FrameKind.COMPLETE

    calls = _events(frames, "functionCall")
    assert [(c.name, c.caller) for c in calls] == [("greet", "global")]
    assert calls[0].arg_summaries == ["'bob'"]


def test_variables_and_lines_are_traced(run_in_process):
    _, frames = run_in_process("x = 1\nx += 2\nfor i in range(2):\n    x *= 2\n")
    states = [(v.name, v.value_summary, v.source_line) for v in _events(frames, "variableState")]
    assert states == [("x", "1", 1), ("x", "3", 2), ("i", "0", 3), ("x", "6", 4), ("i", "1", 3), ("x", "12", 4)]
    lines = [step.source_line for step in _events(frames, "executionFlow")]
    assert lines == [1, 2, 4, 4]
    assert _events(frames, "executionFlow")[0].source_text == "x = 1"


def test_disabled_options_emit_no_events(run_in_process):
    options = TrackingOptions(track_memory=False, track_variables=False, track_functions=False,
                              track_execution_flow=False)
    namespace, frames = run_in_process("def f(a):\n    return a * 2\nresult = f(21)\n", options)
    assert namespace["result"] == 42
    assert [frame.kind for frame in frames] == [FrameKind.COMPLETE]


def test_syntax_error_is_reported_with_its_line(run_in_process):
    _, frames = run_in_process("x = 1\ndef broken(:\n    pass\n")
    assert frames[-1].kind is FrameKind.ERROR
    assert frames[-1].payload["line"] == 2
    assert frames[-1].payload["message"].startswith("SyntaxError")


def test_generators_are_left_alone(run_in_process):
    namespace, frames = run_in_process("def count(n):\n    yield from range(n)\ntotal = sum(count(4))\n")
    assert namespace["total"] == 6
    assert all(call.name != "count" for call in _events(frames, "functionCall"))


def test_module_docstring_survives_the_wrapper(run_in_process):
    options = TrackingOptions(track_memory=False, track_variables=False, track_functions=False,
                              track_execution_flow=False)
    namespace, frames = run_in_process('"""Module doc."""\nprint(__doc__)\n', options)
    assert namespace["__doc__"] == "Module doc."
    output = "".join(frame.text for frame in frames if frame.kind is FrameKind.OUTPUT)
    assert output == "Module doc.\n"


def test_docstring_keeps_future_imports_first():
    code = instrument_python('"""Doc."""\nfrom __future__ import annotations\nx: int = 1\n', TrackingOptions())
    lines = code.splitlines()
    assert lines[0] == "from __future__ import annotations"
    assert lines[1] == f"import {PROBE_MODULE} as __probe__; __doc__ = 'Doc.'"
    compile(code, "snippet.py", "exec")
