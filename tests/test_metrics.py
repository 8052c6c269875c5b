from perfscope.events import FunctionCall, LineExecution, MemorySample, VariableState
from perfscope.metrics import (
    ROOT_NODE,
    aggregate,
    call_graph,
    function_stats,
    line_heatmap,
    most_expensive,
    summarize,
    variable_timelines,
)


def _call(name, caller, duration, ts=0.0):
    return FunctionCall(timestamp_ms=ts, name=name, caller=caller, duration_ms=duration)


def _line(line, duration, ts=0.0):
    return LineExecution(timestamp_ms=ts, source_line=line, source_text=f"line {line}", duration_ms=duration)


def test_summary_counts_calls_and_peak_memory():
    trace = [
        MemorySample(timestamp_ms=0.0, rss=100),
        _call("a", "global", 2.0),
        MemorySample(timestamp_ms=1.0, rss=500),
        _call("b", "a", 1.0),
        _call("a", "global", 3.0),
        MemorySample(timestamp_ms=2.0, rss=300),
    ]
    summary = summarize(trace, 12.5)
    assert summary.execution_time_ms == 12.5
    assert summary.peak_memory_bytes == 500
    assert summary.total_function_calls == 3
    assert summary.unique_function_count == 2
    assert summary.most_expensive_function.name == "a"
    assert summary.most_expensive_function.total_duration_ms == 5.0


def test_empty_trace():
    summary = summarize([], 0.0)
    assert summary.peak_memory_bytes == 0
    assert summary.total_function_calls == 0
    assert summary.unique_function_count == 0
    assert summary.most_expensive_function is None


def test_most_expensive_tie_goes_to_first_seen():
    stats = function_stats([_call("first", "global", 2.0), _call("second", "global", 2.0)])
    assert most_expensive(stats).name == "first"


def test_function_stats_average():
    stats = {s.name: s for s in function_stats([_call("f", "global", 1.0), _call("f", "global", 3.0)])}
    assert stats["f"].call_count == 2
    assert stats["f"].total_duration_ms == 4.0
    assert stats["f"].average_duration_ms == 2.0


def test_call_graph_edges():
    graph = call_graph([
        _call("fib", "global", 5.0),
        _call("fib", "fib", 1.0),
        _call("fib", "fib", 2.0),
        _call("helper", None, 0.5),
    ])
    assert graph.nodes[0] == ROOT_NODE
    assert set(graph.nodes) == {ROOT_NODE, "fib", "helper"}
    edges = {(e.source, e.target): e for e in graph.edges}
    assert edges[("fib", "fib")].call_count == 2
    assert edges[("fib", "fib")].cumulative_duration_ms == 3.0
    assert edges[("fib", "fib")].average_duration_ms == 1.5
    # calls without a recorded caller hang off the root
    assert (ROOT_NODE, "helper") in edges


def test_call_graph_without_calls_has_root_only():
    graph = call_graph([])
    assert graph.nodes == [ROOT_NODE]
    assert graph.edges == []


def test_heatmap_keeps_repeated_lines_only():
    heatmap = line_heatmap([_line(1, 5.0), _line(2, 1.0), _line(2, 1.0), _line(3, 0.5), _line(3, 0.5)])
    assert [entry.line for entry in heatmap] == [2, 3]
    assert heatmap[0].execution_count == 2
    assert heatmap[0].total_duration_ms == 2.0
    assert heatmap[0].average_duration_ms == 1.0
    assert heatmap[0].source_text == "line 2"


def test_heatmap_ties_ordered_by_line():
    heatmap = line_heatmap([_line(7, 1.0), _line(7, 1.0), _line(4, 1.0), _line(4, 1.0)])
    assert [entry.line for entry in heatmap] == [4, 7]


def test_variable_timelines_group_by_name():
    timelines = variable_timelines([
        VariableState(timestamp_ms=1.0, name="x", type_name="int", value_summary="1", source_line=1),
        VariableState(timestamp_ms=2.0, name="y", type_name="str", value_summary="'a'", source_line=2),
        VariableState(timestamp_ms=3.0, name="x", type_name="float", value_summary="1.5", source_line=3),
    ])
    assert [t.name for t in timelines] == ["x", "y"]
    assert [c.value for c in timelines[0].changes] == ["1", "1.5"]
    assert timelines[0].type_name == "float"


def test_aggregate_is_deterministic():
    trace = [MemorySample(timestamp_ms=0.0, rss=10), _call("f", "global", 1.0), _line(1, 1.0), _line(1, 1.0)]
    first = aggregate(trace, 3.0, ("O(1)", "No loops or recursion detected."))
    second = aggregate(trace, 3.0, ("O(1)", "No loops or recursion detected."))
    assert first == second
    assert first.complexity.notation == "O(1)"
    assert first.complexity.confidence == 0.1
    assert first.memory_usage[0].value == 10
    assert first.wire()["summary"]["executionTimeMs"] == 3.0


def test_summary_of_two_functions():
    trace = [_call("f", "global", d) for d in (10.0, 20.0, 30.0)] + [_call("g", "global", 5.0) for _ in range(2)]
    summary = summarize(trace, 70.0)
    assert summary.most_expensive_function.name == "f"
    assert summary.most_expensive_function.total_duration_ms == 60.0
    assert summary.unique_function_count == 2
    assert summary.total_function_calls == 5


def test_single_executions_are_not_hotspots():
    heatmap = line_heatmap([_line(4, 9.0)] + [_line(7, 1.0) for _ in range(3)])
    assert [(entry.line, entry.execution_count) for entry in heatmap] == [(7, 3)]
