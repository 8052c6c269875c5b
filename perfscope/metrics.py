"""
Reduction of a raw trace into analyst-facing metrics.

Everything here is a pure function of the trace it is given.
"""

from typing import Dict, List, Optional, Sequence, Tuple

from perfscope.complexity import ComplexityEstimate, DataPoint, estimate_complexity
from perfscope.events import (
    CamelModel,
    FunctionCall,
    LineExecution,
    MemorySample,
    TraceEvent,
    VariableState,
)

ROOT_NODE = "global"


class FunctionStats(CamelModel):
    name: str
    call_count: int
    total_duration_ms: float
    average_duration_ms: float


class ExpensiveFunction(CamelModel):
    name: str
    total_duration_ms: float


class MetricsSummary(CamelModel):
    execution_time_ms: float
    peak_memory_bytes: int
    total_function_calls: int
    unique_function_count: int
    most_expensive_function: Optional[ExpensiveFunction] = None


class CallGraphEdge(CamelModel):
    source: str
    target: str
    call_count: int
    cumulative_duration_ms: float
    average_duration_ms: float


class CallGraph(CamelModel):
    nodes: List[str]
    edges: List[CallGraphEdge]


class LineHeatmapEntry(CamelModel):
    line: int
    source_text: str
    execution_count: int
    total_duration_ms: float
    average_duration_ms: float


class MemoryPoint(CamelModel):
    timestamp_ms: float
    value: int
    allocation: int
    deallocation: int


class VariableChange(CamelModel):
    timestamp_ms: float
    value: str
    line: Optional[int] = None


class VariableTimeline(CamelModel):
    name: str
    type_name: str
    changes: List[VariableChange]


class ExecutionMetrics(CamelModel):
    summary: MetricsSummary
    call_graph: CallGraph
    heatmap: List[LineHeatmapEntry]
    complexity: ComplexityEstimate
    functions: List[FunctionStats]
    memory_usage: List[MemoryPoint]
    variable_tracing: List[VariableTimeline]


def _of_kind(trace: Sequence[TraceEvent], kind) -> list:
    return [event for event in trace if isinstance(event, kind)]


def function_stats(calls: Sequence[FunctionCall]) -> List[FunctionStats]:
    # dicts keep first-seen order, which breaks ties below
    totals: Dict[str, List[float]] = {}
    for call in calls:
        entry = totals.setdefault(call.name, [0, 0.0])
        entry[0] += 1
        entry[1] += call.duration_ms
    return [
        FunctionStats(name=name, call_count=count, total_duration_ms=total, average_duration_ms=total / count)
        for name, (count, total) in totals.items()
    ]


def most_expensive(stats: Sequence[FunctionStats]) -> Optional[ExpensiveFunction]:
    best = None
    for entry in stats:
        if best is None or entry.total_duration_ms > best.total_duration_ms:
            best = entry
    if best is None:
        return None
    return ExpensiveFunction(name=best.name, total_duration_ms=best.total_duration_ms)


def summarize(trace: Sequence[TraceEvent], duration_ms: float) -> MetricsSummary:
    calls = _of_kind(trace, FunctionCall)
    stats = function_stats(calls)
    samples = _of_kind(trace, MemorySample)
    return MetricsSummary(
        execution_time_ms=duration_ms,
        peak_memory_bytes=max((sample.rss for sample in samples), default=0),
        total_function_calls=len(calls),
        unique_function_count=len(stats),
        most_expensive_function=most_expensive(stats),
    )


def call_graph(calls: Sequence[FunctionCall]) -> CallGraph:
    nodes: Dict[str, None] = {ROOT_NODE: None}
    edges: Dict[Tuple[str, str], List[float]] = {}
    for call in calls:
        source = call.caller or ROOT_NODE
        nodes.setdefault(source, None)
        nodes.setdefault(call.name, None)
        entry = edges.setdefault((source, call.name), [0, 0.0])
        entry[0] += 1
        entry[1] += call.duration_ms
    return CallGraph(
        nodes=list(nodes),
        edges=[
            CallGraphEdge(
                source=source,
                target=target,
                call_count=count,
                cumulative_duration_ms=total,
                average_duration_ms=total / count,
            )
            for (source, target), (count, total) in edges.items()
        ],
    )


def line_heatmap(lines: Sequence[LineExecution]) -> List[LineHeatmapEntry]:
    """Hotspots: lines executed more than once, slowest first."""
    grouped: Dict[int, List] = {}
    for step in lines:
        entry = grouped.setdefault(step.source_line, [step.source_text, 0, 0.0])
        entry[1] += 1
        entry[2] += step.duration_ms
    hotspots = [
        LineHeatmapEntry(
            line=line,
            source_text=text,
            execution_count=count,
            total_duration_ms=total,
            average_duration_ms=total / count,
        )
        for line, (text, count, total) in sorted(grouped.items())
        if count > 1
    ]
    # sorted() is stable, equal totals stay in line order
    return sorted(hotspots, key=lambda entry: entry.total_duration_ms, reverse=True)


def memory_timeline(samples: Sequence[MemorySample]) -> List[MemoryPoint]:
    return [
        MemoryPoint(
            timestamp_ms=sample.timestamp_ms,
            value=sample.rss,
            allocation=sample.allocated_delta,
            deallocation=sample.deallocated_delta,
        )
        for sample in samples
    ]


def variable_timelines(states: Sequence[VariableState]) -> List[VariableTimeline]:
    grouped: Dict[str, VariableTimeline] = {}
    for state in states:
        timeline = grouped.get(state.name)
        if timeline is None:
            timeline = grouped[state.name] = VariableTimeline(name=state.name, type_name=state.type_name, changes=[])
        timeline.type_name = state.type_name
        timeline.changes.append(
            VariableChange(timestamp_ms=state.timestamp_ms, value=state.value_summary, line=state.source_line)
        )
    return list(grouped.values())


def aggregate(
    trace: Sequence[TraceEvent],
    duration_ms: float,
    complexity_hint: Optional[Tuple[str, str]] = None,
    data_points: Optional[Sequence[DataPoint]] = None,
) -> ExecutionMetrics:
    calls = _of_kind(trace, FunctionCall)
    return ExecutionMetrics(
        summary=summarize(trace, duration_ms),
        call_graph=call_graph(calls),
        heatmap=line_heatmap(_of_kind(trace, LineExecution)),
        complexity=estimate_complexity(data_points, complexity_hint),
        functions=function_stats(calls),
        memory_usage=memory_timeline(_of_kind(trace, MemorySample)),
        variable_tracing=variable_timelines(_of_kind(trace, VariableState)),
    )
