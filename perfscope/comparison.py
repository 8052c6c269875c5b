"""
Side-by-side comparison of two snippets, and multi-size profiling of one.
"""

import logging
import uuid
from typing import List, Literal, Sequence, Tuple

from perfscope.complexity import ComplexityEstimate, DataPoint, estimate_complexity
from perfscope.errors import ComparisonError
from perfscope.events import CamelModel, ExecutionRequest, Failure
from perfscope.metrics import ExecutionMetrics, MetricsSummary, aggregate
from perfscope.orchestrator import ExecutionOrchestrator, ExecutionReport

logger = logging.getLogger(__name__)

# (summary attribute, weight); a lower value is better for all of them
WEIGHTS: List[Tuple[str, int]] = [
    ("execution_time_ms", 3),
    ("peak_memory_bytes", 2),
    ("total_function_calls", 1),
]


class MetricDelta(CamelModel):
    delta: float
    percent_change: float


class ComparisonResult(CamelModel):
    execution_time: MetricDelta
    peak_memory: MetricDelta
    function_calls: MetricDelta
    verdict: Literal["first", "second", "tie"]
    score: int = 0


class ComparisonReport(CamelModel):
    first: ExecutionMetrics
    second: ExecutionMetrics
    comparison: ComparisonResult


def _sign(value: float) -> int:
    return (value > 0) - (value < 0)


def metric_delta(first: float, second: float) -> MetricDelta:
    delta = second - first
    if first == 0:
        percent = 0.0 if second == 0 else 100.0
    else:
        percent = delta / first * 100.0
    return MetricDelta(delta=delta, percent_change=percent)


def compare_metrics(first: MetricsSummary, second: MetricsSummary) -> ComparisonResult:
    """
    Judge which run did better. Every delta is second minus first, so a
    negative delta means the second run improved on the first.
    """
    deltas = {name: getattr(second, name) - getattr(first, name) for name, _ in WEIGHTS}
    score = sum(weight * -_sign(deltas[name]) for name, weight in WEIGHTS)
    if score == 0:
        # WEIGHTS is ordered heaviest first
        decisive = next((deltas[name] for name, _ in WEIGHTS if deltas[name] != 0), 0)
        score = -_sign(decisive)

    verdict = "tie"
    if score > 0:
        verdict = "second"
    elif score < 0:
        verdict = "first"

    return ComparisonResult(
        execution_time=metric_delta(first.execution_time_ms, second.execution_time_ms),
        peak_memory=metric_delta(first.peak_memory_bytes, second.peak_memory_bytes),
        function_calls=metric_delta(first.total_function_calls, second.total_function_calls),
        verdict=verdict,
        score=score,
    )


class ComparisonEngine:
    def __init__(self, orchestrator: ExecutionOrchestrator):
        self.orchestrator = orchestrator

    async def _run(self, side: str, request: ExecutionRequest) -> Tuple[ExecutionReport, ExecutionMetrics]:
        report = await self.orchestrator.run(request)
        outcome = report.outcome
        if isinstance(outcome, Failure):
            raise ComparisonError(side, outcome.kind, outcome.message, outcome.source_line)
        handler = self.orchestrator.registry.resolve(request.language)
        metrics = aggregate(outcome.trace, outcome.total_duration_ms, handler.complexity_hint(request.code))
        return report, metrics

    async def compare(self, first: ExecutionRequest, second: ExecutionRequest) -> ComparisonReport:
        """
        Run both requests one after the other, each in its own sandbox, and
        compare the metrics of their final traces.
        """
        _, first_metrics = await self._run("first", first)
        _, second_metrics = await self._run("second", second)
        result = compare_metrics(first_metrics.summary, second_metrics.summary)
        logger.info(
            "Compared %s vs %s: verdict %s (score %d)",
            first.execution_id, second.execution_id, result.verdict, result.score,
        )
        return ComparisonReport(first=first_metrics, second=second_metrics, comparison=result)

    async def profile(self, request: ExecutionRequest, samples: Sequence[Tuple[float, List[str]]]) -> ComplexityEstimate:
        """Run one snippet once per (input_size, stdin) sample and fit the durations."""
        points: List[DataPoint] = []
        for index, (size, stdin) in enumerate(samples):
            run = request.model_copy(update={"stdin": list(stdin), "execution_id": str(uuid.uuid4())})
            report, _ = await self._run(f"sample {index + 1} (n={size:g})", run)
            points.append(DataPoint(input_size=size, duration_ms=report.outcome.total_duration_ms))
        handler = self.orchestrator.registry.resolve(request.language)
        return estimate_complexity(points, handler.complexity_hint(request.code))
