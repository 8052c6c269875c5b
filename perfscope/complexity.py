"""
Time-complexity estimation.

Two sources of evidence:
  * a static look at the source (loop nesting, recursion shape), which is
    only ever a hint and is reported with a fixed low confidence;
  * durations measured for several input sizes, fitted against the usual
    growth classes by least squares.
"""

import ast
import math
import re
import statistics
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from perfscope.events import CamelModel

DEFAULT_NOTATION = "O(n)"
SINGLE_SAMPLE_CONFIDENCE = 0.1
# A simpler class wins when its error is within this factor of the best fit
SIMPLICITY_TOLERANCE = 1.05


class DataPoint(CamelModel):
    input_size: float
    duration_ms: float


class ComplexityEstimate(CamelModel):
    notation: str
    confidence: float
    data_points: List[DataPoint] = []
    derivation: str = ""


# --- static hints ---

class ComplexityAnalyzer(ast.NodeVisitor):
    def __init__(self):
        self.max_depth = 0
        self.current_depth = 0
        self.log_loops = 0
        self.defined_functions = set()
        self.recursive_calls = 0
        self.recursion_type = None  # 'divide' when arguments are slices

    def visit_FunctionDef(self, node):
        self.defined_functions.add(node.name)
        # The snippet is assumed to be the algorithm under test, so all
        # functions share one nesting counter.
        self.generic_visit(node)

    visit_AsyncFunctionDef = visit_FunctionDef

    def _loop(self, node, logarithmic=False):
        self.current_depth += 1
        self.max_depth = max(self.max_depth, self.current_depth)
        if logarithmic:
            self.log_loops += 1
        self.generic_visit(node)
        self.current_depth -= 1

    def visit_For(self, node):
        self._loop(node)

    visit_AsyncFor = visit_For

    def visit_While(self, node):
        # A loop variable scaled by * or / (or shifted) each pass runs log N times
        logarithmic = any(
            isinstance(child, ast.AugAssign)
            and isinstance(child.op, (ast.Mult, ast.Div, ast.FloorDiv, ast.RShift, ast.LShift))
            for child in ast.walk(node)
        )
        self._loop(node, logarithmic)

    def visit_Call(self, node):
        if isinstance(node.func, ast.Name) and node.func.id in self.defined_functions:
            self.recursive_calls += 1

            # Slicing arguments (arr[:mid]) point at divide and conquer
            for arg in node.args:
                if isinstance(arg, ast.Subscript) and isinstance(arg.slice, ast.Slice):
                    self.recursion_type = "divide"

        self.generic_visit(node)

    def get_report(self) -> Tuple[str, str]:
        notation = "O(1)"
        reason = []

        if self.max_depth > 0:
            linear = self.max_depth - min(self.log_loops, self.max_depth)
            notation = _polylog(linear, min(self.log_loops, self.max_depth))
            reason.append(f"{self.max_depth} nested loops detected.")

        # Recursion overrides iteration when stronger
        if self.recursive_calls > 0:
            if self.recursion_type == "divide":
                if self.recursive_calls >= 2:
                    notation = "O(n log n)"
                    reason.append("Recursive divide-and-conquer (2 calls) detected.")
                else:
                    notation = "O(log n)"
                    reason.append("Recursive divide-and-conquer (1 call) detected.")
            elif self.recursive_calls >= 2:
                notation = "O(2^n)"
                reason.append("Multiple recursive calls detected (Exponential).")
            else:
                notation = "O(n)"
                reason.append("Single recursive call detected (Linear).")

        if not reason:
            reason.append("No loops or recursion detected.")
        return notation, " ".join(reason)


def _polylog(power: int, logs: int) -> str:
    parts = []
    if power == 1:
        parts.append("n")
    elif power > 1:
        parts.append(f"n^{power}")
    if logs == 1:
        parts.append("log n")
    elif logs > 1:
        parts.append(f"log^{logs} n")
    return f"O({' '.join(parts) or '1'})"


def analyze_python(source: str) -> Tuple[str, str]:
    try:
        tree = ast.parse(source)
    except (SyntaxError, ValueError) as e:
        return DEFAULT_NOTATION, f"Static analysis unavailable: {e}"
    analyzer = ComplexityAnalyzer()
    analyzer.visit(tree)
    return analyzer.get_report()


def analyze_braces(source: str) -> Tuple[str, str]:
    """Loop count and brace nesting for C-like languages."""
    clean = re.sub(r"//.*", "", source)
    clean = re.sub(r"/\*.*?\*/", "", clean, flags=re.DOTALL)

    max_depth = 0
    depth = 0
    for char in clean:
        if char == "{":
            depth += 1
        elif char == "}":
            depth = max(0, depth - 1)
        max_depth = max(max_depth, depth)

    loops = len(re.findall(r"\b(?:for|while)\s*\(", clean))
    if loops == 0:
        return "O(1)", "No loops detected."
    # function bodies account for one level of braces
    depth = max(1, min(max_depth, loops))
    return _polylog(depth, 0), f"Detected {loops} loops with approx nesting {depth}."


# --- measured growth ---

GROWTH_CLASSES: List[Tuple[str, Callable[[float], float]]] = [
    ("O(1)", lambda n: 1.0),
    ("O(log n)", lambda n: math.log2(n) if n > 1 else 0.0),
    ("O(n)", lambda n: n),
    ("O(n log n)", lambda n: n * math.log2(n) if n > 1 else 0.0),
    ("O(n^2)", lambda n: n ** 2),
    ("O(n^3)", lambda n: n ** 3),
    ("O(2^n)", lambda n: 2.0 ** n),
]

MAX_EXPONENTIAL_SIZE = 64


def _fit(xs: Sequence[float], ys: Sequence[float]) -> Optional[float]:
    """Sum of squared errors of y = a*x + b with a >= 0, None if x is flat."""
    if len(set(xs)) < 2:
        return None
    slope, intercept = statistics.linear_regression(xs, ys)
    if slope < 0:
        return None
    return sum((y - (slope * x + intercept)) ** 2 for x, y in zip(xs, ys))


def estimate_complexity(
    data_points: Optional[Sequence[DataPoint]] = None,
    hint: Optional[Tuple[str, str]] = None,
) -> ComplexityEstimate:
    """
    Estimate the growth class of a snippet.

    With fewer than two distinct input sizes there is nothing to fit: the
    static hint (or O(n)) is returned with SINGLE_SAMPLE_CONFIDENCE and no
    data points.
    """
    points = sorted(data_points or [], key=lambda p: p.input_size)
    sizes = {p.input_size for p in points}
    if len(sizes) < 2:
        notation, derivation = hint or (DEFAULT_NOTATION, "No static analysis available.")
        return ComplexityEstimate(
            notation=notation,
            confidence=SINGLE_SAMPLE_CONFIDENCE,
            derivation=f"{derivation} Single run, estimate is a hint only.",
        )

    ys = [p.duration_ms for p in points]
    mean = statistics.fmean(ys)
    total = sum((y - mean) ** 2 for y in ys)

    errors: Dict[str, float] = {"O(1)": total}
    largest = max(sizes)
    for notation, growth in GROWTH_CLASSES[1:]:
        if notation == "O(2^n)" and largest > MAX_EXPONENTIAL_SIZE:
            continue
        sse = _fit([growth(p.input_size) for p in points], ys)
        if sse is not None:
            errors[notation] = sse

    best = min(errors.values())
    chosen = next(
        notation for notation, _ in GROWTH_CLASSES
        if notation in errors and errors[notation] <= best * SIMPLICITY_TOLERANCE + 1e-12
    )
    r_squared = 1.0 if total == 0 else max(0.0, 1.0 - errors[chosen] / total)
    if chosen == "O(1)":
        # a flat line explains no variance; judge it by relative spread instead
        r_squared = 1.0 if mean == 0 else max(0.0, 1.0 - math.sqrt(total / len(ys)) / mean)

    k = len(points)
    confidence = max(SINGLE_SAMPLE_CONFIDENCE, r_squared * max(0.0, (k - 2) / (k + 1)))
    return ComplexityEstimate(
        notation=chosen,
        confidence=round(min(confidence, 1.0), 4),
        data_points=list(points),
        derivation=f"Least-squares fit over {k} runs (R^2={r_squared:.3f}).",
    )
