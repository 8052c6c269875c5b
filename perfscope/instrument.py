"""
Source-to-source instrumentation of Python snippets.

The rewrite works on the AST and unparses the result:

    from __future__ import ...            # hoisted, or a comment
    import _perfscope_probe as __probe__
    __probe__.start({options}, {line map}, [source lines])
    try:
        with __probe__.line(3):
            total = 0
        __probe__.var('total', total, 3)
        ...
    except BaseException as __probe_exc__:
        __probe__.finish(__probe_exc__)
    else:
        __probe__.finish()

The header is always HEADER_LINES long so the line map, computed after
unparsing the body, stays valid when the header is prepended.
"""

import ast
import logging
from typing import Dict, List, Optional, Tuple

from perfscope.errors import InstrumentationFailure
from perfscope.events import TrackingOptions
from perfscope.probe import SNIPPET_FILENAME

logger = logging.getLogger(__name__)

PROBE_MODULE = "_perfscope_probe"
PROBE_ALIAS = "__probe__"
EXC_NAME = "__probe_exc__"
HEADER_LINES = 3

# Statements that are timed as a single line
SIMPLE_STATEMENTS = (
    ast.Expr, ast.Assign, ast.AugAssign, ast.AnnAssign, ast.Return, ast.Raise,
    ast.Assert, ast.Delete, ast.Import, ast.ImportFrom, ast.Break, ast.Continue, ast.Pass,
)


def probe_options(options: TrackingOptions) -> Dict[str, bool]:
    return {
        "trackMemory": options.track_memory,
        "trackVariables": options.track_variables,
        "trackFunctions": options.track_functions,
        "trackExecutionFlow": options.track_execution_flow,
    }


def _probe(attr: str) -> ast.Attribute:
    return ast.Attribute(value=ast.Name(id=PROBE_ALIAS, ctx=ast.Load()), attr=attr, ctx=ast.Load())


def _call(attr: str, *args: ast.expr) -> ast.Call:
    return ast.Call(func=_probe(attr), args=list(args), keywords=[])


def _target_names(target: ast.expr) -> List[str]:
    if isinstance(target, ast.Name):
        return [target.id]
    if isinstance(target, (ast.Tuple, ast.List)):
        names = []
        for element in target.elts:
            names.extend(_target_names(element))
        return names
    if isinstance(target, ast.Starred):
        return _target_names(target.value)
    return []


def _is_docstring(stmt: ast.stmt) -> bool:
    return (isinstance(stmt, ast.Expr) and isinstance(stmt.value, ast.Constant)
            and isinstance(stmt.value.value, str))


class ProbeInjector:
    """Rewrites statement lists, leaving anything it cannot handle untouched."""

    def block(self, body: List[ast.stmt], docstring: bool = False) -> List[ast.stmt]:
        out: List[ast.stmt] = []
        if docstring and body and _is_docstring(body[0]):
            out.append(body[0])
            body = body[1:]
        for stmt in body:
            try:
                out.extend(self.statement(stmt))
            except Exception:
                logger.debug("Leaving %s at line %s uninstrumented", type(stmt).__name__,
                             getattr(stmt, "lineno", "?"), exc_info=True)
                out.append(stmt)
        return out

    def _var_hooks(self, names: List[str], line: int, anchor: ast.AST) -> List[ast.stmt]:
        hooks = []
        for name in dict.fromkeys(names):
            hook = ast.Expr(_call("var", ast.Constant(name), ast.Name(id=name, ctx=ast.Load()), ast.Constant(line)))
            hooks.append(ast.copy_location(hook, anchor))
        return hooks

    def _assigned_names(self, stmt: ast.stmt) -> List[str]:
        if isinstance(stmt, ast.Assign):
            names = []
            for target in stmt.targets:
                names.extend(_target_names(target))
            return names
        if isinstance(stmt, ast.AugAssign):
            return _target_names(stmt.target)
        if isinstance(stmt, ast.AnnAssign) and stmt.value is not None:
            return _target_names(stmt.target)
        return []

    def statement(self, stmt: ast.stmt) -> List[ast.stmt]:
        if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)):
            stmt.body = self.block(stmt.body, docstring=True)
            stmt.decorator_list.append(ast.copy_location(_probe("traced"), stmt))
            return [stmt]

        if isinstance(stmt, ast.ClassDef):
            stmt.body = self.block(stmt.body, docstring=True)
            return [stmt]

        if isinstance(stmt, (ast.For, ast.AsyncFor)):
            hooks = self._var_hooks(_target_names(stmt.target), stmt.lineno, stmt)
            stmt.body = hooks + self.block(stmt.body)
            stmt.orelse = self.block(stmt.orelse)
            return [stmt]

        if isinstance(stmt, (ast.While, ast.If)):
            stmt.body = self.block(stmt.body)
            stmt.orelse = self.block(stmt.orelse)
            return [stmt]

        if isinstance(stmt, (ast.With, ast.AsyncWith)):
            stmt.body = self.block(stmt.body)
            return [stmt]

        if isinstance(stmt, ast.Try) or type(stmt).__name__ == "TryStar":
            stmt.body = self.block(stmt.body)
            for handler in stmt.handlers:
                handler.body = self.block(handler.body)
            stmt.orelse = self.block(stmt.orelse)
            stmt.finalbody = self.block(stmt.finalbody)
            return [stmt]

        if isinstance(stmt, ast.Match):
            for case in stmt.cases:
                case.body = self.block(case.body)
            return [stmt]

        if isinstance(stmt, SIMPLE_STATEMENTS):
            timer = ast.With(
                items=[ast.withitem(context_expr=_call("line", ast.Constant(stmt.lineno)), optional_vars=None)],
                body=[stmt],
                type_comment=None,
            )
            ast.copy_location(timer, stmt)
            return [timer] + self._var_hooks(self._assigned_names(stmt), stmt.lineno, stmt)

        # global, nonlocal and anything newer than this module
        return [stmt]


def _split_future(body: List[ast.stmt]) -> Tuple[List[str], List[ast.stmt]]:
    features: List[str] = []
    rest: List[ast.stmt] = []
    for stmt in body:
        if isinstance(stmt, ast.ImportFrom) and stmt.module == "__future__":
            features.extend(alias.name for alias in stmt.names)
        else:
            rest.append(stmt)
    return features, rest


def _wrap(body: List[ast.stmt]) -> ast.Module:
    handler = ast.ExceptHandler(
        type=ast.Name(id="BaseException", ctx=ast.Load()),
        name=EXC_NAME,
        body=[ast.Expr(_call("finish", ast.Name(id=EXC_NAME, ctx=ast.Load())))],
    )
    orelse = [ast.Expr(_call("finish"))]
    # line 0 keeps the wrapper out of the line map
    for node in [handler] + orelse:
        for child in ast.walk(node):
            if "lineno" in child._attributes:
                child.lineno = child.end_lineno = 0
                child.col_offset = child.end_col_offset = 0
    wrapper = ast.Try(
        body=body or [ast.Pass()],
        handlers=[handler],
        orelse=orelse,
        finalbody=[],
        lineno=0,
        col_offset=0,
    )
    return ast.Module(body=[wrapper], type_ignores=[])


def _line_map(wrapped: ast.Module, unparsed: str, offset: int) -> Dict[int, int]:
    """
    Map lines of the unparsed body back to the snippet's lines.

    Walks the transformed tree and its re-parse side by side; both walks
    visit the same shapes in the same order as long as unparse round-trips.
    """
    reparsed = ast.parse(unparsed)
    mapping: Dict[int, int] = {}
    for original, emitted in zip(ast.walk(wrapped), ast.walk(reparsed)):
        if type(original) is not type(emitted):
            logger.debug("Unparse changed node shape, line map is partial")
            break
        line = getattr(original, "lineno", None)
        if line and hasattr(emitted, "lineno"):
            mapping.setdefault(emitted.lineno + offset, line)
    return mapping


def _header(features: List[str], options: TrackingOptions,
            line_map: Optional[Dict[int, int]], source_lines: List[str],
            docstring: Optional[str] = None) -> str:
    future = f"from __future__ import {', '.join(features)}" if features else "# instrumented by perfscope"
    probe_import = f"import {PROBE_MODULE} as {PROBE_ALIAS}"
    if docstring is not None:
        # a docstring inside the wrapper would be an ordinary expression
        probe_import += f"; __doc__ = {docstring!r}"
    start = f"{PROBE_ALIAS}.start({probe_options(options)!r}, {line_map!r}, {source_lines!r})"
    return "\n".join([future, probe_import, start]) + "\n"


def fallback_source(source: str, options: TrackingOptions) -> str:
    """
    Run the snippet unmodified through exec() inside the wrapper.

    Used when the snippet does not parse or its rewrite does not compile; the
    program keeps its own behaviour, including its own SyntaxError.
    """
    call = ast.Expr(ast.Call(
        func=ast.Name(id="exec", ctx=ast.Load()),
        args=[ast.Call(
            func=ast.Name(id="compile", ctx=ast.Load()),
            args=[ast.Constant(source), ast.Constant(SNIPPET_FILENAME), ast.Constant("exec")],
            keywords=[],
        )],
        keywords=[],
    ))
    body = ast.unparse(ast.fix_missing_locations(_wrap([call])))
    return _header([], options, None, source.splitlines()) + body + "\n"


def instrument_python(source: str, options: TrackingOptions) -> str:
    source_lines = source.splitlines()
    try:
        tree = ast.parse(source, filename=SNIPPET_FILENAME)
    except (SyntaxError, ValueError) as e:
        logger.info("Snippet does not parse (%s), running it uninstrumented", e)
        return _checked(fallback_source(source, options), None, source, options)

    body = tree.body
    docstring = None
    if body and _is_docstring(body[0]):
        docstring = body[0].value.value
        body = body[1:]
    features, body = _split_future(body)
    wrapped = _wrap(ProbeInjector().block(body))
    ast.fix_missing_locations(wrapped)
    try:
        text = ast.unparse(wrapped)
        line_map = _line_map(wrapped, text, HEADER_LINES)
    except (SyntaxError, ValueError, RecursionError) as e:
        logger.warning("Rewrite could not be unparsed (%s), falling back", e)
        return _checked(fallback_source(source, options), None, source, options)

    instrumented = _header(features, options, line_map, source_lines, docstring) + text + "\n"
    return _checked(instrumented, fallback_source, source, options)


def _checked(instrumented: str, fallback, source: str, options: TrackingOptions) -> str:
    try:
        compile(instrumented, "<instrumented>", "exec", dont_inherit=True)
        return instrumented
    except (SyntaxError, ValueError) as e:
        if fallback is None:
            raise InstrumentationFailure(f"Instrumented program does not compile: {e}") from e
        logger.warning("Instrumented program does not compile (%s), falling back", e)
        return _checked(fallback(source, options), None, source, options)
