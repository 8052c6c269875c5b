"""
JavaScript handler: token-level instrumentation, run under node.

The rewrite never adds a newline inside the user's code, so instrumented
line N is original line N - HEADER_LINES. Hooks inserted:
  * `__probe.line(N);` in front of statements that start in block context;
  * `f = __probe.traced(f, "f");` at the top of the block that declares
    `function f` (after its directive prologue), which runs after hoisting
    and before any call;
  * `__probe.vars([...])` after each `var`/`let`/`const` statement and
    each plain `name = ...`, `name += ...` or `name++` statement.
Anything the tokenizer cannot follow drops the per-statement hooks, and a
rewrite that node refuses to parse is replaced by the plain wrapper.
"""

import json
import logging
import os
import re
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Tuple

from perfscope.complexity import analyze_braces
from perfscope.config import settings
from perfscope.errors import ErrorKind
from perfscope.events import Failure, TrackingOptions
from perfscope.instrument import probe_options
from perfscope.registry import EventSink, LanguageHandler
from perfscope.sandbox import SandboxRuntime

logger = logging.getLogger(__name__)

SCRIPT_NAME = "snippet.js"
PROBE_FILE = "_perfscope_probe.js"
PROBE_ALIAS = "__probe"
HEADER_LINES = 4
SYNTAX_CHECK_TIMEOUT = 10

PUNCTUATORS = sorted([
    ">>>=", "...", "===", "!==", "**=", "<<=", ">>=", ">>>", "&&=", "||=", "??=",
    "=>", "==", "!=", "<=", ">=", "&&", "||", "??", "?.", "++", "--", "+=", "-=",
    "*=", "/=", "%=", "&=", "|=", "^=", "<<", ">>", "**",
], key=len, reverse=True)

KEYWORDS = {
    "await", "break", "case", "catch", "class", "const", "continue", "debugger", "default",
    "delete", "do", "else", "export", "extends", "finally", "for", "function", "if", "import",
    "in", "instanceof", "let", "new", "of", "return", "static", "super", "switch", "this",
    "throw", "try", "typeof", "var", "void", "while", "with", "yield", "async",
}
# keywords after which an expression (so a regex) may start
REGEX_AFTER = KEYWORDS - {"this", "super"}
# identifiers that can end a statement, for automatic semicolon insertion
VALUE_KEYWORDS = {"this", "super", "break", "continue", "debugger"}
NOT_STATEMENT_START = {"else", "catch", "finally", "case", "default", "in", "instanceof", "of", "extends"}
CONTROL_HEADERS = {"if", "for", "while", "with", "switch", "catch"}
BLOCK_AFTER_KEYWORDS = {"else", "do", "try", "finally"}
ASSIGNMENT_OPERATORS = {
    "=", "+=", "-=", "*=", "/=", "%=", "**=", "<<=", ">>=", ">>>=", "&=", "|=", "^=", "&&=", "||=", "??=",
}


class TokenizeError(ValueError):
    pass


class Token(NamedTuple):
    kind: str  # ident, num, str, template, regex, punct
    text: str
    start: int
    end: int
    line: int


def _is_ident_start(c: str) -> bool:
    return c.isalpha() or c in "_$" or ord(c) > 127


def _is_ident_part(c: str) -> bool:
    return c.isalnum() or c in "_$" or ord(c) > 127


def _regex_allowed(prev: Optional[Token]) -> bool:
    if prev is None:
        return True
    if prev.kind == "ident":
        return prev.text in REGEX_AFTER
    if prev.kind == "punct":
        return prev.text not in (")", "]", "}")
    if prev.kind == "template":
        return prev.text.endswith("${")
    return False


def tokenize(source: str) -> List[Token]:
    tokens: List[Token] = []
    templates: List[int] = []  # brace depth at each open ${
    depth = 0
    line = 1
    i = 0
    n = len(source)

    if source.startswith("#!"):
        i = source.find("\n") if "\n" in source else n

    def scan_template(pos: int, opener: str) -> int:
        nonlocal line
        start = pos
        pos += 1
        while pos < n:
            c = source[pos]
            if c == "\\":
                pos += 2
                continue
            if c == "\n":
                line += 1
            if c == "`":
                tokens.append(Token("template", opener + source[start + 1:pos + 1], start, pos + 1, line))
                return pos + 1
            if source.startswith("${", pos):
                tokens.append(Token("template", opener + source[start + 1:pos + 2], start, pos + 2, line))
                templates.append(depth)
                return pos + 2
            pos += 1
        raise TokenizeError("unterminated template literal")

    while i < n:
        c = source[i]
        if c == "\n":
            line += 1
            i += 1
            continue
        if c.isspace():
            i += 1
            continue
        if source.startswith("//", i):
            end = source.find("\n", i)
            i = n if end == -1 else end
            continue
        if source.startswith("/*", i):
            end = source.find("*/", i + 2)
            if end == -1:
                raise TokenizeError("unterminated comment")
            line += source.count("\n", i, end)
            i = end + 2
            continue

        prev = tokens[-1] if tokens else None
        start_line = line

        if c in "\"'":
            j = i + 1
            while j < n and source[j] != c:
                if source[j] == "\\":
                    if j + 1 < n and source[j + 1] == "\n":
                        line += 1
                    j += 2
                    continue
                if source[j] == "\n":
                    raise TokenizeError(f"unterminated string on line {start_line}")
                j += 1
            if j >= n:
                raise TokenizeError(f"unterminated string on line {start_line}")
            tokens.append(Token("str", source[i:j + 1], i, j + 1, start_line))
            i = j + 1
        elif c == "`":
            i = scan_template(i, "`")
        elif c == "}" and templates and templates[-1] == depth:
            templates.pop()
            i = scan_template(i, "}")
        elif c == "/" and _regex_allowed(prev):
            j = i + 1
            in_class = False
            while j < n:
                ch = source[j]
                if ch == "\\":
                    j += 2
                    continue
                if ch == "\n":
                    raise TokenizeError(f"unterminated regex on line {start_line}")
                if ch == "[":
                    in_class = True
                elif ch == "]":
                    in_class = False
                elif ch == "/" and not in_class:
                    break
                j += 1
            if j >= n:
                raise TokenizeError(f"unterminated regex on line {start_line}")
            j += 1
            while j < n and _is_ident_part(source[j]):
                j += 1
            tokens.append(Token("regex", source[i:j], i, j, start_line))
            i = j
        elif _is_ident_start(c):
            j = i + 1
            while j < n and _is_ident_part(source[j]):
                j += 1
            tokens.append(Token("ident", source[i:j], i, j, start_line))
            i = j
        elif c.isdigit() or (c == "." and i + 1 < n and source[i + 1].isdigit()):
            j = i + 1
            while j < n and (source[j].isalnum() or source[j] in "._"):
                j += 1
            tokens.append(Token("num", source[i:j], i, j, start_line))
            i = j
        else:
            text = next((p for p in PUNCTUATORS if source.startswith(p, i)), c)
            if text == "{":
                depth += 1
            elif text == "}":
                depth -= 1
            tokens.append(Token("punct", text, i, i + len(text), start_line))
            i += len(text)

    if templates:
        raise TokenizeError("unterminated template substitution")
    return tokens


class _Scope(NamedTuple):
    kind: str  # block, object, class, switch, paren, control, bracket, template
    insert_at: int
    lead: str = ""


class _Statement(NamedTuple):
    names: List[str]
    line: int
    declaration: bool


class JsRewrite(NamedTuple):
    insertions: Dict[int, List[str]]


def _after_prologue(tokens: List[Token], index: int, pos: int) -> Tuple[int, str]:
    """Position past the directive prologue ('use strict' and friends) starting at `index`."""
    lead = ""
    while index < len(tokens) and tokens[index].kind == "str":
        directive = tokens[index]
        following = tokens[index + 1] if index + 1 < len(tokens) else None
        if following is not None and following.text == ";":
            pos, lead = following.end, ""
            index += 2
        elif following is None or following.text == "}" or (
                following.line > directive.line and following.kind in ("ident", "str")):
            pos, lead = directive.end, ";"
            index += 1
        else:
            break
    return pos, lead


def _vars_hook(statement: _Statement) -> str:
    entries = ", ".join(f"[{json.dumps(name)}, {name}, {statement.line}]" for name in dict.fromkeys(statement.names))
    return f"{PROBE_ALIAS}.vars([{entries}]);"


def plan_rewrite(tokens: List[Token]) -> JsRewrite:
    insertions: Dict[int, List[str]] = {}
    top_at, top_lead = _after_prologue(tokens, 0, 0)
    scopes = [_Scope("block", top_at, top_lead)]
    closed_control = set()  # indexes of ')' that close an if/for/while header
    pending: Dict[str, int] = {}  # 'class'/'switch' -> scope depth it was seen at
    open_statements: Dict[int, _Statement] = {}  # scope depth -> statement with variable hooks due
    starts = set()

    def add(pos: int, text: str) -> None:
        insertions.setdefault(pos, []).append(text)

    def flush(depth: int, pos: int, lead: str) -> None:
        statement = open_statements.pop(depth, None)
        if statement is not None:
            add(pos, lead + _vars_hook(statement))

    def statement_start(index: int) -> bool:
        token = tokens[index]
        if scopes[-1].kind != "block":
            return False
        if token.kind in ("punct", "str") or token.text in NOT_STATEMENT_START:
            return False
        if index == 0:
            return True
        prev = tokens[index - 1]
        if token.text == "while" and prev.text == "}":
            return False
        if prev.kind == "punct" and prev.text in (";", "{", "}"):
            return True
        # automatic semicolon insertion between lines
        if token.kind != "ident" or token.line == prev.line:
            return False
        if prev.kind == "ident":
            return prev.text not in KEYWORDS or prev.text in VALUE_KEYWORDS
        if prev.kind in ("num", "str", "regex"):
            return True
        if prev.kind == "template":
            return prev.text.endswith("`")
        if prev.text == ")":
            return index - 1 not in closed_control
        return prev.text in ("]", "++", "--")

    def assigned_statement(index: int) -> Optional[_Statement]:
        token = tokens[index]
        following = tokens[index + 1] if index + 1 < len(tokens) else None
        if following is None:
            return None
        if token.text in ("var", "let", "const"):
            if following.kind == "ident" and following.text not in KEYWORDS:
                return _Statement([following.text], token.line, True)
            return None
        if token.kind == "ident" and token.text not in KEYWORDS and following.kind == "punct":
            if following.text in ASSIGNMENT_OPERATORS or following.text in ("++", "--"):
                return _Statement([token.text], token.line, False)
        return None

    for index, token in enumerate(tokens):
        depth = len(scopes)
        at_start = statement_start(index)
        if at_start:
            starts.add(index)
            flush(depth, token.start, ";")
            add(token.start, f"{PROBE_ALIAS}.line({token.line});")
            statement = assigned_statement(index)
            if statement is not None:
                open_statements[depth] = statement

        prev = tokens[index - 1] if index else None
        following = tokens[index + 1] if index + 1 < len(tokens) else None

        if token.kind == "ident":
            if token.text == "function" and (at_start or (prev is not None and prev.text == "async" and index - 1 in starts)):
                if following is not None and following.kind == "ident" and scopes[-1].kind == "block":
                    name = following.text
                    scope = scopes[-1]
                    add(scope.insert_at, f"{scope.lead}{name} = {PROBE_ALIAS}.traced({name}, {json.dumps(name)});")
            elif token.text in ("class", "switch"):
                pending[token.text] = len(scopes)
            continue

        if token.kind == "template":
            if token.text.startswith("}"):
                if scopes[-1].kind != "template":
                    raise TokenizeError(f"unbalanced template on line {token.line}")
                scopes.pop()
            if token.text.endswith("${"):
                scopes.append(_Scope("template", token.end))
            continue

        if token.kind != "punct":
            continue

        if token.text == ";":
            flush(depth, token.end, "")
        elif token.text == ",":
            statement = open_statements.get(depth)
            if statement is not None and statement.declaration and following is not None \
                    and following.kind == "ident" and following.text not in KEYWORDS:
                statement.names.append(following.text)
        elif token.text == "(":
            control = prev is not None and prev.kind == "ident" and prev.text in CONTROL_HEADERS
            scopes.append(_Scope("control" if control else "paren", token.end))
        elif token.text == "[":
            scopes.append(_Scope("bracket", token.end))
        elif token.text == "{":
            if pending.get("class") == len(scopes):
                kind = "class"
                pending.pop("class")
            elif pending.get("switch") == len(scopes):
                kind = "switch"
                pending.pop("switch")
            elif prev is None or (prev.kind == "punct" and prev.text in (";", "{", "}", ")", "=>")):
                kind = "block"
            elif prev.kind == "ident" and prev.text in BLOCK_AFTER_KEYWORDS:
                kind = "block"
            else:
                kind = "object"
            if kind == "block":
                insert_at, lead = _after_prologue(tokens, index + 1, token.end)
                scopes.append(_Scope(kind, insert_at, lead))
            else:
                scopes.append(_Scope(kind, token.end))
        elif token.text in (")", "]", "}"):
            expected = {")": ("paren", "control"), "]": ("bracket",), "}": ("block", "object", "class", "switch")}
            if len(scopes) == 1 or scopes[-1].kind not in expected[token.text]:
                raise TokenizeError(f"unbalanced {token.text!r} on line {token.line}")
            if token.text == "}":
                flush(depth, token.start, ";")
            if scopes.pop().kind == "control":
                closed_control.add(index)

    if len(scopes) != 1:
        raise TokenizeError("unbalanced brackets at end of input")
    if tokens:
        flush(1, tokens[-1].end, ";")
    return JsRewrite(insertions)


def apply_rewrite(source: str, plan: JsRewrite) -> str:
    parts = []
    cursor = 0
    for pos in sorted(plan.insertions):
        parts.append(source[cursor:pos])
        parts.append("".join(plan.insertions[pos]))
        cursor = pos
    parts.append(source[cursor:])
    return "".join(parts)


def _uses_strict(tokens: List[Token]) -> bool:
    return bool(tokens) and tokens[0].kind == "str" and tokens[0].text[1:-1] == "use strict"


def instrument_javascript(source: str, options: TrackingOptions, rewrite: bool = True) -> str:
    """
    Wrap `source` for the probe runtime. With `rewrite` off, or when the
    tokenizer gives up, only the memory and terminal hooks are added.
    """
    strict = source.lstrip().startswith(("'use strict'", '"use strict"'))
    body = source
    if rewrite:
        try:
            tokens = tokenize(source)
            body = apply_rewrite(source, plan_rewrite(tokens))
            strict = _uses_strict(tokens)
        except TokenizeError as e:
            logger.info("JavaScript rewrite skipped (%s), running snippet with the plain wrapper", e)

    header = [
        "'use strict';" if strict else "// instrumented by perfscope",
        f"const {PROBE_ALIAS} = require('./{PROBE_FILE}');",
        f"{PROBE_ALIAS}.start({json.dumps(probe_options(options))}, {json.dumps(source.splitlines())}, __filename, {HEADER_LINES});",
        "try {",
    ]
    footer = [
        "} catch (__probeError) {",
        f"  {PROBE_ALIAS}.fail(__probeError);",
        "}",
    ]
    return "\n".join(header) + "\n" + body + "\n" + "\n".join(footer) + "\n"


_NODE_LOCATION = re.compile(re.escape(SCRIPT_NAME) + r":(\d+)")


class JavaScriptHandler(LanguageHandler):
    language_id = "javascript"
    display_name = "JavaScript"
    version = "ES2021"

    def __init__(self, executable: Optional[str] = None, timeout: Optional[float] = None):
        self.executable = executable or settings.node_executable
        self._timeout = timeout or settings.javascript_timeout
        self._probe_source = (Path(__file__).parent / "probe.js").read_text(encoding="utf-8")

    @property
    def default_timeout(self) -> float:
        return self._timeout

    def instrument(self, source: str, options: TrackingOptions) -> str:
        instrumented = instrument_javascript(source, options)
        plain = instrument_javascript(source, options, rewrite=False)
        if instrumented == plain:
            return plain
        complaint = self.check_syntax(instrumented)
        if complaint is None:
            return instrumented
        logger.warning("Rewritten snippet does not parse (%s), running it with the plain wrapper", complaint)
        return plain

    def check_syntax(self, program: str) -> Optional[str]:
        """
        Parse `program` with `node --check`. Returns node's complaint, or
        None when it parses or node cannot be asked.
        """
        with tempfile.TemporaryDirectory(prefix="perfscope-check-") as workdir:
            path = os.path.join(workdir, SCRIPT_NAME)
            with open(path, "w", encoding="utf-8") as f:
                f.write(program)
            try:
                result = subprocess.run(
                    [self.executable, "--check", path],
                    capture_output=True, text=True, timeout=SYNTAX_CHECK_TIMEOUT,
                )
            except (OSError, subprocess.TimeoutExpired) as e:
                logger.debug("Syntax check skipped: %s", e)
                return None
        if result.returncode == 0:
            return None
        lines = [line for line in result.stderr.splitlines() if line.strip()]
        return next((line for line in lines if "Error" in line), lines[-1] if lines else "node --check failed")

    def complexity_hint(self, source: str) -> Tuple[str, str]:
        return analyze_braces(source)

    async def execute(
        self,
        instrumented: str,
        stdin: List[str],
        options: TrackingOptions,
        on_event: EventSink,
        *,
        execution_id: str,
        timeout: Optional[float] = None,
    ):
        # V8 reserves far more address space than it uses, so no RLIMIT_AS here
        async with SandboxRuntime(execution_id, timeout=timeout or self.default_timeout) as runtime:
            runtime.stage(PROBE_FILE, self._probe_source)
            script = runtime.stage(SCRIPT_NAME, instrumented, instrumented=True)
            outcome = await runtime.run([self.executable, script], stdin, on_event)

        if isinstance(outcome, Failure) and outcome.kind is ErrorKind.RUNTIME_ERROR and outcome.source_line == "unknown":
            # node reports syntax errors on stderr as "<path>:<line>" before running anything
            match = _NODE_LOCATION.search(outcome.stack or "")
            if match and int(match.group(1)) > HEADER_LINES:
                outcome.source_line = int(match.group(1)) - HEADER_LINES
        return outcome
