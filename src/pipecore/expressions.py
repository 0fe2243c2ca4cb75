# expressions.py
"""
Guard and value expressions.

The language is deliberately closed: literals, dotted references, the
operators ! == != < <= > >= && || and a fixed set of functions. It is parsed
by a small recursive-descent parser and evaluated without side effects.

References:
    context.<field>                  pipeline trigger facts
    jobs.<job>.outputs.<name>        an upstream output (alias: needs.<job>...)
    jobs.<job>.result                an upstream terminal status
    secrets.<name>                   a secret handed to the job
    inputs.<name>                    one of the job's own literal inputs

Value templates embed expressions as `${{ expr }}`. A referent that is
absent because its job was skipped, failed or cancelled evaluates to UNSET
instead of raising, so downstream jobs can treat it as data.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Iterator, List, Mapping, Optional, Sequence, Set, Tuple, Union

from .errors import ExpressionSyntaxError, UnresolvedReferenceError
from .model import JobResult, JobStatus, PipelineContext


class _Unset:
    """Marker for a value whose referent was never produced."""

    _instance: Optional["_Unset"] = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __str__(self) -> str:
        return ""

    def __repr__(self) -> str:
        return "UNSET"


UNSET = _Unset()

STATUS_FUNCTIONS = frozenset({"success", "failure", "always", "cancelled"})
HELPER_FUNCTIONS = {"contains": 2, "startswith": 2, "endswith": 2, "format": -1}
REFERENCE_ROOTS = frozenset({"context", "jobs", "needs", "secrets", "inputs"})


# ----------------------------------------------------------------------
# AST
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Ref:
    parts: Tuple[str, ...]

    @property
    def text(self) -> str:
        return ".".join(self.parts)

    @property
    def job(self) -> Optional[str]:
        return self.parts[1] if self.parts[0] in ("jobs", "needs") else None

    @property
    def output(self) -> Optional[str]:
        if self.job is not None and len(self.parts) == 4:
            return self.parts[3]
        return None


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class Binary:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple["Node", ...] = ()


Node = Union[Literal, Ref, Not, Binary, Call]


# ----------------------------------------------------------------------
# Tokenizer
# ----------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>\d+(?:\.\d+)?)
  | (?P<string>'(?:[^']|'')*')
  | (?P<op>==|!=|<=|>=|&&|\|\||[!<>().,])
  | (?P<ident>[A-Za-z_][A-Za-z0-9_-]*)
    """,
    re.VERBOSE,
)


@dataclass(frozen=True)
class _Token:
    type: str
    value: str
    pos: int


def _tokenize(expr: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    while pos < len(expr):
        m = _TOKEN_RE.match(expr, pos)
        if m is None:
            raise ExpressionSyntaxError(expr, f"unexpected character {expr[pos]!r}", pos)
        kind = m.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind, m.group(), pos))
        pos = m.end()
    tokens.append(_Token("end", "", len(expr)))
    return tokens


# ----------------------------------------------------------------------
# Parser
# ----------------------------------------------------------------------

class _Parser:
    def __init__(self, expr: str):
        self.expr = expr
        self.tokens = _tokenize(expr)
        self.i = 0

    def _peek(self) -> _Token:
        return self.tokens[self.i]

    def _next(self) -> _Token:
        tok = self.tokens[self.i]
        self.i += 1
        return tok

    def _error(self, message: str, tok: Optional[_Token] = None) -> ExpressionSyntaxError:
        tok = tok or self._peek()
        return ExpressionSyntaxError(self.expr, message, tok.pos)

    def _expect(self, value: str) -> _Token:
        tok = self._next()
        if tok.value != value:
            raise self._error(f"expected {value!r}, got {tok.value or 'end of expression'!r}", tok)
        return tok

    def parse(self) -> Node:
        if self._peek().type == "end":
            raise self._error("empty expression")
        node = self._or()
        if self._peek().type != "end":
            raise self._error(f"unexpected {self._peek().value!r}")
        return node

    def _or(self) -> Node:
        node = self._and()
        while self._peek().value == "||":
            self._next()
            node = Binary("||", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._comparison()
        while self._peek().value == "&&":
            self._next()
            node = Binary("&&", node, self._comparison())
        return node

    def _comparison(self) -> Node:
        node = self._unary()
        if self._peek().value in ("==", "!=", "<", "<=", ">", ">="):
            op = self._next().value
            node = Binary(op, node, self._unary())
        return node

    def _unary(self) -> Node:
        if self._peek().value == "!":
            self._next()
            return Not(self._unary())
        return self._primary()

    def _primary(self) -> Node:
        tok = self._next()
        if tok.type == "number":
            return Literal(float(tok.value) if "." in tok.value else int(tok.value))
        if tok.type == "string":
            return Literal(tok.value[1:-1].replace("''", "'"))
        if tok.value == "(":
            node = self._or()
            self._expect(")")
            return node
        if tok.type != "ident":
            raise self._error(f"unexpected {tok.value or 'end of expression'!r}", tok)

        if tok.value in ("true", "false"):
            return Literal(tok.value == "true")
        if tok.value == "null":
            return Literal(None)
        if self._peek().value == "(":
            return self._call(tok)
        return self._reference(tok)

    def _call(self, name_tok: _Token) -> Node:
        name = name_tok.value
        key = name.lower()
        self._expect("(")
        args: List[Node] = []
        if self._peek().value != ")":
            args.append(self._or())
            while self._peek().value == ",":
                self._next()
                args.append(self._or())
        self._expect(")")

        if key in STATUS_FUNCTIONS:
            if args:
                raise self._error(f"{name}() takes no arguments", name_tok)
        elif key in HELPER_FUNCTIONS:
            arity = HELPER_FUNCTIONS[key]
            if arity >= 0 and len(args) != arity:
                raise self._error(f"{name}() takes {arity} arguments", name_tok)
            if arity < 0 and not args:
                raise self._error(f"{name}() needs a format string", name_tok)
        else:
            raise self._error(f"unknown function {name}()", name_tok)
        return Call(key, tuple(args))

    def _reference(self, first: _Token) -> Node:
        parts = [first.value]
        while self._peek().value == ".":
            self._next()
            tok = self._next()
            if tok.type != "ident":
                raise self._error("expected a name after '.'", tok)
            parts.append(tok.value)

        root = parts[0]
        if root not in REFERENCE_ROOTS:
            raise self._error(f"unknown reference root {root!r}", first)
        if root in ("jobs", "needs"):
            shape_ok = (len(parts) == 3 and parts[2] == "result") or (len(parts) == 4 and parts[2] == "outputs")
            if not shape_ok:
                raise self._error(f"expected {root}.<job>.outputs.<name> or {root}.<job>.result", first)
        elif len(parts) != 2:
            raise self._error(f"expected {root}.<name>", first)
        return Ref(tuple(parts))


@lru_cache(maxsize=1024)
def parse(expr: str) -> Node:
    """Parse a bare expression (no `${{ }}` wrapper) into an AST."""
    return _Parser(expr).parse()


def _strip_wrapper(expr: str) -> str:
    """A condition is a bare expression or one `${{ }}` around the whole of it."""
    text = expr.strip()
    if "${{" not in text:
        return text
    segments = split_template(text)
    if len(segments) != 1 or segments[0][0] != "expr":
        raise ExpressionSyntaxError(
            expr, "a condition takes a single '${{ }}' around the whole expression", text.find("${{")
        )
    return segments[0][1]


# ----------------------------------------------------------------------
# Templates
# ----------------------------------------------------------------------

def split_template(template: str) -> List[Tuple[str, str]]:
    """
    Split a value template into ("text", s) and ("expr", s) segments.

    The closing `}}` is searched outside of quoted strings.
    """
    segments: List[Tuple[str, str]] = []
    pos = 0
    while True:
        start = template.find("${{", pos)
        if start < 0:
            if pos < len(template):
                segments.append(("text", template[pos:]))
            return segments
        if start > pos:
            segments.append(("text", template[pos:start]))

        i = start + 3
        in_string = False
        end = -1
        while i < len(template):
            ch = template[i]
            if ch == "'":
                in_string = not in_string
            elif not in_string and template.startswith("}}", i):
                end = i
                break
            i += 1
        if end < 0:
            raise ExpressionSyntaxError(template, "unterminated '${{'", start)
        segments.append(("expr", template[start + 3:end].strip()))
        pos = end + 2


def is_template(value: Any) -> bool:
    return isinstance(value, str) and "${{" in value


# ----------------------------------------------------------------------
# Static analysis
# ----------------------------------------------------------------------

def _walk(node: Node) -> Iterator[Node]:
    yield node
    if isinstance(node, Not):
        yield from _walk(node.operand)
    elif isinstance(node, Binary):
        yield from _walk(node.left)
        yield from _walk(node.right)
    elif isinstance(node, Call):
        for arg in node.args:
            yield from _walk(arg)


def guard_references(expr: str) -> List[Ref]:
    return [n for n in _walk(parse(_strip_wrapper(expr))) if isinstance(n, Ref)]


def template_references(template: str) -> List[Ref]:
    refs: List[Ref] = []
    for kind, text in split_template(template):
        if kind == "expr":
            refs.extend(n for n in _walk(parse(text)) if isinstance(n, Ref))
    return refs


def status_functions(expr: Optional[str]) -> Set[str]:
    """Names of the status predicates an (unwrapped or wrapped) guard calls."""
    if not expr or not expr.strip():
        return set()
    return {n.name for n in _walk(parse(_strip_wrapper(expr))) if isinstance(n, Call) and n.name in STATUS_FUNCTIONS}


def has_explicit_status(expr: Optional[str]) -> bool:
    return bool(status_functions(expr))


def runs_when_cancelled(expr: Optional[str]) -> bool:
    """True when a guard opts into running after cancellation."""
    return bool(status_functions(expr) & {"always", "cancelled"})


# ----------------------------------------------------------------------
# Evaluation
# ----------------------------------------------------------------------

@dataclass
class EvaluationScope:
    """
    Everything an expression may look at.

    `declared_outputs` maps every job of the pipeline to the output names its
    kind declares; it is how structurally missing referents are told apart
    from outputs that were simply never produced.
    """
    context: PipelineContext = field(default_factory=PipelineContext)
    results: Mapping[str, JobResult] = field(default_factory=dict)
    declared_outputs: Mapping[str, Set[str]] = field(default_factory=dict)
    dependencies: Sequence[str] = ()
    secrets: Mapping[str, str] = field(default_factory=dict)
    inputs: Mapping[str, Any] = field(default_factory=dict)
    cancel_requested: bool = False


def _text(value: Any) -> str:
    if value is None or value is UNSET:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _truthy(value: Any) -> bool:
    if value is None or value is UNSET:
        return False
    if isinstance(value, str):
        return value != ""
    return bool(value)


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _compare(op: str, left: Any, right: Any) -> bool:
    ln, rn = _number(left), _number(right)
    both_numeric = ln is not None and rn is not None and not (isinstance(left, str) and isinstance(right, str))
    if op in ("==", "!="):
        equal = ln == rn if both_numeric else _text(left) == _text(right)
        return equal if op == "==" else not equal

    a: Any = ln if ln is not None and rn is not None else _text(left)
    b: Any = rn if ln is not None and rn is not None else _text(right)
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    return a >= b


def _format(template: str, args: Sequence[Any]) -> str:
    def repl(m: "re.Match[str]") -> str:
        token = m.group(0)
        if token == "{{":
            return "{"
        if token == "}}":
            return "}"
        index = int(m.group(1))
        return _text(args[index]) if index < len(args) else ""

    return re.sub(r"\{\{|\}\}|\{(\d+)\}", repl, template)


class _Evaluator:
    def __init__(self, scope: EvaluationScope):
        self.scope = scope

    def eval(self, node: Node) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Ref):
            return self._resolve(node)
        if isinstance(node, Not):
            return not _truthy(self.eval(node.operand))
        if isinstance(node, Binary):
            if node.op == "&&":
                left = self.eval(node.left)
                return self.eval(node.right) if _truthy(left) else left
            if node.op == "||":
                left = self.eval(node.left)
                return left if _truthy(left) else self.eval(node.right)
            return _compare(node.op, self.eval(node.left), self.eval(node.right))
        if isinstance(node, Call):
            return self._call(node)
        raise TypeError(f"unknown expression node {node!r}")

    def _statuses(self) -> List[JobStatus]:
        return [self.scope.results[d].status for d in self.scope.dependencies if d in self.scope.results]

    def _call(self, node: Call) -> Any:
        if node.name == "always":
            return True
        if node.name == "success":
            return not self.scope.cancel_requested and all(s == JobStatus.SUCCESS for s in self._statuses())
        if node.name == "failure":
            return any(s == JobStatus.FAILURE for s in self._statuses())
        if node.name == "cancelled":
            return self.scope.cancel_requested or any(s == JobStatus.CANCELLED for s in self._statuses())

        args = [self.eval(a) for a in node.args]
        if node.name == "contains":
            return _text(args[1]).lower() in _text(args[0]).lower()
        if node.name == "startswith":
            return _text(args[0]).lower().startswith(_text(args[1]).lower())
        if node.name == "endswith":
            return _text(args[0]).lower().endswith(_text(args[1]).lower())
        return _format(_text(args[0]), args[1:])

    def _resolve(self, ref: Ref) -> Any:
        root, name = ref.parts[0], ref.parts[1]
        if root == "context":
            value = self.scope.context.lookup(name)
            return UNSET if value is None else value
        if root == "secrets":
            return self.scope.secrets.get(name, UNSET)
        if root == "inputs":
            return self.scope.inputs.get(name, UNSET)

        if name not in self.scope.declared_outputs:
            raise UnresolvedReferenceError(ref.text, f"no job named '{name}' in this pipeline")
        output = ref.output
        if output is not None and output not in self.scope.declared_outputs[name]:
            raise UnresolvedReferenceError(ref.text, f"job '{name}' does not declare output '{output}'")

        result = self.scope.results.get(name)
        if result is None:
            raise UnresolvedReferenceError(ref.text, f"job '{name}' has not finished yet")
        if output is None:
            return result.status.value
        if result.status != JobStatus.SUCCESS:
            return UNSET
        return result.outputs.get(output, UNSET)


def evaluate(expr: str, scope: EvaluationScope) -> Any:
    return _Evaluator(scope).eval(parse(_strip_wrapper(expr)))


def evaluate_guard(expr: Optional[str], scope: EvaluationScope) -> bool:
    """
    Evaluate an `if` guard.

    A guard without any status predicate implicitly requires every direct
    dependency to have succeeded: it behaves as `success() && (guard)`.
    """
    evaluator = _Evaluator(scope)
    implicit = Call("success")
    if expr is None or not expr.strip():
        return bool(evaluator.eval(implicit))

    node = parse(_strip_wrapper(expr))
    if not has_explicit_status(expr):
        node = Binary("&&", implicit, node)
    return _truthy(evaluator.eval(node))


def evaluate_value(template: str, scope: EvaluationScope) -> Union[str, _Unset]:
    """
    Substitute every `${{ expr }}` of a value template.

    A template made of a single expression returns UNSET when its referent is
    absent; inside a larger template an absent referent renders as "".
    """
    segments = split_template(template)
    if len(segments) == 1 and segments[0][0] == "expr":
        value = evaluate(segments[0][1], scope)
        return UNSET if value is UNSET else _text(value)

    evaluator = _Evaluator(scope)
    out: List[str] = []
    for kind, text in segments:
        out.append(text if kind == "text" else _text(evaluator.eval(parse(text))))
    return "".join(out)
