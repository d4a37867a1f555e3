"""
Gate expressions for jobs and steps.

Expressions are parsed into a small typed AST and evaluated against a
GateContext (static run facts, matrix values and the results of already
resolved upstream jobs). Nothing is ever substituted into the expression
text, and evaluation has no side effects.

    ref == 'refs/heads/main' || ref == 'refs/heads/master'
    event != 'pull_request' && needs.image_manifest.result == 'success'
    startsWith(ref, 'refs/tags/')
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Mapping, Tuple, Union

from .errors import ConditionEvaluationError
from .model import RunContext

Value = Union[str, bool]


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Value


@dataclass(frozen=True)
class Path:
    parts: Tuple[str, ...]

    @property
    def dotted(self) -> str:
        return ".".join(self.parts)


@dataclass(frozen=True)
class Compare:
    op: str  # "==" | "!="
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class And:
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class Or:
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class Not:
    operand: "Expr"


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple["Expr", ...]


Expr = Union[Literal, Path, Compare, And, Or, Not, Call]


@dataclass(frozen=True)
class GateContext:
    run: RunContext
    needs: Mapping[str, str] = field(default_factory=dict)   # job name -> success|failure|cancelled|skipped
    matrix: Mapping[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------
# Lexer
# ---------------------------------------------------------------------

_TOKEN = re.compile(
    r"""
    \s*(?:
        (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<op>==|!=|&&|\|\||!|\(|\)|,)
      | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z_][A-Za-z0-9_\-]*)*)
    )""",
    re.VERBOSE,
)

_WRAPPED = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.DOTALL)


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN.match(text, pos)
        if not m or m.end() == pos:
            raise ConditionEvaluationError(f"unexpected character at offset {pos} in gate: {text!r}")
        pos = m.end()
        kind = m.lastgroup
        tokens.append((kind, m.group(kind)))
    return tokens


# ---------------------------------------------------------------------
# Parser (recursive descent)
# ---------------------------------------------------------------------

_FUNCTIONS = {"startsWith": 2, "endsWith": 2, "contains": 2}


class _Parser:
    def __init__(self, text: str, tokens: List[Tuple[str, str]]):
        self.text = text
        self.tokens = tokens
        self.i = 0

    def _peek(self) -> Tuple[str, str] | None:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def _take(self) -> Tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise self._error("unexpected end of expression")
        self.i += 1
        return tok

    def _accept(self, op: str) -> bool:
        tok = self._peek()
        if tok is not None and tok == ("op", op):
            self.i += 1
            return True
        return False

    def _expect(self, op: str) -> None:
        if not self._accept(op):
            raise self._error(f"expected '{op}'")

    def _error(self, msg: str) -> ConditionEvaluationError:
        return ConditionEvaluationError(f"{msg} in gate: {self.text!r}")

    def parse(self) -> Expr:
        if not self.tokens:
            raise self._error("empty expression")
        expr = self._or()
        if self._peek() is not None:
            raise self._error(f"unexpected token {self._peek()[1]!r}")
        return expr

    def _or(self) -> Expr:
        left = self._and()
        while self._accept("||"):
            left = Or(left, self._and())
        return left

    def _and(self) -> Expr:
        left = self._unary()
        while self._accept("&&"):
            left = And(left, self._unary())
        return left

    def _unary(self) -> Expr:
        if self._accept("!"):
            return Not(self._unary())
        return self._compare()

    def _compare(self) -> Expr:
        left = self._atom()
        tok = self._peek()
        if tok in (("op", "=="), ("op", "!=")):
            self.i += 1
            return Compare(tok[1], left, self._atom())
        return left

    def _atom(self) -> Expr:
        kind, text = self._take()
        if kind == "string":
            return Literal(_unquote(text))
        if kind == "op":
            if text == "(":
                inner = self._or()
                self._expect(")")
                return inner
            raise self._error(f"unexpected operator {text!r}")

        if text in ("true", "false"):
            return Literal(text == "true")
        if self._accept("("):
            return self._call(text)
        return Path(tuple(text.split(".")))

    def _call(self, name: str) -> Expr:
        if name not in _FUNCTIONS:
            raise self._error(f"unknown function {name!r}")
        args: List[Expr] = []
        if not self._accept(")"):
            args.append(self._or())
            while self._accept(","):
                args.append(self._or())
            self._expect(")")
        if len(args) != _FUNCTIONS[name]:
            raise self._error(f"{name}() takes {_FUNCTIONS[name]} arguments, got {len(args)}")
        return Call(name, tuple(args))


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


def parse_gate(text: str) -> Expr:
    """Parse a gate expression; malformed input raises ConditionEvaluationError."""
    m = _WRAPPED.match(text)
    if m:
        text = m.group(1)
    return _Parser(text, _tokenize(text)).parse()


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def _truthy(v: Value) -> bool:
    if isinstance(v, bool):
        return v
    return v != ""


def _resolve(path: Path, ctx: GateContext) -> Value:
    parts = path.parts
    if parts[0] == "github" and len(parts) > 1:
        parts = parts[1:]

    if len(parts) == 1:
        scope = ctx.run.as_scope()
        if parts[0] in scope:
            return scope[parts[0]]
    elif parts[0] == "matrix" and len(parts) == 2:
        if parts[1] in ctx.matrix:
            return ctx.matrix[parts[1]]
    elif parts[0] == "needs" and len(parts) == 3 and parts[2] == "result":
        if parts[1] in ctx.needs:
            return ctx.needs[parts[1]]
        raise ConditionEvaluationError(
            f"gate refers to 'needs.{parts[1]}' which is not a resolved dependency"
        )

    raise ConditionEvaluationError(f"unknown name '{path.dotted}' in gate")


def _eval(expr: Expr, ctx: GateContext) -> Value:
    if isinstance(expr, Literal):
        return expr.value
    if isinstance(expr, Path):
        return _resolve(expr, ctx)
    if isinstance(expr, Compare):
        equal = _eval(expr.left, ctx) == _eval(expr.right, ctx)
        return equal if expr.op == "==" else not equal
    if isinstance(expr, And):
        return _truthy(_eval(expr.left, ctx)) and _truthy(_eval(expr.right, ctx))
    if isinstance(expr, Or):
        return _truthy(_eval(expr.left, ctx)) or _truthy(_eval(expr.right, ctx))
    if isinstance(expr, Not):
        return not _truthy(_eval(expr.operand, ctx))
    if isinstance(expr, Call):
        a, b = (str(_eval(arg, ctx)) for arg in expr.args)
        if expr.name == "startsWith":
            return a.startswith(b)
        if expr.name == "endsWith":
            return a.endswith(b)
        return b in a
    raise ConditionEvaluationError(f"unsupported expression node: {expr!r}")


def evaluate(expr: Expr, ctx: GateContext) -> bool:
    return _truthy(_eval(expr, ctx))


def evaluate_gate(text: str | None, ctx: GateContext) -> bool:
    """A missing gate always passes."""
    if text is None or not text.strip():
        return True
    return evaluate(parse_gate(text), ctx)
