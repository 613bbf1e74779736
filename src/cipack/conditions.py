# conditions.py
"""
Run/skip decisions for jobs and steps.

A condition is either one of the built-ins

    success()    nothing has failed so far
    failure()    something has failed
    always()     run unconditionally
    cancelled()  the run has been cancelled

or a boolean predicate over the resolved environment, built from a small
closed grammar (no shell evaluation):

    env.DEPLOY == 'true' && !cancelled()
    env.BRANCH != "main" || failure()
    env.RELEASE                      # set and non-empty

A predicate that evaluates false means "skip"; only a malformed condition
raises ConditionError.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Mapping, Optional, Tuple

from .errors import ConditionError

BUILTINS = ("success", "failure", "always", "cancelled")

# built-ins that keep a job eligible while the run is halting or unwinding
UNWIND_BUILTINS = frozenset({"always", "failure", "cancelled"})

_TOKEN_RE = re.compile(
    r"""
    (?P<op>&&|\|\||==|!=|!|\(|\))
    |(?P<str>'[^']*'|"[^"]*")
    |(?P<call>[A-Za-z_]+\(\))
    |(?P<env>env\.[A-Za-z_][A-Za-z0-9_]*)
    |(?P<word>[A-Za-z_][A-Za-z0-9_]*)
    """,
    re.VERBOSE,
)


@dataclass(frozen=True)
class ConditionContext:
    """
    What a condition can observe.

    `failed` is run-wide FailedJobs non-empty at job granularity, and
    "an earlier step of this job failed" at step granularity.
    """
    failed: bool = False
    cancelled: bool = False
    env: Mapping[str, str] = field(default_factory=dict)


# ----------------------------------------------------------------------
# AST
# ----------------------------------------------------------------------

class _Node:
    def eval(self, ctx: ConditionContext) -> bool:
        raise NotImplementedError


@dataclass(frozen=True)
class _Builtin(_Node):
    name: str

    def eval(self, ctx: ConditionContext) -> bool:
        if self.name == "success":
            return not ctx.failed
        if self.name == "failure":
            return ctx.failed
        if self.name == "cancelled":
            return ctx.cancelled
        return True


@dataclass(frozen=True)
class _Const(_Node):
    value: bool

    def eval(self, ctx: ConditionContext) -> bool:
        return self.value


@dataclass(frozen=True)
class _EnvSet(_Node):
    var: str

    def eval(self, ctx: ConditionContext) -> bool:
        return bool(ctx.env.get(self.var, ""))


@dataclass(frozen=True)
class _Compare(_Node):
    # operands are ("env", NAME) or ("str", VALUE)
    left: Tuple[str, str]
    op: str
    right: Tuple[str, str]

    @staticmethod
    def _value(operand: Tuple[str, str], ctx: ConditionContext) -> str:
        kind, v = operand
        return ctx.env.get(v, "") if kind == "env" else v

    def eval(self, ctx: ConditionContext) -> bool:
        equal = self._value(self.left, ctx) == self._value(self.right, ctx)
        return equal if self.op == "==" else not equal


@dataclass(frozen=True)
class _Not(_Node):
    inner: _Node

    def eval(self, ctx: ConditionContext) -> bool:
        return not self.inner.eval(ctx)


@dataclass(frozen=True)
class _BinOp(_Node):
    op: str
    left: _Node
    right: _Node

    def eval(self, ctx: ConditionContext) -> bool:
        if self.op == "&&":
            return self.left.eval(ctx) and self.right.eval(ctx)
        return self.left.eval(ctx) or self.right.eval(ctx)


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------

def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(text):
        if text[pos].isspace():
            pos += 1
            continue
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise ConditionError(text, f"unexpected character {text[pos]!r} at position {pos}")
        kind = m.lastgroup or ""
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0
        self.builtins: set[str] = set()

    def parse(self) -> _Node:
        if not self.tokens:
            raise ConditionError(self.text, "empty condition")
        node = self._or()
        if self.pos != len(self.tokens):
            raise ConditionError(self.text, f"unexpected token {self.tokens[self.pos][1]!r}")
        return node

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> Tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise ConditionError(self.text, "unexpected end of condition")
        self.pos += 1
        return tok

    def _or(self) -> _Node:
        node = self._and()
        while self._peek() == ("op", "||"):
            self.pos += 1
            node = _BinOp("||", node, self._and())
        return node

    def _and(self) -> _Node:
        node = self._not()
        while self._peek() == ("op", "&&"):
            self.pos += 1
            node = _BinOp("&&", node, self._not())
        return node

    def _not(self) -> _Node:
        if self._peek() == ("op", "!"):
            self.pos += 1
            return _Not(self._not())
        return self._atom()

    def _operand(self) -> Tuple[str, str]:
        kind, value = self._next()
        if kind == "env":
            return ("env", value[len("env."):])
        if kind == "str":
            return ("str", value[1:-1])
        raise ConditionError(self.text, f"expected env.NAME or a string, got {value!r}")

    def _atom(self) -> _Node:
        kind, value = self._next()

        if (kind, value) == ("op", "("):
            node = self._or()
            if self._next() != ("op", ")"):
                raise ConditionError(self.text, "missing ')'")
            return node

        if kind == "call":
            name = value[:-2]
            if name not in BUILTINS:
                raise ConditionError(self.text, f"unknown function {value!r}")
            self.builtins.add(name)
            return _Builtin(name)

        if kind in ("env", "str"):
            self.pos -= 1
            left = self._operand()
            nxt = self._peek()
            if nxt is not None and nxt[0] == "op" and nxt[1] in ("==", "!="):
                self.pos += 1
                return _Compare(left, nxt[1], self._operand())
            if kind == "str":
                raise ConditionError(self.text, f"string {value} must be compared with == or !=")
            return _EnvSet(left[1])

        if kind == "word" and value in ("true", "false"):
            return _Const(value == "true")

        raise ConditionError(self.text, f"unexpected token {value!r}")


@dataclass(frozen=True)
class Condition:
    source: str
    node: _Node
    builtins: frozenset

    @property
    def runs_on_unwind(self) -> bool:
        """True if the condition references always(), failure() or cancelled()."""
        return bool(self.builtins & UNWIND_BUILTINS)

    def evaluate(self, ctx: ConditionContext) -> bool:
        return self.node.eval(ctx)


@lru_cache(maxsize=256)
def parse_condition(text: str) -> Condition:
    """Parse (and cache) a condition. Raises ConditionError if malformed."""
    parser = _Parser(text.strip())
    node = parser.parse()
    return Condition(source=text, node=node, builtins=frozenset(parser.builtins))


def evaluate(text: str, ctx: ConditionContext) -> bool:
    return parse_condition(text).evaluate(ctx)
