"""
Restricted boolean expressions for conditional routing.

Grammar (lowest to highest precedence):

    expr       := or_expr
    or_expr    := and_expr ("||" and_expr)*
    and_expr   := unary ("&&" unary)*
    unary      := "!" unary | comparison
    comparison := operand (("<" | "<=" | ">" | ">=" | "==" | "!=") operand)?
    operand    := ["-"]NUMBER | STRING | "true" | "false" | IDENT ("." IDENT)* | "(" expr ")"

Expressions are compiled once, when the containing graph is registered,
and evaluated many times. Anything outside the grammar is rejected at
compile time. Evaluation is strict: unknown variables, mixed-type
comparisons and non-boolean results raise ConditionEvaluationError.
There is no permissive fallback.
"""

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from flowcore.errors import ConditionEvaluationError

logger = logging.getLogger(__name__)

_TOKEN_PATTERN = re.compile(
    r"""
    \s*(?:
        (?P<number>-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)
      | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<op><=|>=|==|!=|&&|\|\||<|>|!)
      | (?P<lparen>\()
      | (?P<rparen>\))
      | (?P<ident>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)
    )
    """,
    re.VERBOSE,
)

_COMPARISON_OPS = frozenset({"<", "<=", ">", ">=", "==", "!="})
_ORDERING_OPS = frozenset({"<", "<=", ">", ">="})
_KEYWORDS = {"true": True, "false": False}


@dataclass(frozen=True)
class _Token:
    kind: str
    value: str
    pos: int


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Variable:
    path: tuple[str, ...]

    @property
    def name(self) -> str:
        return ".".join(self.path)


@dataclass(frozen=True)
class Not:
    operand: Any


@dataclass(frozen=True)
class BoolOp:
    op: str  # "&&" or "||"
    left: Any
    right: Any


@dataclass(frozen=True)
class Compare:
    op: str
    left: Any
    right: Any


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _tokenize(expression: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    length = len(expression)
    while pos < length:
        if expression[pos:].strip() == "":
            break
        match = _TOKEN_PATTERN.match(expression, pos)
        if match is None or match.end() == pos:
            bad = expression[pos:].lstrip()[:1]
            raise ConditionEvaluationError(
                f"Unsupported character {bad!r} at position {pos}", expression
            )
        kind = match.lastgroup or ""
        tokens.append(_Token(kind=kind, value=match.group(kind), pos=match.start(kind)))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.index = 0

    def parse(self) -> Any:
        if not self.tokens:
            raise ConditionEvaluationError("Empty expression", self.expression)
        node = self._or()
        if self.index < len(self.tokens):
            token = self.tokens[self.index]
            raise ConditionEvaluationError(
                f"Unexpected token {token.value!r} at position {token.pos}", self.expression
            )
        return node

    def _peek(self) -> _Token | None:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _take(self) -> _Token:
        token = self._peek()
        if token is None:
            raise ConditionEvaluationError("Unexpected end of expression", self.expression)
        self.index += 1
        return token

    def _or(self) -> Any:
        node = self._and()
        while (token := self._peek()) is not None and token.value == "||":
            self._take()
            node = BoolOp("||", node, self._and())
        return node

    def _and(self) -> Any:
        node = self._unary()
        while (token := self._peek()) is not None and token.value == "&&":
            self._take()
            node = BoolOp("&&", node, self._unary())
        return node

    def _unary(self) -> Any:
        token = self._peek()
        if token is not None and token.value == "!":
            self._take()
            return Not(self._unary())
        return self._comparison()

    def _comparison(self) -> Any:
        left = self._operand()
        token = self._peek()
        if token is not None and token.kind == "op" and token.value in _COMPARISON_OPS:
            self._take()
            right = self._operand()
            nxt = self._peek()
            if nxt is not None and nxt.kind == "op" and nxt.value in _COMPARISON_OPS:
                raise ConditionEvaluationError(
                    f"Chained comparison at position {nxt.pos} is not allowed", self.expression
                )
            return Compare(token.value, left, right)
        return left

    def _operand(self) -> Any:
        token = self._take()
        if token.kind == "number":
            text = token.value
            is_float = "." in text or "e" in text.lower()
            return Literal(float(text) if is_float else int(text))
        if token.kind == "string":
            return Literal(_unescape(token.value[1:-1]))
        if token.kind == "ident":
            if token.value in _KEYWORDS:
                return Literal(_KEYWORDS[token.value])
            return Variable(tuple(token.value.split(".")))
        if token.kind == "lparen":
            node = self._or()
            closing = self._take()
            if closing.kind != "rparen":
                raise ConditionEvaluationError(
                    f"Expected ')' at position {closing.pos}", self.expression
                )
            return node
        raise ConditionEvaluationError(
            f"Unexpected token {token.value!r} at position {token.pos}", self.expression
        )


def _unescape(text: str) -> str:
    return re.sub(r"\\(.)", r"\1", text)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


class CompiledCondition:
    """A parsed expression, safe to evaluate repeatedly against variables."""

    def __init__(self, expression: str, tree: Any):
        self.expression = expression
        self._tree = tree

    def __repr__(self) -> str:
        return f"CompiledCondition({self.expression!r})"

    @property
    def variables(self) -> set[str]:
        """Top-level variable names referenced by the expression."""
        names: set[str] = set()

        def walk(node: Any) -> None:
            if isinstance(node, Variable):
                names.add(node.path[0])
            elif isinstance(node, Not):
                walk(node.operand)
            elif isinstance(node, BoolOp | Compare):
                walk(node.left)
                walk(node.right)

        walk(self._tree)
        return names

    def evaluate(self, variables: Mapping[str, Any]) -> bool:
        result = self._eval(self._tree, variables)
        if not isinstance(result, bool):
            raise ConditionEvaluationError(
                f"Expression evaluated to {type(result).__name__}, expected a boolean",
                self.expression,
            )
        return result

    def _eval(self, node: Any, variables: Mapping[str, Any]) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Variable):
            return self._lookup(node, variables)
        if isinstance(node, Not):
            return not self._require_bool(self._eval(node.operand, variables), "!")
        if isinstance(node, BoolOp):
            left = self._require_bool(self._eval(node.left, variables), node.op)
            if node.op == "&&" and not left:
                return False
            if node.op == "||" and left:
                return True
            return self._require_bool(self._eval(node.right, variables), node.op)
        if isinstance(node, Compare):
            return self._compare(
                node.op, self._eval(node.left, variables), self._eval(node.right, variables)
            )
        raise ConditionEvaluationError(f"Unsupported node {node!r}", self.expression)

    def _lookup(self, node: Variable, variables: Mapping[str, Any]) -> Any:
        current: Any = variables
        for part in node.path:
            if not isinstance(current, Mapping) or part not in current:
                raise ConditionEvaluationError(f"Unknown variable '{node.name}'", self.expression)
            current = current[part]
        return current

    def _require_bool(self, value: Any, op: str) -> bool:
        if not isinstance(value, bool):
            raise ConditionEvaluationError(
                f"Operator '{op}' requires boolean operands, got {type(value).__name__}",
                self.expression,
            )
        return value

    def _compare(self, op: str, left: Any, right: Any) -> bool:
        if _is_number(left) and _is_number(right):
            pass
        elif isinstance(left, str) and isinstance(right, str):
            pass
        elif isinstance(left, bool) and isinstance(right, bool):
            if op in _ORDERING_OPS:
                raise ConditionEvaluationError(
                    f"Operator '{op}' is not defined for booleans", self.expression
                )
        else:
            raise ConditionEvaluationError(
                f"Cannot compare {type(left).__name__} with {type(right).__name__} using '{op}'",
                self.expression,
            )

        if op == "==":
            return left == right
        if op == "!=":
            return left != right
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        return left >= right


class ConditionEvaluator:
    """
    Compiles and evaluates restricted boolean expressions.

    Usage:
        evaluator = ConditionEvaluator()
        compiled = evaluator.compile("amount >= 10000 && region == 'EU'")
        compiled.evaluate({"amount": 15000, "region": "EU"})  # True

    Compiled expressions are cached per evaluator so a graph compiles
    each distinct expression once.
    """

    def __init__(self) -> None:
        self._cache: dict[str, CompiledCondition] = {}

    def compile(self, expression: str) -> CompiledCondition:
        """Parse an expression, raising ConditionEvaluationError if outside the grammar."""
        cached = self._cache.get(expression)
        if cached is not None:
            return cached
        compiled = CompiledCondition(expression, _Parser(expression).parse())
        self._cache[expression] = compiled
        return compiled

    def evaluate(self, expression: str, variables: Mapping[str, Any]) -> bool:
        """Compile (cached) and evaluate in one step."""
        return self.compile(expression).evaluate(variables)
