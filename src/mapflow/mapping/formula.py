"""Restricted expression evaluator for ``formula`` rules.

Expressions are parsed with :mod:`ast` and walked node by node; nothing is
ever handed to ``eval``. Accepted vocabulary:

    literals      numbers, strings, True/False/None
    names         bound inputs only
    arithmetic    + - * / // % **, unary + and -
    comparison    == != < <= > >=  (chained)
    logic         and, or, not, ``a if cond else b``
    functions     abs ceil floor round max min pow sqrt

Anything else raises :class:`~mapflow.core.errors.FormulaError`.

Example:
    >>> FormulaEvaluator().evaluate("round(price * qty * (1 - discount), 2)",
    ...                             {"price": 9.99, "qty": 3, "discount": 0.1})
    26.97
"""

from __future__ import annotations

import ast
import functools
import math
import operator
from collections.abc import Callable
from typing import Any

from mapflow.core.errors import FormulaError

MAX_EXPONENT = 1000
MAX_EXPRESSION_LENGTH = 2000
MAX_INT_BITS = 4096
MAX_STRING_LENGTH = 100_000

FUNCTIONS: dict[str, Callable[..., Any]] = {
    "abs": abs,
    "ceil": math.ceil,
    "floor": math.floor,
    "round": round,
    "max": max,
    "min": min,
    "pow": lambda base, exp: _power(base, exp),
    "sqrt": math.sqrt,
}


def _check_bits(bits: int) -> None:
    if bits > MAX_INT_BITS:
        raise FormulaError(f"Integer result exceeds {MAX_INT_BITS} bits")


def _check_length(length: int) -> None:
    if length > MAX_STRING_LENGTH:
        raise FormulaError(f"String result exceeds {MAX_STRING_LENGTH} characters")


def _power(base: Any, exp: Any) -> Any:
    if isinstance(exp, int | float) and abs(exp) > MAX_EXPONENT:
        raise FormulaError(f"Exponent {exp} exceeds limit {MAX_EXPONENT}")
    if isinstance(base, int) and isinstance(exp, int) and exp > 0:
        _check_bits(base.bit_length() * exp)
    return base ** exp


def _multiply(left: Any, right: Any) -> Any:
    if isinstance(left, int) and isinstance(right, int):
        _check_bits(left.bit_length() + right.bit_length())
    elif isinstance(left, str) and isinstance(right, int):
        _check_length(len(left) * right)
    elif isinstance(left, int) and isinstance(right, str):
        _check_length(left * len(right))
    return left * right


def _add(left: Any, right: Any) -> Any:
    if isinstance(left, str) and isinstance(right, str):
        _check_length(len(left) + len(right))
    return left + right


_BINARY: dict[type[ast.operator], Callable[[Any, Any], Any]] = {
    ast.Add: _add,
    ast.Sub: operator.sub,
    ast.Mult: _multiply,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: _power,
}

_UNARY: dict[type[ast.unaryop], Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
    ast.Not: operator.not_,
}

_COMPARE: dict[type[ast.cmpop], Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}


@functools.lru_cache(maxsize=512)
def _parse(expression: str) -> ast.Expression:
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise FormulaError(f"Formula longer than {MAX_EXPRESSION_LENGTH} characters")
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise FormulaError(f"Invalid formula syntax: {e.msg}", cause=e) from e
    _check_structure(tree.body)
    return tree


def _check_structure(node: ast.AST) -> None:
    """Reject any node outside the whitelisted vocabulary."""
    if isinstance(node, ast.Constant):
        if not isinstance(node.value, int | float | str | bool | type(None)):
            raise FormulaError(f"Unsupported literal: {node.value!r}")
    elif isinstance(node, ast.Name):
        if not isinstance(node.ctx, ast.Load):
            raise FormulaError(f"Assignment to '{node.id}' is not allowed")
    elif isinstance(node, ast.BinOp):
        if type(node.op) not in _BINARY:
            raise FormulaError(f"Operator {type(node.op).__name__} is not allowed")
        _check_structure(node.left)
        _check_structure(node.right)
    elif isinstance(node, ast.UnaryOp):
        if type(node.op) not in _UNARY:
            raise FormulaError(f"Operator {type(node.op).__name__} is not allowed")
        _check_structure(node.operand)
    elif isinstance(node, ast.BoolOp):
        for value in node.values:
            _check_structure(value)
    elif isinstance(node, ast.Compare):
        for op in node.ops:
            if type(op) not in _COMPARE:
                raise FormulaError(f"Comparison {type(op).__name__} is not allowed")
        _check_structure(node.left)
        for comparator in node.comparators:
            _check_structure(comparator)
    elif isinstance(node, ast.IfExp):
        _check_structure(node.test)
        _check_structure(node.body)
        _check_structure(node.orelse)
    elif isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
            name = node.func.id if isinstance(node.func, ast.Name) else type(node.func).__name__
            raise FormulaError(f"Function '{name}' is not allowed")
        if node.keywords:
            raise FormulaError("Keyword arguments are not allowed")
        for arg in node.args:
            if isinstance(arg, ast.Starred):
                raise FormulaError("Star arguments are not allowed")
            _check_structure(arg)
    else:
        raise FormulaError(f"Expression element {type(node).__name__} is not allowed")


class FormulaEvaluator:
    """Evaluate whitelisted expressions over named inputs."""

    def validate(self, expression: str) -> None:
        """Raise :class:`FormulaError` if ``expression`` is not acceptable."""
        if not isinstance(expression, str) or not expression.strip():
            raise FormulaError("Formula is empty")
        _parse(expression)

    def names(self, expression: str) -> set[str]:
        """Input names referenced by ``expression`` (function names excluded)."""
        tree = _parse(expression)
        calls = {id(n.func) for n in ast.walk(tree) if isinstance(n, ast.Call)}
        return {
            n.id for n in ast.walk(tree)
            if isinstance(n, ast.Name) and id(n) not in calls
        }

    def evaluate(self, expression: str, inputs: dict[str, Any] | None = None) -> Any:
        self.validate(expression)
        tree = _parse(expression)
        try:
            return self._eval(tree.body, inputs or {})
        except FormulaError:
            raise
        except ZeroDivisionError as e:
            raise FormulaError(f"Division by zero in formula: {expression}", cause=e) from e
        except (TypeError, ValueError, OverflowError) as e:
            raise FormulaError(f"Formula evaluation failed: {e}", cause=e) from e

    def _eval(self, node: ast.AST, inputs: dict[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            if node.id not in inputs:
                raise FormulaError(f"Unknown formula input: {node.id}")
            return inputs[node.id]
        if isinstance(node, ast.BinOp):
            return _BINARY[type(node.op)](self._eval(node.left, inputs), self._eval(node.right, inputs))
        if isinstance(node, ast.UnaryOp):
            return _UNARY[type(node.op)](self._eval(node.operand, inputs))
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                value: Any = True
                for part in node.values:
                    value = self._eval(part, inputs)
                    if not value:
                        return value
                return value
            value = False
            for part in node.values:
                value = self._eval(part, inputs)
                if value:
                    return value
            return value
        if isinstance(node, ast.Compare):
            left = self._eval(node.left, inputs)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, inputs)
                if not _COMPARE[type(op)](left, right):
                    return False
                left = right
            return True
        if isinstance(node, ast.IfExp):
            branch = node.body if self._eval(node.test, inputs) else node.orelse
            return self._eval(branch, inputs)
        if isinstance(node, ast.Call):
            args = [self._eval(arg, inputs) for arg in node.args]
            return FUNCTIONS[node.func.id](*args)  # type: ignore[attr-defined]
        raise FormulaError(f"Expression element {type(node).__name__} is not allowed")


__all__ = ["FUNCTIONS", "FormulaEvaluator"]
