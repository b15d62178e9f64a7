"""Sandboxed condition expressions.

Condition strings such as ``data.value > 10`` or
``data.type === 'note' && !data.archived`` are parsed with LibCST and walked by
a small interpreter that only understands a whitelisted subset of Python
expression syntax. Nothing is ever compiled or executed.

Supported:
- literals: numbers, strings, ``True/False/None`` and ``true/false/null/undefined``
- names: ``data`` (the whole payload) and the payload's top-level keys
- ``a.b`` and ``a['b']`` / ``a[0]`` lookups on dicts and lists
  (``.length`` on lists and strings; missing keys resolve to None)
- comparisons ``== != < <= > >= in not in`` (chained like Python)
- ``and or not`` plus the JS spellings ``&& || !``, ``=== !==``
- arithmetic ``+ - * / // %`` and unary minus
- list literals and the calls ``len(x)``, ``lower(s)``, ``upper(s)``,
  ``contains(container, item)``
- conditional expressions ``a if cond else b``
"""

from __future__ import annotations

import logging
import operator
import re
from functools import lru_cache
from typing import Any, Callable

import libcst as cst

from marathon.errors import ConditionEvaluationError, ExpressionSyntaxError

logger = logging.getLogger(__name__)

_STRING_LITERAL = re.compile(r"""('(?:\\.|[^'\\])*'|"(?:\\.|[^"\\])*")""")
_JS_OPERATORS = (
    (re.compile(r"==="), "=="),
    (re.compile(r"!=="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
)

_CONSTANTS: dict[str, Any] = {
    "True": True,
    "False": False,
    "None": None,
    "true": True,
    "false": False,
    "null": None,
    "undefined": None,
}

_COMPARISONS: dict[type, Callable[[Any, Any], bool]] = {
    cst.Equal: operator.eq,
    cst.NotEqual: operator.ne,
    cst.LessThan: operator.lt,
    cst.LessThanEqual: operator.le,
    cst.GreaterThan: operator.gt,
    cst.GreaterThanEqual: operator.ge,
    cst.In: lambda left, right: left in right,
    cst.NotIn: lambda left, right: left not in right,
    cst.Is: operator.is_,
    cst.IsNot: operator.is_not,
}

_BINARY: dict[type, Callable[[Any, Any], Any]] = {
    cst.Add: operator.add,
    cst.Subtract: operator.sub,
    cst.Multiply: operator.mul,
    cst.Divide: operator.truediv,
    cst.FloorDivide: operator.floordiv,
    cst.Modulo: operator.mod,
}

# Longest str or list that + and * may build.
MAX_SEQUENCE_LENGTH = 10_000


def _check_length(op: cst.BaseBinaryOp, left: Any, right: Any) -> None:
    sequences = (str, list)
    if isinstance(op, cst.Multiply):
        if isinstance(left, sequences) and isinstance(right, int):
            size = len(left) * right
        elif isinstance(right, sequences) and isinstance(left, int):
            size = len(right) * left
        else:
            return
    elif isinstance(op, cst.Add) and isinstance(left, sequences) and isinstance(right, sequences):
        size = len(left) + len(right)
    else:
        return
    if size > MAX_SEQUENCE_LENGTH:
        raise ConditionEvaluationError(f"result longer than {MAX_SEQUENCE_LENGTH} items")


def _contains(container: Any, item: Any) -> bool:
    if container is None:
        return False
    return item in container


_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "len": len,
    "lower": lambda value: str(value).lower(),
    "upper": lambda value: str(value).upper(),
    "contains": _contains,
}


def normalize(expression: str) -> str:
    """Rewrite JS-style operators outside string literals to Python spelling."""
    parts = _STRING_LITERAL.split(expression)
    for index in range(0, len(parts), 2):
        chunk = parts[index]
        for pattern, replacement in _JS_OPERATORS:
            chunk = pattern.sub(replacement, chunk)
        parts[index] = chunk
    return "".join(parts).strip()


@lru_cache(maxsize=512)
def parse(expression: str) -> cst.BaseExpression:
    """Parse an expression into a LibCST tree.

    Raises:
        ExpressionSyntaxError: If the text is empty or not a valid expression.
    """
    source = normalize(expression)
    if not source:
        raise ExpressionSyntaxError("empty expression")
    try:
        return cst.parse_expression(source)
    except cst.ParserSyntaxError as exc:
        raise ExpressionSyntaxError(f"invalid expression {expression!r}: {exc.message}") from exc


def evaluate(expression: str, data: Any, **names: Any) -> Any:
    """Evaluate ``expression`` against a payload.

    Args:
        expression: Condition text.
        data: Payload bound to ``data``; its top-level keys are bound too.
        **names: Extra bindings (e.g. ``item`` for per-element filters).

    Raises:
        ConditionEvaluationError: On unsupported syntax, unknown names or a
            runtime failure such as comparing None with a number.
    """
    scope: dict[str, Any] = {}
    if isinstance(data, dict):
        scope.update(data)
    scope.update(names)
    scope["data"] = data
    tree = parse(expression)
    try:
        return _Interpreter(scope).eval(tree)
    except ConditionEvaluationError:
        raise
    except (TypeError, ValueError, ZeroDivisionError, IndexError, OverflowError) as exc:
        raise ConditionEvaluationError(f"{type(exc).__name__}: {exc}") from exc


def evaluate_condition(expression: str, data: Any, **names: Any) -> bool:
    """Truthiness of ``expression``; any evaluation failure counts as False."""
    try:
        return bool(evaluate(expression, data, **names))
    except ConditionEvaluationError as exc:
        logger.warning("Condition %r evaluated as false: %s", expression, exc)
        return False


class _Interpreter:
    """Recursive evaluator over the whitelisted LibCST node types."""

    def __init__(self, scope: dict[str, Any]) -> None:
        self.scope = scope

    def eval(self, node: cst.CSTNode) -> Any:
        if isinstance(node, cst.Name):
            return self._name(node.value)
        if isinstance(node, (cst.Integer, cst.Float, cst.SimpleString, cst.ConcatenatedString)):
            return node.evaluated_value
        if isinstance(node, cst.Attribute):
            if node.attr.value.startswith("__"):
                raise ExpressionSyntaxError(f"private attribute access: {node.attr.value}")
            return self._lookup(self.eval(node.value), node.attr.value)
        if isinstance(node, cst.Subscript):
            return self._subscript(node)
        if isinstance(node, cst.Comparison):
            return self._comparison(node)
        if isinstance(node, cst.BooleanOperation):
            left = self.eval(node.left)
            if isinstance(node.operator, cst.And):
                return self.eval(node.right) if left else left
            return left if left else self.eval(node.right)
        if isinstance(node, cst.UnaryOperation):
            value = self.eval(node.expression)
            if isinstance(node.operator, cst.Not):
                return not value
            if isinstance(node.operator, cst.Minus):
                return -value
            if isinstance(node.operator, cst.Plus):
                return +value
        if isinstance(node, cst.BinaryOperation):
            op = _BINARY.get(type(node.operator))
            if op is not None:
                left, right = self.eval(node.left), self.eval(node.right)
                _check_length(node.operator, left, right)
                return op(left, right)
        if isinstance(node, (cst.List, cst.Tuple)):
            return [self._element(element) for element in node.elements]
        if isinstance(node, cst.Call):
            return self._call(node)
        if isinstance(node, cst.IfExp):
            return self.eval(node.body) if self.eval(node.test) else self.eval(node.orelse)
        raise ExpressionSyntaxError(f"unsupported syntax: {type(node).__name__}")

    def _name(self, name: str) -> Any:
        if name in self.scope:
            return self.scope[name]
        if name in _CONSTANTS:
            return _CONSTANTS[name]
        raise ConditionEvaluationError(f"unknown name: {name}")

    def _lookup(self, value: Any, key: str) -> Any:
        if isinstance(value, dict):
            return value.get(key)
        if key == "length" and isinstance(value, (list, str)):
            return len(value)
        if value is None:
            raise ConditionEvaluationError(f"cannot read '{key}' of None")
        raise ConditionEvaluationError(f"cannot read '{key}' of {type(value).__name__}")

    def _subscript(self, node: cst.Subscript) -> Any:
        if len(node.slice) != 1 or not isinstance(node.slice[0].slice, cst.Index):
            raise ExpressionSyntaxError("only single-index subscripts are supported")
        container = self.eval(node.value)
        key = self.eval(node.slice[0].slice.value)
        if isinstance(container, dict):
            return container.get(key)
        if isinstance(container, (list, str)) and isinstance(key, int):
            return container[key] if -len(container) <= key < len(container) else None
        if container is None:
            raise ConditionEvaluationError(f"cannot index None with {key!r}")
        raise ConditionEvaluationError(f"cannot index {type(container).__name__}")

    def _comparison(self, node: cst.Comparison) -> bool:
        left = self.eval(node.left)
        for target in node.comparisons:
            op = _COMPARISONS.get(type(target.operator))
            if op is None:
                raise ExpressionSyntaxError(f"unsupported operator: {type(target.operator).__name__}")
            right = self.eval(target.comparator)
            if not op(left, right):
                return False
            left = right
        return True

    def _element(self, element: cst.BaseElement) -> Any:
        if not isinstance(element, cst.Element):
            raise ExpressionSyntaxError("starred elements are not supported")
        return self.eval(element.value)

    def _call(self, node: cst.Call) -> Any:
        if not isinstance(node.func, cst.Name) or node.func.value not in _FUNCTIONS:
            raise ExpressionSyntaxError("only len, lower, upper and contains may be called")
        args = []
        for arg in node.args:
            if arg.keyword is not None or arg.star:
                raise ExpressionSyntaxError("keyword and starred arguments are not supported")
            args.append(self.eval(arg.value))
        return _FUNCTIONS[node.func.value](*args)
