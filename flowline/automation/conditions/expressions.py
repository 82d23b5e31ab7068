"""
Flowline Expression Parser

A small, closed expression language for condition steps, ``nextSteps``
guards, ``wait.until`` and ``while`` loops.
"""

from __future__ import annotations

import ast
import operator
import re
from typing import Any, Dict, Optional

import structlog

from flowline.automation.errors import ExpressionError

logger = structlog.get_logger(__name__)


class ExpressionParser:
    """
    Interpreter for boolean expressions over context variables.

    Supports:
    - Literals: numbers, strings, true/false/null (or True/False/None), lists
    - Variable references: status, fetch.items, fetch["count"], items[0]
    - Comparisons: ==, !=, <, <=, >, >=, in, not in (and === / !==)
    - Boolean: and, or, not (and &&, ||, !)

    There are no function calls, no arithmetic beyond unary minus and no
    attribute access on anything but mappings, so expressions never run
    caller-supplied code. ``{{ name }}`` tokens are accepted and read as
    plain variable references. Unknown names evaluate to ``None``.
    """

    COMPARISONS = {
        ast.Eq: operator.eq,
        ast.NotEq: operator.ne,
        ast.Lt: operator.lt,
        ast.LtE: operator.le,
        ast.Gt: operator.gt,
        ast.GtE: operator.ge,
        ast.Is: operator.is_,
        ast.IsNot: operator.is_not,
        ast.In: lambda a, b: a in b,
        ast.NotIn: lambda a, b: a not in b,
    }

    _STRING_LITERAL = re.compile(r"(\"(?:[^\"\\]|\\.)*\"|'(?:[^'\\]|\\.)*')")
    _TOKEN = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")
    _REWRITES = (
        (re.compile(r"==="), "=="),
        (re.compile(r"!=="), "!="),
        (re.compile(r"&&"), " and "),
        (re.compile(r"\|\|"), " or "),
        (re.compile(r"!(?!=)"), " not "),
        (re.compile(r"\btrue\b"), "True"),
        (re.compile(r"\bfalse\b"), "False"),
        (re.compile(r"\bnull\b"), "None"),
    )

    def __init__(self, variables: Optional[Dict[str, Any]] = None):
        self.variables = variables or {}

    def set_variables(self, variables: Dict[str, Any]) -> None:
        self.variables = variables

    def normalize(self, expression: str) -> str:
        """Rewrite the accepted operator spellings, leaving string literals alone."""
        parts = self._STRING_LITERAL.split(expression)
        for i in range(0, len(parts), 2):
            chunk = self._TOKEN.sub(lambda m: m.group(1), parts[i])
            for pattern, replacement in self._REWRITES:
                chunk = pattern.sub(replacement, chunk)
            parts[i] = chunk
        return "".join(parts).strip()

    def parse(self, expression: str) -> Any:
        """
        Parse and evaluate an expression.

        Raises:
            ExpressionError: on syntax errors, disallowed constructs or
                comparisons between incompatible values.
        """
        if not expression or not expression.strip():
            raise ExpressionError("Empty expression")

        source = self.normalize(expression)
        try:
            tree = ast.parse(source, mode="eval")
        except SyntaxError as e:
            logger.warning("expression_syntax_error", expression=expression, error=str(e))
            raise ExpressionError(f"Invalid expression syntax: {expression}") from e

        try:
            return self._eval_node(tree.body)
        except ExpressionError:
            raise
        except TypeError as e:
            raise ExpressionError(f"Expression evaluation error: {expression} - {e}") from e

    def evaluate_bool(self, expression: str) -> bool:
        return bool(self.parse(expression))

    def _eval_node(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            return self.variables.get(node.id)

        if isinstance(node, ast.Attribute):
            value = self._eval_node(node.value)
            if node.attr == "length" and isinstance(value, (list, tuple, str, dict)):
                return len(value)
            if isinstance(value, dict):
                return value.get(node.attr)
            return None

        if isinstance(node, ast.Subscript):
            value = self._eval_node(node.value)
            key_node = node.slice
            if isinstance(key_node, ast.UnaryOp) and isinstance(key_node.op, ast.USub):
                key = self._eval_node(key_node)
            elif isinstance(key_node, ast.Constant):
                key = key_node.value
            else:
                raise ExpressionError("Subscripts must be constant keys")
            if value is None:
                return None
            try:
                return value[key]
            except (KeyError, IndexError, TypeError):
                return None

        if isinstance(node, ast.Compare):
            left = self._eval_node(node.left)
            for op, comparator in zip(node.ops, node.comparators):
                func = self.COMPARISONS.get(type(op))
                if func is None:
                    raise ExpressionError(f"Unsupported comparison: {type(op).__name__}")
                right = self._eval_node(comparator)
                if not func(left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result: Any = True
                for value_node in node.values:
                    result = self._eval_node(value_node)
                    if not result:
                        return result
                return result
            result = False
            for value_node in node.values:
                result = self._eval_node(value_node)
                if result:
                    return result
            return result

        if isinstance(node, ast.UnaryOp):
            operand = self._eval_node(node.operand)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub) and isinstance(operand, (int, float)):
                return -operand
            raise ExpressionError(f"Unsupported unary operator: {type(node.op).__name__}")

        if isinstance(node, (ast.List, ast.Tuple)):
            return [self._eval_node(element) for element in node.elts]

        raise ExpressionError(f"Unsupported expression element: {type(node).__name__}")


def evaluate_expression(expression: str, variables: Dict[str, Any]) -> bool:
    """Evaluate ``expression`` against ``variables`` as a boolean."""
    return ExpressionParser(variables).evaluate_bool(expression)
