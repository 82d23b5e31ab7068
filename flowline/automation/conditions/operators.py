"""
Flowline Condition Operators

Comparison operators for trigger conditions.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Union

from flowline.automation.types import TriggerOperator


class OperatorRegistry:
    """
    Registry of trigger condition operators.

    ``exists`` is special: its left operand is whether the field was
    present in the payload at all, and its right operand the expected
    presence (``True`` when omitted).
    """

    def __init__(self):
        self._operators: Dict[TriggerOperator, Callable[[Any, Any], bool]] = {}
        self._register_builtin_operators()

    def _register_builtin_operators(self) -> None:
        self._operators[TriggerOperator.EQUALS] = self._equals
        self._operators[TriggerOperator.NOT_EQUALS] = self._not_equals
        self._operators[TriggerOperator.CONTAINS] = self._contains
        self._operators[TriggerOperator.GREATER_THAN] = self._greater_than
        self._operators[TriggerOperator.LESS_THAN] = self._less_than
        self._operators[TriggerOperator.EXISTS] = self._exists

    def parse(self, operator: Union[str, TriggerOperator]) -> TriggerOperator:
        """Turn a stored operator name into an operator, or raise ValueError."""
        if isinstance(operator, TriggerOperator):
            return operator
        try:
            return TriggerOperator(operator)
        except ValueError:
            raise ValueError(f"Unknown operator: {operator}") from None

    def evaluate(
        self,
        operator: Union[str, TriggerOperator],
        left: Any,
        right: Any,
    ) -> bool:
        """Evaluate an operator."""
        func = self._operators.get(self.parse(operator))
        if not func:
            raise ValueError(f"Unknown operator: {operator}")
        return func(left, right)

    # === Operator Implementations ===

    @staticmethod
    def _equals(left: Any, right: Any) -> bool:
        """Equality, coercing numeric strings against numbers."""
        if isinstance(left, str) and isinstance(right, (int, float)) and not isinstance(right, bool):
            try:
                left = float(left) if "." in left else int(left)
            except ValueError:
                pass
        elif isinstance(right, str) and isinstance(left, (int, float)) and not isinstance(left, bool):
            try:
                right = float(right) if "." in right else int(right)
            except ValueError:
                pass

        return left == right

    @staticmethod
    def _not_equals(left: Any, right: Any) -> bool:
        return not OperatorRegistry._equals(left, right)

    @staticmethod
    def _contains(left: Any, right: Any) -> bool:
        """Substring, list membership or dict key."""
        if left is None:
            return False
        if isinstance(left, str):
            return str(right) in left
        try:
            return right in left
        except TypeError:
            return False

    @staticmethod
    def _greater_than(left: Any, right: Any) -> bool:
        if left is None or right is None:
            return False
        try:
            return float(left) > float(right)
        except (ValueError, TypeError):
            return str(left) > str(right)

    @staticmethod
    def _less_than(left: Any, right: Any) -> bool:
        if left is None or right is None:
            return False
        try:
            return float(left) < float(right)
        except (ValueError, TypeError):
            return str(left) < str(right)

    @staticmethod
    def _exists(present: Any, expected: Any) -> bool:
        expected = True if expected is None else bool(expected)
        return bool(present) == expected


_default_registry = OperatorRegistry()


def compare(operator: Union[str, TriggerOperator], left: Any, right: Any) -> bool:
    """Evaluate a comparison with the default registry."""
    return _default_registry.evaluate(operator, left, right)
