"""
Flowline Condition Evaluator

Evaluates trigger conditions against stimulus payloads and expressions
against an execution context.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

import structlog

from flowline.automation.errors import TriggerEvaluationError
from flowline.automation.types import TriggerCondition, TriggerOperator
from flowline.automation.conditions.operators import OperatorRegistry
from flowline.automation.conditions.expressions import ExpressionParser

if TYPE_CHECKING:
    from flowline.automation.execution.context import ExecutionContext

logger = structlog.get_logger(__name__)


def lookup_field(payload: Any, path: str) -> Tuple[bool, Any]:
    """Resolve a dotted path in a payload. Returns (present, value)."""
    value = payload
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return False, None
    return True, value


class ConditionEvaluator:
    """
    Evaluates conditions.

    Trigger conditions are AND-ed together; an unknown operator is a
    definition error rather than a non-match, and raises
    TriggerEvaluationError.
    """

    def __init__(self):
        self._operator_registry = OperatorRegistry()

    def matches(
        self,
        conditions: List[TriggerCondition],
        payload: Dict[str, Any],
        trigger_id: Optional[str] = None,
    ) -> bool:
        """True when every condition holds for ``payload``."""
        for item in conditions:
            if not self._evaluate_single(item, payload, trigger_id):
                logger.debug(
                    "trigger_condition_rejected",
                    trigger_id=trigger_id,
                    field=item.field,
                    operator=item.operator,
                )
                return False
        return True

    def _evaluate_single(
        self,
        item: TriggerCondition,
        payload: Dict[str, Any],
        trigger_id: Optional[str],
    ) -> bool:
        if not item.field:
            raise TriggerEvaluationError("Trigger condition has no field", trigger_id=trigger_id)
        try:
            operator = self._operator_registry.parse(item.operator)
        except ValueError as e:
            raise TriggerEvaluationError(str(e), trigger_id=trigger_id) from e

        present, value = lookup_field(payload, item.field)
        if operator == TriggerOperator.EXISTS:
            return self._operator_registry.evaluate(operator, present, item.value)
        return self._operator_registry.evaluate(operator, value, item.value)

    def evaluate_expression(self, expression: str, context: "ExecutionContext") -> bool:
        """Evaluate a boolean expression over the context's variables."""
        result = ExpressionParser(context.namespace()).evaluate_bool(expression)
        logger.debug("expression_evaluated", expression=expression, result=result)
        return result


# === Condition Builder ===


class ConditionBuilder:
    """
    Builder for trigger condition lists.

    Example:
        conditions = (
            condition("task.status").equals("done")
            .and_when("task.priority").greater_than(3)
            .build()
        )
    """

    def __init__(self):
        self._conditions: List[TriggerCondition] = []
        self._current: Optional[str] = None

    def when(self, field: str) -> "ConditionBuilder":
        self._current = field
        return self

    and_when = when

    def _add(self, operator: TriggerOperator, value: Any) -> "ConditionBuilder":
        if self._current:
            self._conditions.append(TriggerCondition(self._current, operator.value, value))
            self._current = None
        return self

    def equals(self, value: Any) -> "ConditionBuilder":
        return self._add(TriggerOperator.EQUALS, value)

    def not_equals(self, value: Any) -> "ConditionBuilder":
        return self._add(TriggerOperator.NOT_EQUALS, value)

    def contains(self, value: Any) -> "ConditionBuilder":
        return self._add(TriggerOperator.CONTAINS, value)

    def greater_than(self, value: Any) -> "ConditionBuilder":
        return self._add(TriggerOperator.GREATER_THAN, value)

    def less_than(self, value: Any) -> "ConditionBuilder":
        return self._add(TriggerOperator.LESS_THAN, value)

    def exists(self, expected: bool = True) -> "ConditionBuilder":
        return self._add(TriggerOperator.EXISTS, expected)

    def build(self) -> List[TriggerCondition]:
        return list(self._conditions)


def condition(field: str) -> ConditionBuilder:
    """Create a condition builder."""
    return ConditionBuilder().when(field)
