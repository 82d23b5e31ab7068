"""
Flowline Conditions

Trigger condition operators and the safe expression language used by
condition steps, guards and loops.
"""

from flowline.automation.conditions.operators import OperatorRegistry, compare
from flowline.automation.conditions.expressions import ExpressionParser, evaluate_expression
from flowline.automation.conditions.evaluator import ConditionEvaluator, ConditionBuilder, condition

__all__ = [
    "OperatorRegistry",
    "compare",
    "ExpressionParser",
    "evaluate_expression",
    "ConditionEvaluator",
    "ConditionBuilder",
    "condition",
]
