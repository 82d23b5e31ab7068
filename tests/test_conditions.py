"""
Tests for Flowline trigger conditions and the expression language.
"""

import pytest

from flowline.automation.conditions.evaluator import ConditionEvaluator, condition
from flowline.automation.conditions.expressions import ExpressionParser, evaluate_expression
from flowline.automation.conditions.operators import OperatorRegistry, compare
from flowline.automation.errors import ExpressionError, TriggerEvaluationError
from flowline.automation.execution.context import ExecutionContext
from flowline.automation.types import TriggerCondition


class TestOperators:
    """Tests for trigger condition operators."""

    def test_equals_coerces_numeric_strings(self):
        assert compare("equals", "5", 5)
        assert compare("equals", 2.5, "2.5")
        assert not compare("equals", "abc", 5)
        assert compare("not_equals", "a", "b")

    def test_contains(self):
        assert compare("contains", "hello world", "world")
        assert compare("contains", ["a", "b"], "a")
        assert compare("contains", {"k": 1}, "k")
        assert not compare("contains", None, "x")

    def test_ordering(self):
        assert compare("greater_than", "10", 9)
        assert compare("less_than", 1, 2)
        assert not compare("greater_than", None, 1)

    def test_exists_uses_presence(self):
        assert compare("exists", True, None)
        assert compare("exists", False, False)
        assert not compare("exists", False, True)

    def test_unknown_operator(self):
        with pytest.raises(ValueError):
            OperatorRegistry().evaluate("matches_regex", "a", "a")


class TestConditionEvaluator:
    """Tests for AND-ed trigger conditions."""

    def test_all_conditions_must_hold(self):
        evaluator = ConditionEvaluator()
        conditions = (
            condition("status").equals("open")
            .when("priority").greater_than(2)
            .when("assignee").exists()
            .build()
        )

        assert evaluator.matches(conditions, {"status": "open", "priority": 3, "assignee": None})
        assert not evaluator.matches(conditions, {"status": "open", "priority": 1, "assignee": "u"})
        assert not evaluator.matches(conditions, {"status": "open", "priority": 3})

    def test_nested_fields(self):
        evaluator = ConditionEvaluator()
        conditions = [TriggerCondition(field="entity.tags", operator="contains", value="urgent")]

        assert evaluator.matches(conditions, {"entity": {"tags": ["urgent", "bug"]}})

    def test_unknown_operator_is_a_definition_error(self):
        """Test an unknown operator raises instead of silently not matching."""
        evaluator = ConditionEvaluator()
        conditions = [TriggerCondition(field="status", operator="like", value="o%")]

        with pytest.raises(TriggerEvaluationError) as exc:
            evaluator.matches(conditions, {"status": "open"}, trigger_id="t1")
        assert exc.value.trigger_id == "t1"

    def test_evaluate_expression_over_context(self):
        evaluator = ConditionEvaluator()
        context = ExecutionContext(variables={"amount": 150})

        assert evaluator.evaluate_expression("amount > 100", context)


class TestExpressionParser:
    """Tests for the closed expression language."""

    def test_comparisons_and_booleans(self):
        variables = {"status": "approved", "count": 3, "fetch": {"items": [1, 2]}}

        assert evaluate_expression("status == 'approved' and count >= 3", variables)
        assert evaluate_expression("count > 5 || fetch.items.length == 2", variables)
        assert evaluate_expression("!(count < 1)", variables)
        assert evaluate_expression("2 in fetch.items", variables)
        assert evaluate_expression("fetch['items'][0] === 1", variables)

    def test_literal_spellings(self):
        assert evaluate_expression("flag == true", {"flag": True})
        assert evaluate_expression("value == null", {"value": None})
        assert evaluate_expression("'&&' == '&&'", {})

    def test_unknown_names_are_none(self):
        assert evaluate_expression("missing == null", {})
        assert not evaluate_expression("missing", {})

    def test_template_tokens_are_references(self):
        assert evaluate_expression("{{ order.total }} > 10", {"order": {"total": 11}})

    def test_rejects_function_calls(self):
        """Test that no caller-supplied code can run."""
        with pytest.raises(ExpressionError):
            ExpressionParser({}).parse("__import__('os').system('true')")

    def test_rejects_arithmetic(self):
        with pytest.raises(ExpressionError):
            ExpressionParser({"a": 1}).parse("a + 1 > 1")

    def test_syntax_errors(self):
        with pytest.raises(ExpressionError):
            ExpressionParser({}).parse("a ==")
        with pytest.raises(ExpressionError):
            ExpressionParser({}).parse("   ")

    def test_incompatible_comparison(self):
        """Test ordering a string against a number is an expression error."""
        with pytest.raises(ExpressionError):
            ExpressionParser({"a": "x"}).parse("a > 1")
