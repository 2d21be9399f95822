"""Tests for formula evaluation and filter conditions."""

import pytest

from services.execution.conditions import evaluate_condition, evaluate_conditions, parse_literal
from services.execution.errors import ConfigurationError
from services.expression import ExpressionError, evaluate_boolean, evaluate_expression, to_number


class TestEvaluateExpression:
    def test_js_operators(self):
        assert evaluate_expression('12 > 10 && "gold" === "gold"') is True
        assert evaluate_expression("1 !== 1 || !false") is True

    def test_string_methods(self):
        assert evaluate_expression("'Hello'.toLowerCase().includes('ell')") is True
        assert evaluate_expression("'abc'.length") == 3

    def test_names_from_context(self):
        names = {"price": 2.5, "quantity": 4, "order": {"tier": "gold"}}
        assert evaluate_expression("price * quantity", names) == 10.0
        assert evaluate_expression("order.tier == 'gold'", names) is True

    def test_loose_numeric_equality(self):
        assert evaluate_boolean("'5' == 5")

    def test_string_concatenation(self):
        assert evaluate_expression("'n=' + 3") == "n=3"

    @pytest.mark.parametrize("source", [
        "unknown_name + 1",
        "''.__class__",
        "__import__('os')",
        "1 / 0",
        "2 ** 1000",
        "0 ** -1",
        "1e200 ** 2",
        "(-8) ** 0.5",
        "[1] in {'a': 1}",
        "{[1]: 2}",
        "",
    ])
    def test_rejected(self, source):
        with pytest.raises(ExpressionError):
            evaluate_expression(source)

    def test_quoted_operators_are_left_alone(self):
        assert evaluate_expression("'a && b'") == "a && b"


def test_to_number():
    assert to_number("42") == 42
    assert to_number(" 1.5 ") == 1.5
    assert to_number(True) is None
    assert to_number("abc") is None
    assert to_number("") is None


class TestConditions:
    context = {"order": {"total": 150, "status": "Shipped"}, "tags": [], "flag": "true"}

    def test_numeric_comparison(self):
        result = evaluate_condition(
            {"field": "{{order.total}}", "operator": "greater_than", "value": "100"}, self.context)
        assert result["result"] is True
        assert result["fieldValue"] == 150

    def test_case_insensitive_contains(self):
        result = evaluate_condition(
            {"field": "order.status", "operator": "contains", "value": "ship"}, self.context)
        assert result["result"] is True

    def test_empty_and_truthy_operators(self):
        passed, _ = evaluate_conditions([
            {"field": "tags", "operator": "is_empty"},
            {"field": "flag", "operator": "is_true"},
        ], self.context)
        assert passed is True

    def test_or_logic(self):
        passed, results = evaluate_conditions([
            {"field": "order.total", "operator": "less_than", "value": "10"},
            {"field": "order.status", "operator": "equals", "value": "Shipped"},
        ], self.context, "OR")
        assert passed is True
        assert [r["result"] for r in results] == [False, True]

    def test_empty_condition_list_passes(self):
        assert evaluate_conditions([], self.context) == (True, [])

    def test_numeric_operator_on_text_fails(self):
        with pytest.raises(ConfigurationError) as exc_info:
            evaluate_condition({"field": "order.status", "operator": "greater_than", "value": "1"},
                               self.context)
        assert exc_info.value.error_code == "INVALID_CONDITION"

    def test_invalid_regex(self):
        with pytest.raises(ConfigurationError) as exc_info:
            evaluate_condition({"field": "order.status", "operator": "regex_match", "value": "("},
                               self.context)
        assert exc_info.value.error_code == "INVALID_REGEX"

    def test_unresolved_field_is_a_literal(self):
        assert parse_literal("42") == 42
        assert parse_literal("'quoted'") == "quoted"
        assert parse_literal("null") is None
