"""Tests for the restricted condition language."""

import pytest

from flowcore.errors import ConditionEvaluationError
from flowcore.graph.conditions import ConditionEvaluator


@pytest.fixture
def evaluator():
    return ConditionEvaluator()


class TestComparisons:
    def test_amount_threshold_routes_both_ways(self, evaluator):
        compiled = evaluator.compile("amount >= 10000")

        assert compiled.evaluate({"amount": 15000}) is True
        assert compiled.evaluate({"amount": 500}) is False
        assert compiled.evaluate({"amount": 10000}) is True

    def test_string_comparison_requires_strings(self, evaluator):
        compiled = evaluator.compile("amount >= 10000")

        with pytest.raises(ConditionEvaluationError, match="Cannot compare str with int"):
            compiled.evaluate({"amount": "abc"})

    @pytest.mark.parametrize(
        "expression,variables,expected",
        [
            ("region == 'EU'", {"region": "EU"}, True),
            ('region != "EU"', {"region": "US"}, True),
            ("score < 0.5", {"score": 0.25}, True),
            ("score > 1e3", {"score": 999}, False),
            ("count <= 3", {"count": 3}, True),
            ("flag == true", {"flag": True}, True),
            ("flag != false", {"flag": False}, False),
            ("name >= 'b'", {"name": "c"}, True),
            ("balance < -100", {"balance": -250}, True),
            ("delta >= -0.5", {"delta": -0.75}, False),
        ],
    )
    def test_supported_operators(self, evaluator, expression, variables, expected):
        assert evaluator.evaluate(expression, variables) is expected

    def test_booleans_are_not_numbers(self, evaluator):
        with pytest.raises(ConditionEvaluationError):
            evaluator.evaluate("approved > 0", {"approved": True})

    def test_booleans_cannot_be_ordered(self, evaluator):
        with pytest.raises(ConditionEvaluationError, match="not defined for booleans"):
            evaluator.evaluate("a < b", {"a": True, "b": False})


class TestConnectives:
    def test_and_or_not(self, evaluator):
        expression = "amount > 100 && (region == 'EU' || vip) && !blocked"
        variables = {"amount": 500, "region": "US", "vip": True, "blocked": False}

        assert evaluator.evaluate(expression, variables) is True
        assert evaluator.evaluate(expression, {**variables, "blocked": True}) is False

    def test_and_binds_tighter_than_or(self, evaluator):
        # a || (b && c)
        assert evaluator.evaluate("a || b && c", {"a": True, "b": False, "c": False}) is True

    def test_short_circuit_skips_right_operand(self, evaluator):
        assert evaluator.evaluate("false && missing > 1", {}) is False
        assert evaluator.evaluate("true || missing > 1", {}) is True

    def test_connectives_require_booleans(self, evaluator):
        with pytest.raises(ConditionEvaluationError, match="requires boolean operands"):
            evaluator.evaluate("amount && true", {"amount": 1})

    def test_result_must_be_boolean(self, evaluator):
        with pytest.raises(ConditionEvaluationError, match="expected a boolean"):
            evaluator.evaluate("amount", {"amount": 5})


class TestVariables:
    def test_dotted_lookup(self, evaluator):
        variables = {"order": {"customer": {"tier": "gold"}}}
        assert evaluator.evaluate("order.customer.tier == 'gold'", variables) is True

    def test_unknown_variable_fails_closed(self, evaluator):
        with pytest.raises(ConditionEvaluationError, match="Unknown variable 'amount'"):
            evaluator.evaluate("amount > 1", {})

    def test_unknown_nested_variable(self, evaluator):
        with pytest.raises(ConditionEvaluationError, match="order.total"):
            evaluator.evaluate("order.total > 1", {"order": {}})

    def test_referenced_variables(self, evaluator):
        compiled = evaluator.compile("a.b > 1 && !(c == 'x') || d")
        assert compiled.variables == {"a", "c", "d"}


class TestCompilation:
    @pytest.mark.parametrize(
        "expression",
        [
            "",
            "amount >",
            "amount = 5",
            "1 < amount < 10",
            "(amount > 1",
            "amount > 1)",
            "len(items) > 0",
            "amount + 1 > 2",
            "amount - 1 > 2",
            "- 5 < amount",
            "__import__('os')",
            "a > 1 and b < 2",
        ],
    )
    def test_rejects_anything_outside_the_grammar(self, evaluator, expression):
        with pytest.raises(ConditionEvaluationError):
            evaluator.compile(expression)

    def test_error_mentions_expression(self, evaluator):
        with pytest.raises(ConditionEvaluationError) as exc_info:
            evaluator.compile("amount = 5")
        assert exc_info.value.expression == "amount = 5"

    def test_compiled_once_per_expression(self, evaluator):
        first = evaluator.compile("amount > 1")
        second = evaluator.compile("amount > 1")
        assert first is second

    def test_escaped_quotes_in_strings(self, evaluator):
        assert evaluator.evaluate(r"name == 'O\'Brien'", {"name": "O'Brien"}) is True
