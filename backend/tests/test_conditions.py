"""Tests for the conditional evaluator and its result cache."""

import pytest

from core.exceptions import ValidationError
from workflow.conditions import ConditionalEvaluator


@pytest.fixture
def evaluator():
    return ConditionalEvaluator(cache_size=100)


VARS = {
    "trigger": {"amount": 150, "status": "paid", "flag": True, "tags": ["vip", "eu"]},
    "steps": {"fetch": {"status_code": 200}},
}


@pytest.mark.unit
class TestSimpleConditions:
    def test_boolean_literal(self, evaluator):
        assert evaluator.evaluate(True, VARS) is True
        assert evaluator.evaluate(False, VARS) is False

    def test_numeric_expression(self, evaluator):
        assert evaluator.evaluate("{{trigger.amount}} > 100", VARS) is True
        assert evaluator.evaluate("{{trigger.amount}} < 100", VARS) is False

    def test_string_equality(self, evaluator):
        assert evaluator.evaluate("{{trigger.status}} == 'paid'", VARS) is True
        assert evaluator.evaluate("{{trigger.status}} != \"paid\"", VARS) is False

    def test_missing_placeholder_is_null(self, evaluator):
        assert evaluator.evaluate("{{trigger.nope}} == null", VARS) is True

    def test_bare_placeholder_truthiness(self, evaluator):
        assert evaluator.evaluate("{{trigger.flag}}", VARS) is True

    def test_forbidden_operators(self, evaluator):
        for expression in ("{{trigger.amount}} >= 100", "true && true", "1 === 1"):
            with pytest.raises(ValidationError):
                evaluator.evaluate(expression, VARS)

    def test_only_one_comparison(self, evaluator):
        with pytest.raises(ValidationError):
            evaluator.evaluate("1 < 2 < 3", VARS)

    def test_comparator_inside_quotes_is_text(self, evaluator):
        assert evaluator.evaluate("'a>b' == 'a>b'", VARS) is True


@pytest.mark.unit
class TestStructuredConditions:
    def test_equals_is_strict(self, evaluator):
        assert evaluator.evaluate({"field": "steps.fetch.status_code", "operator": "equals", "value": 200}, VARS)
        assert not evaluator.evaluate({"field": "trigger.flag", "operator": "equals", "value": 1}, VARS)

    def test_operators(self, evaluator):
        assert evaluator.evaluate({"field": "trigger.tags", "operator": "contains", "value": "vip"}, VARS)
        assert evaluator.evaluate({"field": "trigger.status", "operator": "in", "value": ["paid", "refunded"]}, VARS)
        assert evaluator.evaluate({"field": "trigger.status", "operator": "starts_with", "value": "pa"}, VARS)
        assert not evaluator.evaluate({"field": "trigger.nope", "operator": "exists"}, VARS)

    def test_value_placeholders_resolved(self, evaluator):
        variables = {**VARS, "limits": {"max": 200}}
        assert evaluator.evaluate(
            {"field": "trigger.amount", "operator": "less_than", "value": "{{limits.max}}"}, variables
        )

    def test_unknown_operator_is_false(self, evaluator):
        assert evaluator.evaluate({"field": "trigger.amount", "operator": "resembles", "value": 1}, VARS) is False

    def test_logical_composition(self, evaluator):
        condition = {
            "and": [
                {"field": "trigger.status", "operator": "equals", "value": "paid"},
                {"or": [
                    {"field": "trigger.amount", "operator": "greater_than", "value": 1000},
                    {"not": {"field": "trigger.flag", "operator": "equals", "value": False}},
                ]},
            ]
        }
        assert evaluator.evaluate(condition, VARS) is True

    def test_unsupported_shape(self, evaluator):
        with pytest.raises(ValidationError):
            evaluator.evaluate({"something": 1}, VARS)
        with pytest.raises(ValidationError):
            evaluator.evaluate({"type": "switch-case", "field": "x"}, VARS)


@pytest.mark.unit
class TestCompositeConditions:
    def test_if_then_else(self, evaluator):
        result = evaluator.evaluate_composite(
            {"type": "if-then-else", "condition": "{{trigger.amount}} > 100", "then": ["big"], "else": ["small"]},
            VARS,
        )
        assert result["condition_met"] is True
        assert result["branch"] == "then"
        assert result["next"] == ["big"]

    def test_switch_case(self, evaluator):
        config = {
            "type": "switch-case",
            "field": "trigger.status",
            "cases": [{"value": "open", "next": ["a"]}, {"value": "paid", "next": ["b"]}],
            "default": ["c"],
        }
        result = evaluator.evaluate_composite(config, VARS)
        assert result["matched_case"] == 1
        assert result["next"] == ["b"]

        result = evaluator.evaluate_composite(config, {"trigger": {"status": "void"}})
        assert result["matched_case"] == "default"
        assert result["next"] == ["c"]

    def test_switch_case_requires_field(self, evaluator):
        with pytest.raises(ValidationError):
            evaluator.evaluate_composite({"type": "switch-case", "cases": []}, VARS)

    def test_loop_while(self, evaluator):
        result = evaluator.evaluate_composite({"type": "loop-while", "condition": "{{iteration}} < 3"}, VARS)
        assert result["total_iterations"] == 3
        assert result["stopped"] == "condition_false"

        capped = evaluator.evaluate_composite(
            {"type": "loop-while", "condition": True, "max_iterations": 2}, VARS
        )
        assert capped["total_iterations"] == 2
        assert capped["stopped"] == "max_iterations"

    def test_loop_for_filters_items(self, evaluator):
        config = {
            "type": "loop-for",
            "items": [{"age": 25}, {"age": 35}, {"age": 45}],
            "condition": {"field": "item.age", "operator": "greater_than", "value": 30},
        }
        result = evaluator.evaluate_composite(config, VARS)
        assert result["total_iterations"] == 3
        assert result["items"] == [{"age": 35}, {"age": 45}]

    def test_loop_for_limit(self, evaluator):
        with pytest.raises(ValidationError):
            evaluator.evaluate_composite({"type": "loop-for", "items": [1, 2, 3], "max_iterations": 2}, VARS)

    def test_unknown_type(self, evaluator):
        with pytest.raises(ValidationError):
            evaluator.evaluate_composite({"type": "goto"}, VARS)


@pytest.mark.unit
class TestConditionCache:
    def test_repeat_evaluation_is_a_hit(self, evaluator):
        condition = "{{trigger.amount}} > 100"
        first = evaluator.evaluate(condition, VARS)
        second = evaluator.evaluate(condition, VARS)
        assert first == second
        stats = evaluator.get_cache_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["evaluations"] == 1

    def test_different_variables_miss(self, evaluator):
        evaluator.evaluate("{{trigger.amount}} > 100", VARS)
        evaluator.evaluate("{{trigger.amount}} > 100", {"trigger": {"amount": 5}})
        assert evaluator.get_cache_stats()["misses"] == 2

    def test_composite_results_are_copies(self, evaluator):
        config = {"type": "loop-for", "items": [1, 2]}
        result = evaluator.evaluate_composite(config, VARS)
        result["items"].append(99)
        assert evaluator.evaluate_composite(config, VARS)["items"] == [1, 2]

    def test_bounded_size(self):
        evaluator = ConditionalEvaluator(cache_size=2)
        for amount in (1, 2, 3):
            evaluator.evaluate("{{x}} > 0", {"x": amount})
        assert evaluator.get_cache_stats()["size"] == 2

    def test_failures_not_cached(self, evaluator):
        for _ in range(2):
            with pytest.raises(ValidationError):
                evaluator.evaluate("1 >= 0", VARS)
        stats = evaluator.get_cache_stats()
        assert stats["misses"] == 2
        assert stats["size"] == 0

    def test_clear(self, evaluator):
        evaluator.evaluate(True, VARS)
        evaluator.clear_cache()
        assert evaluator.get_cache_stats()["size"] == 0
