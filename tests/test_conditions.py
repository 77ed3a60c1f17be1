"""Tests for condition evaluation."""

import pytest

from autoflow.core.conditions import ConditionEvaluator, build_condition_data
from autoflow.models.core import ExecutionContext

from helpers import make_contact


DATA = {
    "name": "Test User",
    "plan": "pro",
    "score": 42,
    "tags": ["lead", "vip"],
    "country": "DE",
    "nickname": "",
    "order": {"total": "99.5", "items": 3},
}


@pytest.fixture
def evaluator():
    return ConditionEvaluator()


class TestOperators:
    """Each supported operator has a true and a false case."""

    @pytest.mark.parametrize("field,operator,value,expected", [
        ("plan", "equals", "pro", True),
        ("plan", "equals", "free", False),
        ("score", "equals", "42", False),
        ("plan", "not_equals", "free", True),
        ("plan", "not_equals", "pro", False),
        ("name", "contains", "user", True),
        ("name", "contains", "admin", False),
        ("tags", "contains", "vip", True),
        ("tags", "contains", "churned", False),
        ("name", "not_contains", "admin", True),
        ("name", "not_contains", "Test", False),
        ("score", "gt", 10, True),
        ("score", "gt", 42, False),
        ("score", "lt", 50, True),
        ("score", "lt", 42, False),
        ("score", "gte", 42, True),
        ("score", "gte", 43, False),
        ("score", "lte", 42, True),
        ("score", "lte", 41, False),
        ("order.total", "gt", "99", True),
        ("country", "in", ["DE", "FR"], True),
        ("country", "in", "FR, ES", False),
        ("order.items", "in", "1,2,3", True),
        ("country", "not_in", ["FR", "ES"], True),
        ("country", "not_in", "DE,AT", False),
        ("nickname", "is_empty", None, True),
        ("plan", "is_empty", None, False),
        ("plan", "is_not_empty", None, True),
        ("missing", "is_not_empty", None, False),
    ])
    def test_operator(self, evaluator, field, operator, value, expected):
        config = {"field": field, "operator": operator, "value": value}

        assert evaluator.evaluate(config, DATA) is expected

    @pytest.mark.parametrize("operator", ["greater_than", "GT", "gt"])
    def test_operator_aliases_and_case(self, evaluator, operator):
        assert evaluator.evaluate({"field": "score", "operator": operator, "value": 1}, DATA) is True


class TestSafeDefaults:
    """Malformed conditions evaluate to False instead of raising."""

    @pytest.mark.parametrize("config", [
        {},
        {"operator": "equals", "value": "pro"},
        {"field": "plan", "value": "pro"},
        {"field": "plan", "operator": "matches_regex", "value": ".*"},
        {"field": "plan", "operator": "equals", "conditions": "not-a-list"},
        None,
    ])
    def test_malformed_config_is_false(self, evaluator, config):
        assert evaluator.evaluate(config, DATA) is False

    @pytest.mark.parametrize("operator", ["gt", "lt", "gte", "lte"])
    def test_numeric_comparison_of_non_numbers_is_false(self, evaluator, operator):
        assert evaluator.evaluate({"field": "plan", "operator": operator, "value": 1}, DATA) is False

    def test_missing_field_value_is_false(self, evaluator):
        assert evaluator.evaluate({"field": "unknown", "operator": "contains", "value": "x"}, DATA) is False
        assert evaluator.evaluate({"field": "unknown", "operator": "in", "value": ["x"]}, DATA) is False


class TestConditionChains:
    def test_and_chain(self, evaluator):
        config = {"conditions": [
            {"field": "plan", "operator": "equals", "value": "pro", "logical_operator": "AND"},
            {"field": "score", "operator": "gt", "value": 40},
        ]}

        assert evaluator.evaluate(config, DATA) is True

    def test_and_chain_with_false_clause(self, evaluator):
        config = {"conditions": [
            {"field": "plan", "operator": "equals", "value": "pro"},
            {"field": "score", "operator": "gt", "value": 100},
        ]}

        assert evaluator.evaluate(config, DATA) is False

    def test_or_joins_to_next_clause(self, evaluator):
        config = {"conditions": [
            {"field": "plan", "operator": "equals", "value": "free", "logical_operator": "OR"},
            {"field": "country", "operator": "equals", "value": "DE"},
        ]}

        assert evaluator.evaluate(config, DATA) is True


class TestConditionData:
    def test_contact_event_and_scratch_are_exposed(self):
        context = ExecutionContext(
            workflow_id="wf_1", contact_id="contact_1", organization_id="org_1",
            contact=make_contact(), input_data={"content": "hello"}, data={"check": True},
            trigger_type="contact_replied",
        )

        data = build_condition_data(context)

        assert data["plan"] == "pro"
        assert data["first_name"] == "Test"
        assert data["contact"]["email"] == "test@example.com"
        assert data["event"] == {"content": "hello"}
        assert data["context"] == {"check": True}
        assert data["trigger_type"] == "contact_replied"

    def test_builtin_attributes_win_over_custom_fields(self):
        contact = make_contact(custom_fields={"name": "Shadow", "plan": "pro"})

        assert contact.attributes()["name"] == "Test User"
