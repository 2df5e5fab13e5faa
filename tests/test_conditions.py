"""Tests for the condition evaluator and template rendering."""
import pytest
from models.schemas import ConditionOperator
from utils.conditions import evaluate_condition, get_nested_value, to_number, to_text
from utils.templating import render, render_value


class TestGetNestedValue:
    def test_flat_key(self):
        assert get_nested_value({"name": "Alice"}, "name") == "Alice"

    def test_nested_key(self):
        data = {"order": {"status": "shipped", "items": 3}}
        assert get_nested_value(data, "order.status") == "shipped"
        assert get_nested_value(data, "order.items") == 3

    def test_dotted_key_wins_over_path(self):
        assert get_nested_value({"a.b": 1, "a": {"b": 2}}, "a.b") == 1

    def test_missing_key(self):
        assert get_nested_value({"a": 1}, "b") is None

    def test_missing_nested_key(self):
        assert get_nested_value({"a": {"b": 1}}, "a.c") is None

    def test_path_through_scalar(self):
        assert get_nested_value({"a": 5}, "a.b") is None


class TestEvaluateCondition:
    def test_equals_compares_text(self):
        assert evaluate_condition("answer", "equals", "yes", {"answer": "yes"})
        assert not evaluate_condition("answer", "equals", "yes", {"answer": "Yes"})
        assert evaluate_condition("count", "equals", "3", {"count": 3})

    def test_not_equals(self):
        assert evaluate_condition("status", ConditionOperator.NOT_EQUALS, "closed", {"status": "open"})
        assert not evaluate_condition("status", ConditionOperator.NOT_EQUALS, "closed", {"status": "closed"})

    def test_contains(self):
        assert evaluate_condition("name", "contains", "Kumar", {"name": "Rajesh Kumar"})
        assert not evaluate_condition("name", "contains", "Kumar", {"name": "Priya Sharma"})

    def test_greater_than_parses_strings(self):
        assert evaluate_condition("age", "greater_than", "18", {"age": "21"})
        assert not evaluate_condition("age", "greater_than", "18", {"age": "15"})
        assert not evaluate_condition("age", "greater_than", "18", {"age": "18"})

    def test_less_than(self):
        assert evaluate_condition("score", "less_than", 50, {"score": 30.5})
        assert not evaluate_condition("score", "less_than", 50, {"score": 60})

    def test_unparseable_number_is_false(self):
        assert not evaluate_condition("age", "greater_than", "18", {"age": "old"})
        assert not evaluate_condition("age", "less_than", "18", {"age": "old"})
        assert not evaluate_condition("age", "greater_than", "abc", {"age": 40})

    def test_missing_variable_reads_empty(self):
        assert evaluate_condition("nickname", "equals", "", {})
        assert not evaluate_condition("nickname", "greater_than", "0", {})
        assert evaluate_condition("nickname", "not_equals", "bob", {})

    def test_nested_variable(self):
        assert evaluate_condition("order.total", "greater_than", 500, {"order": {"total": 750}})

    def test_unknown_operator_is_false(self):
        assert not evaluate_condition("x", "matches", "1", {"x": "1"})


class TestCoercion:
    @pytest.mark.parametrize("value,expected", [
        (None, ""),
        (True, "true"),
        (2.0, "2"),
        (2.5, "2.5"),
        ({"a": 1}, '{"a":1}'),
        ("text", "text"),
    ])
    def test_to_text(self, value, expected):
        assert to_text(value) == expected

    def test_to_number(self):
        assert to_number(" 42 ") == 42.0
        assert to_number("") is None
        assert to_number("nan") is None
        assert to_number(True) is None


class TestRender:
    def test_replaces_placeholders(self):
        assert render("Hi {{name}}!", {"name": "Ann"}) == "Hi Ann!"

    def test_allows_spaces_and_paths(self):
        assert render("Mail {{ contact.email }}", {"contact": {"email": "a@b.co"}}) == "Mail a@b.co"

    def test_unresolved_left_verbatim(self):
        assert render("Hi {{name}}", {}) == "Hi {{name}}"

    def test_empty_template(self):
        assert render("", {"a": 1}) == ""

    def test_render_value_walks_structures(self):
        body = {"user": "{{id}}", "tags": ["{{tag}}", 3], "flag": True}
        assert render_value(body, {"id": "u1", "tag": "vip"}) == {
            "user": "u1", "tags": ["vip", 3], "flag": True,
        }
