"""Tests for skills.expressions."""

from __future__ import annotations

import pytest

from skills.expressions import (
    build_scope,
    condition_paths,
    evaluate,
    evaluate_condition,
    referenced_paths,
    render,
    render_value,
)
from skills.schema import ExpressionSyntaxError, TemplateResolutionError


@pytest.fixture
def scope():
    return build_scope(
        params={"current_count": 2, "target_count": 5, "service": "checkout-api", "tags": ["a", "b"]},
        steps={"check": {"result": {"replicas": [{"name": "r1"}], "healthy": True}, "status": "success"}},
        builtins={"user": "oncall", "session_id": "s-1", "now": "2026-01-01T00:00:00+00:00", "timestamp": 0},
    )


class TestEvaluate:
    def test_numeric_comparison(self, scope) -> None:
        assert evaluate("current_count < target_count", scope) is True
        assert evaluate("current_count >= target_count", scope) is False

    def test_strict_equality_aliases(self, scope) -> None:
        assert evaluate("service === 'checkout-api'", scope) is True
        assert evaluate("service !== 'checkout-api'", scope) is False

    def test_qualified_params(self, scope) -> None:
        assert evaluate("params.target_count == 5", scope) is True

    def test_boolean_connectives(self, scope) -> None:
        assert evaluate("current_count < 3 and not (target_count > 10)", scope) is True
        assert evaluate("current_count > 3 || target_count == 5", scope) is True
        assert evaluate("!steps.check.result.healthy", scope) is False

    def test_membership(self, scope) -> None:
        assert evaluate("'a' in tags", scope) is True
        assert evaluate("'z' not in tags", scope) is True
        assert evaluate("service in ['checkout-api', 'cart']", scope) is True

    def test_string_predicates(self, scope) -> None:
        assert evaluate("service startswith 'checkout'", scope) is True
        assert evaluate("service endswith '-api'", scope) is True
        assert evaluate("service contains 'out'", scope) is True

    def test_nested_paths_and_index(self, scope) -> None:
        assert evaluate("steps.check.result.replicas.0.name", scope) == "r1"
        assert evaluate("steps.check.result.replicas[0].name == 'r1'", scope) is True

    def test_literals(self, scope) -> None:
        assert evaluate("-1.5", scope) == -1.5
        assert evaluate("null", scope) is None
        assert evaluate("True", scope) is True

    def test_unknown_name_raises(self, scope) -> None:
        with pytest.raises(TemplateResolutionError, match="unknown name 'missing'"):
            evaluate("missing > 1", scope)

    def test_missing_key_raises(self, scope) -> None:
        with pytest.raises(TemplateResolutionError):
            evaluate("steps.other.result", scope)

    def test_incomparable_types_raise(self, scope) -> None:
        with pytest.raises(TemplateResolutionError):
            evaluate("service < 3", scope)

    @pytest.mark.parametrize("source", ["", "a ==", "(a", "a b", "__import__('os')", "1 +"])
    def test_syntax_errors(self, scope, source: str) -> None:
        with pytest.raises(TemplateResolutionError):
            evaluate(source, scope)

    def test_syntax_error_type(self, scope) -> None:
        with pytest.raises(ExpressionSyntaxError):
            evaluate("a ==", scope)


class TestRender:
    def test_whole_template_keeps_native_type(self, scope) -> None:
        assert render("{{ target_count }}", scope) == 5
        assert render("{{ steps.check.result }}", scope)["healthy"] is True

    def test_interpolation(self, scope) -> None:
        assert render("Scale {{ service }} to {{ target_count }}", scope) == "Scale checkout-api to 5"

    def test_interpolates_structures_as_json(self, scope) -> None:
        assert render("tags={{ tags }}", scope) == 'tags=["a", "b"]'

    def test_render_value_recurses(self, scope) -> None:
        value = {"resource": "{{ service }}", "opts": ["{{ current_count }}", 7], "plain": "x"}
        assert render_value(value, scope) == {"resource": "checkout-api", "opts": [2, 7], "plain": "x"}

    def test_unresolved_reference_raises(self, scope) -> None:
        with pytest.raises(TemplateResolutionError):
            render("{{ nope }}", scope)

    def test_builtins_are_visible(self, scope) -> None:
        assert render("by {{ user }} in {{ session_id }}", scope) == "by oncall in s-1"


class TestConditions:
    def test_wrapped_condition(self, scope) -> None:
        assert evaluate_condition("{{ current_count < target_count }}", scope) is True

    def test_bare_condition(self, scope) -> None:
        assert evaluate_condition("current_count > target_count", scope) is False

    def test_mixed_condition(self, scope) -> None:
        assert evaluate_condition("{{ current_count }} < {{ target_count }}", scope) is True


class TestStaticAnalysis:
    def test_referenced_paths(self) -> None:
        paths = referenced_paths("{{ steps.check.result.count }} and {{ target_count }}")
        assert paths == [["steps", "check", "result", "count"], ["target_count"]]

    def test_plain_string_has_no_paths(self) -> None:
        assert referenced_paths("no templates here") == []

    def test_condition_paths(self) -> None:
        assert condition_paths("a < b") == [["a"], ["b"]]

    def test_dynamic_index_keeps_static_prefix(self) -> None:
        assert condition_paths("items[idx] == 1") == [["idx"], ["items"]]
