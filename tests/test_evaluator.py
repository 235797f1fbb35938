"""Tests for decision condition evaluation."""

from flowrunner.core.evaluator import UNRESOLVED_VARIABLES_MESSAGE, evaluate_condition
from flowrunner.models.execution import NodeOutput


def test_literal_condition():
    result = evaluate_condition("1+1===2", {})
    assert result.ok is True
    assert result.result is True
    assert result.error is None


def test_unresolved_variable_is_not_ok():
    result = evaluate_condition("{{X.y}}", {})
    assert result.ok is False
    assert result.error == UNRESOLVED_VARIABLES_MESSAGE
    assert result.resolved == "{{X.y}}"


def test_resolved_against_context():
    context = {"Fetch": NodeOutput(response={"count": 0}, status=200, node_kind="action")}

    assert evaluate_condition("{{Fetch.status}} === 200", context).result is True

    result = evaluate_condition("{{Fetch.response.count}} > 0", context)
    assert result.ok is True
    assert result.result is False
    assert result.resolved == "0 > 0"


def test_string_values_need_quotes():
    context = {"User": NodeOutput(response={"role": "admin"}, node_kind="action")}

    assert evaluate_condition("'{{User.response.role}}' === 'admin'", context).result is True
    unquoted = evaluate_condition("{{User.response.role}} === 'admin'", context)
    assert unquoted.ok is False
    assert unquoted.error == "admin is not defined"


def test_truthiness_of_non_boolean_result():
    assert evaluate_condition("'non-empty'", {}).result is True
    assert evaluate_condition("[]", {}).result is True
    assert evaluate_condition("0", {}).result is False


def test_syntax_error_is_reported_not_raised():
    result = evaluate_condition("1 +* 2", {})
    assert result.ok is False
    assert result.error


def test_deeply_nested_input_is_reported():
    result = evaluate_condition("(" * 5000 + "1" + ")" * 5000, {})
    assert result.ok is False
