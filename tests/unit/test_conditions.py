import pytest

from flowledger.conditions import (
    Call,
    Literal,
    PathRef,
    evaluate_condition,
    is_truthy,
    parse_condition,
)
from flowledger.errors import ConditionSyntaxError

CONTEXT = {
    "nodes": {
        "check": {"result": True, "text": "All tests passed", "tags": ["urgent", "bug"]},
        "count": {"value": 0},
    },
    "current": {"status": "ok"},
    "run": {"input": {"env": "prod"}},
}


def test_parse_builds_expression_tree():
    expr = parse_condition("not(eq({{run.input.env}}, 'dev'))")
    assert expr == Call("not", (Call("eq", (PathRef("run.input.env"), Literal("dev"))),))


def test_parse_atoms():
    assert parse_condition("true") == Literal(True)
    assert parse_condition("null") == Literal(None)
    assert parse_condition("42") == Literal(42)
    assert parse_condition("-1.5") == Literal(-1.5)
    assert parse_condition("nodes.check.result") == PathRef("nodes.check.result")


@pytest.mark.parametrize(
    "expression, expected",
    [
        ("eq(nodes.check.result, true)", True),
        ("eq({{nodes.check.result}}, 'true')", True),
        ("eq(current.status, \"ok\")", True),
        ("not(eq(current.status, 'ok'))", False),
        ("contains(nodes.check.text, 'passed')", True),
        ("contains(nodes.check.tags, 'bug')", True),
        ("contains(nodes.check.tags, 'bu')", False),
        ("nodes.check.result", True),
        ("nodes.count.value", False),
        ("nodes.missing.value", False),
        ("not(nodes.missing.value)", True),
        ("eq(run.input.env, 'prod')", True),
    ],
)
def test_evaluate(expression, expected):
    assert evaluate_condition(expression, CONTEXT) is expected


def test_empty_expression_is_false():
    assert evaluate_condition("", CONTEXT) is False
    assert evaluate_condition("   ", CONTEXT) is False


def test_quoted_strings_support_escapes():
    context = {"v": "it's"}
    assert evaluate_condition("eq(v, 'it\\'s')", context) is True


@pytest.mark.parametrize("value", ["", "false", "0", "{}", None, False, 0, {}])
def test_falsy_values(value):
    assert is_truthy(value) is False


@pytest.mark.parametrize("value", ["yes", "true", 1, [0], {"a": 1}, True])
def test_truthy_values(value):
    assert is_truthy(value) is True


@pytest.mark.parametrize(
    "expression",
    [
        "eq(a)",
        "not(a, b)",
        "bogus(a)",
        "eq(a, b",
        "eq(a, 'b)",
        "{{ a.b",
        "eq(a, b) c",
        "a & b",
    ],
)
def test_syntax_errors(expression):
    with pytest.raises(ConditionSyntaxError):
        parse_condition(expression)
