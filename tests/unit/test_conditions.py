"""Tests for condition evaluation."""

import pytest
from pydantic import ValidationError

from opsflow.conditions import Condition, ConditionOperator, apply_operator, evaluate

CONTEXT = {
    "trigger": {"ticket": {"type_id": "3", "subject": "Router offline", "tags": ["network"]}},
    "step1": {"count": 5, "items": []},
}


@pytest.mark.parametrize(
    "field, operator, value, expected",
    [
        ("trigger.ticket.type_id", "equals", 3, True),
        ("trigger.ticket.type_id", "not_equals", "4", True),
        ("trigger.ticket.subject", "contains", "offline", True),
        ("trigger.ticket.tags", "contains", "network", True),
        ("trigger.ticket.subject", "not_contains", "billing", True),
        ("trigger.ticket.type_id", "in", "1, 2, 3", True),
        ("trigger.ticket.type_id", "not_in", ["1", "2"], True),
        ("step1.count", "greater_than", 4, True),
        ("step1.count", "less_than_or_equal", 5, True),
        ("step1.count", "greater_than", "many", False),
        ("trigger.ticket.subject", "starts_with", "Router", True),
        ("trigger.ticket.subject", "ends_with", "line", True),
        ("step1.items", "is_empty", None, True),
        ("step1.missing", "exists", None, False),
        ("trigger.ticket", "is_not_empty", None, True),
    ],
)
def test_leaf_operators(field, operator, value, expected):
    condition = Condition(field=field, operator=operator, value=value)
    assert evaluate(condition, CONTEXT) is expected


def test_compound_conditions():
    condition = Condition.model_validate(
        {
            "all": [
                {"field": "step1.count", "operator": "greater_than", "value": 1},
                {
                    "any": [
                        {"field": "trigger.ticket.type_id", "value": "9"},
                        {"field": "trigger.ticket.tags", "operator": "contains", "value": "network"},
                    ]
                },
            ]
        }
    )
    assert evaluate(condition, CONTEXT) is True
    assert condition.roots() == {"step1", "trigger"}


def test_condition_requires_exactly_one_form():
    with pytest.raises(ValidationError):
        Condition()
    with pytest.raises(ValidationError):
        Condition.model_validate({"field": "a.b", "all": []})


def test_equals_compares_text_forms():
    assert apply_operator(True, ConditionOperator.EQUALS, "true")
    assert not apply_operator(None, ConditionOperator.EQUALS, "x")
