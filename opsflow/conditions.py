"""Boolean condition evaluation for ``condition`` steps."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .templating import get_path, path_root

logger = logging.getLogger(__name__)


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IN = "in"
    NOT_IN = "not_in"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    EXISTS = "exists"


class Condition(BaseModel):
    """A leaf comparison or an ``all``/``any`` group of conditions.

    Leaf conditions compare the value found at ``field`` (a dotted path into
    the run context such as ``trigger.ticket.type_id``) against ``value``.
    """

    model_config = ConfigDict(populate_by_name=True)

    field: Optional[str] = None
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Any = None
    all_of: Optional[List["Condition"]] = Field(default=None, alias="all")
    any_of: Optional[List["Condition"]] = Field(default=None, alias="any")

    @model_validator(mode="after")
    def _one_form(self) -> "Condition":
        forms = [self.field is not None, self.all_of is not None, self.any_of is not None]
        if sum(forms) != 1:
            raise ValueError("condition needs exactly one of 'field', 'all' or 'any'")
        return self

    def roots(self) -> Set[str]:
        """Context roots this condition reads from."""
        if self.field is not None:
            return {path_root(self.field)}
        found: Set[str] = set()
        for child in self.all_of or self.any_of or []:
            found |= child.roots()
        return found


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _members(value: Any) -> List[str]:
    if isinstance(value, (list, tuple, set)):
        return [_text(item) for item in value]
    return [part.strip() for part in _text(value).split(",")]


def _compare(left: Any, right: Any, op: ConditionOperator) -> bool:
    a, b = _number(left), _number(right)
    if a is None or b is None:
        return False
    if op is ConditionOperator.GREATER_THAN:
        return a > b
    if op is ConditionOperator.LESS_THAN:
        return a < b
    if op is ConditionOperator.GREATER_THAN_OR_EQUAL:
        return a >= b
    return a <= b


def apply_operator(field_value: Any, op: ConditionOperator, expected: Any) -> bool:
    if op is ConditionOperator.EQUALS:
        return field_value == expected or _text(field_value) == _text(expected)
    if op is ConditionOperator.NOT_EQUALS:
        return not apply_operator(field_value, ConditionOperator.EQUALS, expected)
    if op is ConditionOperator.CONTAINS:
        if isinstance(field_value, (list, tuple)):
            return _text(expected) in [_text(item) for item in field_value]
        return _text(expected).lower() in _text(field_value).lower()
    if op is ConditionOperator.NOT_CONTAINS:
        return not apply_operator(field_value, ConditionOperator.CONTAINS, expected)
    if op is ConditionOperator.IN:
        return _text(field_value) in _members(expected)
    if op is ConditionOperator.NOT_IN:
        return _text(field_value) not in _members(expected)
    if op in (
        ConditionOperator.GREATER_THAN,
        ConditionOperator.LESS_THAN,
        ConditionOperator.GREATER_THAN_OR_EQUAL,
        ConditionOperator.LESS_THAN_OR_EQUAL,
    ):
        return _compare(field_value, expected, op)
    if op is ConditionOperator.STARTS_WITH:
        return _text(field_value).startswith(_text(expected))
    if op is ConditionOperator.ENDS_WITH:
        return _text(field_value).endswith(_text(expected))
    if op is ConditionOperator.IS_EMPTY:
        return field_value in (None, [], {}) or _text(field_value).strip() == ""
    if op is ConditionOperator.IS_NOT_EMPTY:
        return not apply_operator(field_value, ConditionOperator.IS_EMPTY, expected)
    if op is ConditionOperator.EXISTS:
        return field_value is not None
    logger.warning(f"Unknown condition operator {op}, evaluating to false")
    return False


def evaluate(condition: Condition, context: dict) -> bool:
    """Evaluate ``condition`` against the run context."""
    if condition.all_of is not None:
        return all(evaluate(child, context) for child in condition.all_of)
    if condition.any_of is not None:
        return any(evaluate(child, context) for child in condition.any_of)
    field_value = get_path(context, condition.field or "")
    result = apply_operator(field_value, condition.operator, condition.value)
    logger.debug(
        f"Condition {condition.field} {condition.operator.value} {condition.value!r} "
        f"-> {result} (field value {field_value!r})"
    )
    return result
