"""Condition expressions evaluated by CONDITION nodes against instance form data."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

ConditionOperator = Literal["eq", "ne", "gt", "gte", "lt", "lte", "in", "contains"]

_ORDERING_OPERATORS: frozenset[str] = frozenset({"gt", "gte", "lt", "lte"})


class ConditionValueError(ValueError):
    """Form data cannot be compared the way the expression asks."""


class ConditionExpression(BaseModel):
    """A single comparison or an and/or group of nested expressions."""

    type: Literal["single", "group"] = "single"

    field: str | None = None
    operator: ConditionOperator | None = None
    value: Any = None

    logic: Literal["and", "or"] = "and"
    conditions: list[ConditionExpression] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_shape(self) -> ConditionExpression:
        if self.type == "single":
            if not (self.field or "").strip() or self.operator is None:
                raise ValueError("single condition requires 'field' and 'operator'")
            if self.operator == "in" and not isinstance(self.value, list):
                raise ValueError("'in' condition requires a list value")
            if self.operator in _ORDERING_OPERATORS:
                _as_number(self.value, what="comparison value")
        return self

    def describe(self) -> str:
        if self.type == "group":
            inner = f" {self.logic} ".join(c.describe() for c in self.conditions)
            return f"({inner})"
        return f"{self.field} {self.operator} {self.value!r}"


_MISSING = object()


def _field_value(data: Mapping[str, Any], path: str) -> Any:
    value: Any = data
    for part in path.split("."):
        if not isinstance(value, Mapping) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _as_number(value: Any, *, what: str) -> float:
    if isinstance(value, bool):
        raise ConditionValueError(f"{what} is a boolean, not a number")
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            raise ConditionValueError(f"{what} {value!r} is not numeric") from None
    raise ConditionValueError(f"{what} {value!r} is not numeric")


def evaluate_condition(condition: ConditionExpression, form_data: Mapping[str, Any]) -> bool:
    """Evaluate `condition` against `form_data`.

    Raises:
        ConditionValueError: an ordering comparison hit a missing or non-numeric field.
    """

    if condition.type == "group":
        if not condition.conditions:
            return True
        if condition.logic == "or":
            return any(evaluate_condition(c, form_data) for c in condition.conditions)
        return all(evaluate_condition(c, form_data) for c in condition.conditions)

    assert condition.field is not None
    actual = _field_value(form_data, condition.field)
    expected = condition.value
    op = condition.operator

    logger.debug(
        "Evaluating condition",
        extra={"condition": condition.describe(), "actual": None if actual is _MISSING else actual},
    )

    if op in _ORDERING_OPERATORS:
        if actual is _MISSING:
            raise ConditionValueError(f"field {condition.field!r} is missing from form data")
        left = _as_number(actual, what=f"field {condition.field!r}")
        right = _as_number(expected, what="comparison value")
        if op == "gt":
            return left > right
        if op == "gte":
            return left >= right
        if op == "lt":
            return left < right
        return left <= right

    if actual is _MISSING:
        actual = None

    if op == "eq":
        return bool(actual == expected)
    if op == "ne":
        return bool(actual != expected)
    if op == "in":
        return isinstance(expected, list) and actual in expected
    if op == "contains":
        if isinstance(actual, str) and isinstance(expected, str):
            return expected in actual
        return False

    raise ConditionValueError(f"unknown operator {op!r}")
