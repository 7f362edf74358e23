"""Condition evaluation for transition guards.

Conditions are pure predicates over the metadata bag a caller supplies with
a transition request. Unknown operators fail closed.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .schemas import Condition, ConditionOperator


def _strict_equals(left: Any, right: Any) -> bool:
    # bool is an int subclass; keep True distinct from 1
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    return left == right


def evaluate(condition: Condition, metadata: Mapping[str, Any] | None) -> bool:
    """Evaluate a single condition against request metadata.

    Args:
        condition: The guard to check.
        metadata: Metadata supplied by the caller (``None`` means empty).

    Returns:
        True if the condition holds.
    """
    data = metadata or {}
    value = data.get(condition.field)
    operator = condition.operator

    if operator == ConditionOperator.EQUALS:
        return condition.field in data and _strict_equals(value, condition.value)
    if operator == ConditionOperator.NOT_EQUALS:
        return not (condition.field in data and _strict_equals(value, condition.value))
    if operator == ConditionOperator.CONTAINS:
        if not isinstance(value, (list, tuple)):
            return False
        return any(_strict_equals(item, condition.value) for item in value)
    if operator == ConditionOperator.EXISTS:
        return value is not None
    if operator == ConditionOperator.NOT_EXISTS:
        return value is None
    return False


def failing(
    conditions: tuple[Condition, ...] | list[Condition],
    metadata: Mapping[str, Any] | None,
) -> list[Condition]:
    """Return every condition that does not hold, in declaration order."""
    return [c for c in conditions if not evaluate(c, metadata)]


def describe(condition: Condition) -> str:
    """Render a condition for error messages."""
    operator = getattr(condition.operator, "value", condition.operator)
    return f"{condition.field} {operator} {condition.value!r}"


def missing_values(
    required: tuple[str, ...] | list[str],
    metadata: Mapping[str, Any] | None,
) -> list[str]:
    """Return required fields that are absent, ``None`` or empty strings."""
    data = metadata or {}
    return [f for f in required if data.get(f) is None or data.get(f) == ""]
