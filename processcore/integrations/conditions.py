"""Trigger condition evaluation."""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from ..contracts import TriggerCondition
from .context import MISSING, lookup


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _contains(container: Any, needle: Any) -> bool:
    if isinstance(container, str):
        return str(needle) in container
    if isinstance(container, (list, tuple, set, dict)):
        return needle in container
    return False


def evaluate_condition(condition: TriggerCondition, context: Mapping[str, Any]) -> bool:
    value = lookup(context, condition.field)
    if condition.operator == "exists":
        present = value is not MISSING and value is not None
        return present if condition.value in (None, True) else not present
    if value is MISSING:
        return False
    if condition.operator == "equals":
        return value == condition.value or str(value) == str(condition.value)
    if condition.operator == "not_equals":
        return value != condition.value and str(value) != str(condition.value)
    if condition.operator == "contains":
        return _contains(value, condition.value)
    if condition.operator == "not_contains":
        return not _contains(value, condition.value)

    left, right = _as_number(value), _as_number(condition.value)
    if left is None or right is None:
        return False
    if condition.operator == "gt":
        return left > right
    return left < right


def conditions_hold(
    conditions: Iterable[TriggerCondition], context: Mapping[str, Any]
) -> bool:
    """All conditions must hold; an empty list always does."""
    return all(evaluate_condition(c, context) for c in conditions)
