"""Evaluate conditions against a contact context snapshot."""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional

from .models import Condition


def get_field_value(context: Mapping[str, Any], field: str) -> Any:
    """Resolve a dotted field path such as ``custom_fields.property_type``."""
    value: Any = context
    for part in field.split("."):
        if value is None:
            return None
        if isinstance(value, Mapping):
            value = value.get(part)
        else:
            value = getattr(value, part, None)
    return value


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _loose_equals(left: Any, right: Any) -> bool:
    if left == right:
        return True
    if left is None or right is None:
        return False
    left_num, right_num = _as_number(left), _as_number(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    return _as_text(left) == _as_text(right)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _contains(value: Any, needle: Any) -> bool:
    if isinstance(value, (list, tuple, set)):
        return any(_loose_equals(item, needle) for item in value)
    return _as_text(needle).lower() in _as_text(value).lower()


def evaluate_condition(condition: Condition, context: Mapping[str, Any]) -> bool:
    """Return whether ``condition`` holds for ``context``."""
    value = get_field_value(context, condition.field)
    expected = condition.value
    op = condition.operator

    if op == "equals":
        return _loose_equals(value, expected)
    if op == "not_equals":
        return not _loose_equals(value, expected)
    if op == "contains":
        return _contains(value, expected)
    if op == "not_contains":
        return not _contains(value, expected)
    if op == "starts_with":
        return _as_text(value).lower().startswith(_as_text(expected).lower())
    if op == "ends_with":
        return _as_text(value).lower().endswith(_as_text(expected).lower())
    if op in ("greater_than", "less_than"):
        left, right = _as_number(value), _as_number(expected)
        if left is None or right is None:
            return False
        return left > right if op == "greater_than" else left < right
    if op == "is_empty":
        return _is_empty(value)
    if op == "is_not_empty":
        return not _is_empty(value)
    if op == "in":
        return isinstance(expected, list) and any(
            _loose_equals(value, item) for item in expected
        )
    if op == "not_in":
        if not isinstance(expected, list):
            return True
        return not any(_loose_equals(value, item) for item in expected)
    return False


def evaluate(
    conditions: Iterable[Condition], context: Mapping[str, Any], logic: str = "and"
) -> bool:
    """Combine several conditions with ``and``/``or`` logic.

    An empty list of conditions is always satisfied.
    """
    results = [evaluate_condition(c, context) for c in conditions]
    if not results:
        return True
    return all(results) if logic == "and" else any(results)
