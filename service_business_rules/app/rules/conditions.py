"""
Condition evaluator for business rules.

Evaluation is a pure function of the condition groups and the record: no I/O,
no caching, safe to call concurrently.
"""

import math
from datetime import date, datetime, time, timezone
from typing import Any, Mapping, Optional, Sequence

from shared.errors import MatchingError
from .models import Condition, ConditionOperator, normalize_condition_groups

_TEMPORAL_MARKERS = ("date", "timestamp", "time")


def is_temporal_type(data_type: Optional[str]) -> bool:
    """Whether a column data type holds dates or timestamps."""
    if not isinstance(data_type, str) or not data_type:
        return False
    lowered = data_type.lower()
    return any(marker in lowered for marker in _TEMPORAL_MARKERS)


def to_instant(value: Any) -> Optional[datetime]:
    """Normalize a date-like value to an aware UTC datetime, or None if it is not one."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except OverflowError:
        # Offsets can push datetime.min or datetime.max out of range.
        return None


def to_number(value: Any) -> Optional[float]:
    """Parse a finite number; booleans are not numbers here."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class ConditionEvaluator:
    """Evaluates AND-within / OR-across condition groups against a record."""

    def __init__(self, field_types: Optional[Mapping[str, str]] = None):
        self.field_types = dict(field_types or {})

    def evaluate(self, condition_groups: Optional[Sequence[Any]], record: Optional[Mapping[str, Any]]) -> bool:
        """Return True if any group has all of its conditions satisfied.

        Every group is parsed before any is evaluated so a malformed condition
        raises MatchingError regardless of how earlier groups evaluate.
        """
        groups = normalize_condition_groups(condition_groups)
        if not groups:
            return True

        record = record or {}
        for group in groups:
            if all(self.evaluate_condition(condition, record) for condition in group):
                return True
        return False

    def evaluate_condition(self, condition: Condition, record: Mapping[str, Any]) -> bool:
        """Evaluate a single condition."""
        actual = record.get(condition.field)
        expected = condition.value
        operator = condition.operator
        temporal = is_temporal_type(self.field_types.get(condition.field))

        if operator == ConditionOperator.IS_NULL:
            return actual is None
        elif operator == ConditionOperator.IS_NOT_NULL:
            return actual is not None
        elif operator == ConditionOperator.EQUALS:
            return self._equals(actual, expected, temporal)
        elif operator == ConditionOperator.NOT_EQUALS:
            return not self._equals(actual, expected, temporal)
        elif operator == ConditionOperator.GREATER_THAN:
            return self._compare(actual, expected, temporal) > 0
        elif operator == ConditionOperator.LESS_THAN:
            return self._compare(actual, expected, temporal) < 0
        elif operator == ConditionOperator.CONTAINS:
            return self._contains(actual, expected)
        elif operator == ConditionOperator.STARTS_WITH:
            if actual is None or expected is None:
                return False
            return _to_text(actual).startswith(_to_text(expected))
        elif operator == ConditionOperator.ENDS_WITH:
            if actual is None or expected is None:
                return False
            return _to_text(actual).endswith(_to_text(expected))

        raise MatchingError(f"Unsupported condition operator: {operator}")

    def _equals(self, actual: Any, expected: Any, temporal: bool) -> bool:
        if actual is None or expected is None:
            return actual is None and expected is None

        if temporal:
            left, right = to_instant(actual), to_instant(expected)
            if left is not None and right is not None:
                return left == right

        if isinstance(actual, bool) or isinstance(expected, bool):
            return _to_text(actual).lower() == _to_text(expected).lower()

        numeric_side = any(
            isinstance(v, (int, float)) and not isinstance(v, bool) for v in (actual, expected)
        )
        if numeric_side:
            left, right = to_number(actual), to_number(expected)
            if left is not None and right is not None:
                return left == right

        if isinstance(actual, (str, int, float)) and isinstance(expected, (str, int, float)):
            return _to_text(actual) == _to_text(expected)
        return actual == expected

    def _compare(self, actual: Any, expected: Any, temporal: bool) -> int:
        """Three-way compare; 0 whenever either side is null."""
        if actual is None or expected is None:
            return 0

        if temporal:
            left, right = to_instant(actual), to_instant(expected)
            if left is not None and right is not None:
                return (left > right) - (left < right)

        left_num, right_num = to_number(actual), to_number(expected)
        if left_num is not None and right_num is not None:
            return (left_num > right_num) - (left_num < right_num)

        left_text, right_text = _to_text(actual), _to_text(expected)
        return (left_text > right_text) - (left_text < right_text)

    def _contains(self, actual: Any, expected: Any) -> bool:
        if actual is None or expected is None:
            return False
        if isinstance(actual, str):
            return _to_text(expected) in actual
        if isinstance(actual, Mapping):
            text = _to_text(expected)
            return any(_to_text(key) == text for key in actual)
        if isinstance(actual, (list, tuple, set, frozenset)):
            text = _to_text(expected)
            return any(
                item == expected or _to_text(item) == text
                for item in actual if item is not None
            )
        return _to_text(expected) in _to_text(actual)


def evaluate(condition_groups: Optional[Sequence[Any]],
             record: Optional[Mapping[str, Any]],
             field_types: Optional[Mapping[str, str]] = None) -> bool:
    """Evaluate condition groups against a record."""
    return ConditionEvaluator(field_types).evaluate(condition_groups, record)
