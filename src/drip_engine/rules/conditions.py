"""Condition evaluation against a recipient fact snapshot.

Evaluation is total: a missing fact or a value that cannot be coerced never
raises, it resolves to a defined boolean (fail-closed). Only a malformed
condition definition raises ValidationError.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Set
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from drip_engine.utils.timeutil import as_utc, coerce_timestamp, utcnow

from .models import Condition, parse_condition

logger = logging.getLogger(__name__)

_TRUE_STRINGS = frozenset({"true", "yes", "1"})
_FALSE_STRINGS = frozenset({"false", "no", "0"})


def _is_missing(facts: Mapping[str, Any], field: str) -> bool:
    return facts.get(field) is None


def _to_number(value: Any) -> float | None:
    """Coerce a value to a float, or None if it is not numeric."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, (datetime, date)):
        number = coerce_timestamp(value).timestamp()
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return None if math.isnan(number) else number


def _to_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return None


def _values_equal(actual: Any, expected: Any) -> bool:
    """Equality that tolerates the string values produced by form inputs."""
    if actual == expected and type(actual) is type(expected):
        return True
    if isinstance(actual, bool) or isinstance(expected, bool):
        left, right = _to_bool(actual), _to_bool(expected)
        return left is not None and left == right
    left_num, right_num = _to_number(actual), _to_number(expected)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    return actual == expected


def _contains(actual: Any, expected: Any) -> bool | None:
    """Containment test; None when the fact is not a string or collection."""
    if isinstance(actual, str):
        return expected is not None and str(expected) in actual
    if isinstance(actual, Set):
        try:
            return expected in actual
        except TypeError:
            # Unhashable values cannot be set members
            return False
    if isinstance(actual, (list, tuple)):
        return expected in actual
    return None


def _compare_numbers(actual: Any, expected: Any, operator: str) -> bool:
    left, right = _to_number(actual), _to_number(expected)
    if left is None or right is None:
        return False
    return left > right if operator == "greater_than" else left < right


def _evaluate_time(condition: Condition, actual: Any, now: datetime) -> bool:
    """Compare a timestamp fact against ``now - timeframe`` (or an absolute value)."""
    occurred = coerce_timestamp(actual)
    if occurred is None:
        return False

    if condition.timeframe is not None:
        try:
            boundary = as_utc(now) - condition.timeframe.to_timedelta()
        except OverflowError:
            return False
    else:
        boundary = coerce_timestamp(condition.value)
        if boundary is None:
            return False

    op = condition.operator
    if op == "greater_than":
        return occurred > boundary
    if op == "less_than":
        return occurred < boundary
    if op == "equals":
        return occurred.date() == boundary.date()
    if op == "not_equals":
        return occurred.date() != boundary.date()
    # contains/not_contains have no meaning for timestamps
    return False


def evaluate_condition(
    condition: Condition | Mapping[str, Any],
    facts: Mapping[str, Any],
    now: datetime | None = None,
) -> bool:
    """Evaluate one condition against a fact snapshot.

    Args:
        condition: Condition model or raw mapping
        facts: Recipient fact snapshot (never mutated)
        now: Evaluation time for time-based conditions (defaults to UTC now)

    Returns:
        Whether the condition holds

    Raises:
        ValidationError: If a raw mapping is not a valid condition
    """
    condition = parse_condition(condition)
    op = condition.operator

    if _is_missing(facts, condition.field):
        return op == "not_exists"

    actual = facts[condition.field]

    if op == "exists":
        return True
    if op == "not_exists":
        return False

    if condition.type == "time":
        return _evaluate_time(condition, actual, now or utcnow())

    if op == "equals":
        return _values_equal(actual, condition.value)
    if op == "not_equals":
        return not _values_equal(actual, condition.value)
    if op in ("greater_than", "less_than"):
        return _compare_numbers(actual, condition.value, op)

    contained = _contains(actual, condition.value)
    if contained is None:
        logger.debug(
            "Fact %s is not a string or collection; %s evaluates false",
            condition.field,
            op,
        )
        return False
    return contained if op == "contains" else not contained
