"""Time helpers shared by the evaluators and the runner.

All timestamps handled by the engine are timezone-aware UTC datetimes.
Naive datetimes coming from callers are assumed to already be UTC.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
from typing import Any

_UNIT_SECONDS = {
    "minutes": 60,
    "hours": 60 * 60,
    "days": 24 * 60 * 60,
    "weeks": 7 * 24 * 60 * 60,
}

# Longest wait or timeframe a definition may declare
MAX_DURATION = timedelta(days=3650)


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def duration_seconds(amount: float, unit: str) -> float:
    """Length of an ``amount`` of ``unit`` (minutes/hours/days/weeks) in seconds."""
    try:
        return amount * _UNIT_SECONDS[unit]
    except KeyError:
        raise ValueError(f"Unknown duration unit: {unit}") from None


def duration_delta(amount: float, unit: str) -> timedelta:
    """Convert an ``amount`` of ``unit`` to a timedelta."""
    return timedelta(seconds=duration_seconds(amount, unit))


def coerce_timestamp(value: Any) -> datetime | None:
    """Best-effort conversion of a fact value to an aware UTC datetime.

    Accepts datetimes, dates, ISO-8601 strings (``Z`` suffix allowed) and
    epoch seconds. Returns None for anything else.
    """
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=UTC)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def next_utc_midnight(now: datetime) -> datetime:
    """Start of the UTC day after ``now``."""
    today = as_utc(now).date()
    return datetime.combine(today + timedelta(days=1), time.min, tzinfo=UTC)
