"""Shared helpers."""

from .timeutil import coerce_timestamp, duration_delta, utcnow
from .validation import sanitize_log_message, to_validation_error, validate_with

__all__ = [
    "coerce_timestamp",
    "duration_delta",
    "utcnow",
    "sanitize_log_message",
    "to_validation_error",
    "validate_with",
]
