"""Validation and log sanitisation helpers.

Pydantic reports every problem in a definition at once; the engine surfaces
the first one as a :class:`drip_engine.errors.ValidationError` that names the
offending field, which is what rule and campaign editors display.
"""

from __future__ import annotations

import logging
import re
from typing import Any, TypeVar

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from drip_engine.errors import ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_UNION_TAG_ERRORS = frozenset({"union_tag_invalid", "union_tag_not_found"})

# Credentials that show up in webhook URLs configured from the UI
_URL_USERINFO_RE = re.compile(r"(://)[^/\s:@]+:[^/\s@]+@")
_URL_SECRET_PARAM_RE = re.compile(
    r"([?&](?:token|key|api_key|apikey|secret|signature|sig|password)=)[^&\s#]+",
    re.IGNORECASE,
)


def error_field(exc: PydanticValidationError) -> str | None:
    """Return the name of the field behind the first pydantic error."""
    errors = exc.errors()
    if not errors:
        return None
    err = errors[0]
    ctx = err.get("ctx") or {}
    if "field" in ctx:
        return str(ctx["field"])
    if err.get("type") in _UNION_TAG_ERRORS:
        return "type"
    for part in reversed(err.get("loc", ())):
        if isinstance(part, str):
            return part
    return None


def to_validation_error(exc: PydanticValidationError, kind: str) -> ValidationError:
    """Convert a pydantic error into the engine's ValidationError."""
    err = exc.errors()[0]
    field = error_field(exc)
    err_type = err.get("type")

    if err_type == "missing":
        message = f"{kind} is missing required field '{field}'"
    elif err_type == "string_too_short":
        message = f"{kind} field '{field}' must not be empty"
    elif err_type in _UNION_TAG_ERRORS:
        message = f"{kind} has an unknown or missing type: {err.get('msg')}"
    else:
        message = f"{kind} is invalid: {err.get('msg')}"

    return ValidationError(
        message,
        field=field,
        details={"errors": len(exc.errors()), "loc": [str(p) for p in err.get("loc", ())]},
    )


def validate_with(adapter: TypeAdapter[T], data: Any, kind: str) -> T:
    """Validate ``data`` through a TypeAdapter, raising ValidationError.

    Args:
        adapter: Pydantic TypeAdapter for the target type
        data: Raw mapping (or already-built model)
        kind: Human-readable label used in the error message

    Returns:
        The validated object

    Raises:
        ValidationError: If the data does not satisfy the type
    """
    try:
        return adapter.validate_python(data)
    except PydanticValidationError as e:
        raise to_validation_error(e, kind) from e


def sanitize_log_message(message: str) -> str:
    """Redact credentials embedded in URLs from a log message.

    Args:
        message: Message to sanitize

    Returns:
        Message with URL user-info and secret query parameters redacted
    """
    result = _URL_USERINFO_RE.sub(r"\1[REDACTED]@", message)
    return _URL_SECRET_PARAM_RE.sub(r"\1[REDACTED]", result)
