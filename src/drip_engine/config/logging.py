"""Logging configuration with JSON format support."""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from drip_engine.utils.validation import sanitize_log_message


class SanitizingFilter(logging.Filter):
    """Filter that redacts credentials from log messages.

    Webhook URLs are configured by campaign authors and often carry basic-auth
    user info or tokens in the query string.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            record.msg = sanitize_log_message(str(record.msg))
        if record.args and isinstance(record.args, tuple):
            record.args = tuple(
                sanitize_log_message(arg) if isinstance(arg, str) else arg for arg in record.args
            )
        return True


class JSONFormatter(logging.Formatter):
    """Format log records as JSON for structured logging."""

    # Engine context passed through ``extra=``
    _OPTIONAL_FIELDS = (
        "recipient_id",
        "campaign_id",
        "step_id",
        "rule_id",
        "action_type",
    )

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in self._OPTIONAL_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Standard text formatter with consistent format."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


def configure_logging(
    level: str = "INFO", format: str = "text", sanitize_logs: bool = True
) -> None:
    """Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format ('text' or 'json')
        sanitize_logs: If True, redact credentials embedded in URLs
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)

    if format.lower() == "json":
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(TextFormatter())

    if sanitize_logs:
        console_handler.addFilter(SanitizingFilter())

    root_logger.addHandler(console_handler)
