"""Structured JSON logging for Skyhawk."""

import json
import logging
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlparse, urlunparse

# Dynamically derive standard LogRecord attributes at module import time
# This ensures future Python additions (like taskName) are automatically handled
_STANDARD_LOGRECORD_KEYS: frozenset[str] = frozenset(
    logging.LogRecord(
        name="", level=0, pathname="", lineno=0, msg="", args=(), exc_info=None
    ).__dict__.keys()
)

_DELIVERY_FIELDS = ("message_id", "message_type", "queue", "worker", "retry_count", "outcome")


class JSONFormatter(logging.Formatter):
    """JSON formatter with UTC ISO8601 timestamps."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for field in _DELIVERY_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        # Add any extra fields passed via extra={}
        for key, value in vars(record).items():
            if key not in _STANDARD_LOGRECORD_KEYS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data["exc_info"] = self.formatException(record.exc_info)

        try:
            return json.dumps(log_data, default=str)
        except (TypeError, ValueError):
            return str(log_data)


def _setup_json_handler(logger: logging.Logger, level: int) -> None:
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False


def configure_logging(level: int | str = logging.INFO) -> logging.Logger:
    """Configure the root ``skyhawk`` logger with JSON formatting.

    Child loggers (``skyhawk.consumer``, ``skyhawk.rabbitmq``...) propagate to it.

    Args:
        level: Logging level as an int or a level name such as ``"DEBUG"``.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger = logging.getLogger("skyhawk")
    _setup_json_handler(logger, level)
    return logger


def get_logger(name: str = "skyhawk") -> logging.Logger:
    """Return a logger under the ``skyhawk`` namespace."""
    if name != "skyhawk" and not name.startswith("skyhawk."):
        name = f"skyhawk.{name}"
    return logging.getLogger(name)


def sanitize_url(url: str) -> str:
    """Mask the password in a broker URL for logging."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = f"{parsed.username}:****@{parsed.hostname}"
            if parsed.port:
                netloc += f":{parsed.port}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "<url>"
