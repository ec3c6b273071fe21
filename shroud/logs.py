"""
Logging
Handler setup for the ``shroud`` logger hierarchy.

Library modules only call ``logging.getLogger(__name__)``. Applications
call :func:`configure_logging` once. Keys are shortened before they reach
a log line; secrets never do.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "shroud"

# Attributes every LogRecord carries; anything else came in through ``extra``.
_STANDARD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def short(key: str | None, length: int = 16) -> str:
    """Truncate a public key or event id for log output."""
    if not key:
        return "-"
    return key[:length]


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra = {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}
        if extra:
            log_data["extra"] = extra

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class StandardFormatter(logging.Formatter):
    """Human-readable format for development."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )


def configure_logging(level: str | int = "INFO", json_format: bool = False) -> logging.Logger:
    """
    Install a single stream handler on the ``shroud`` logger.

    Calling it again replaces the previous handler, so it is safe to call
    from both an application and its tests.

    Args:
        level: Logging level name or number.
        json_format: Emit JSON lines instead of the human format.

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if json_format else StandardFormatter())
    logger.addHandler(handler)
    logger.setLevel(level if isinstance(level, int) else level.upper())
    logger.propagate = False
    return logger
