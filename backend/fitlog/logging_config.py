"""
Logging configuration.

Text logs in development, JSON lines in production so the hosting platform
can index them.
"""
import hashlib
import json
import logging
import sys
from datetime import datetime
from typing import Any, Dict

from fitlog.config import settings

SENSITIVE_KEYS = (
    "access_token",
    "refresh_token",
    "continuation_token",
    "authorization",
)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


def setup_logging() -> logging.Logger:
    """Configure the root logger from settings."""
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    if settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == "production":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Noisy libraries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return root_logger


def sanitize_for_log(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Strip credentials and identifying data from a dict before logging it.

    The user id is replaced by a short hash so log lines from one athlete can
    still be correlated.
    """
    sanitized = dict(data)

    for key in SENSITIVE_KEYS:
        sanitized.pop(key, None)

    if sanitized.get("user_id") is not None:
        digest = hashlib.sha256(str(sanitized.pop("user_id")).encode()).hexdigest()
        sanitized["user_hash"] = digest[:8]

    notes = sanitized.get("notes")
    if isinstance(notes, str) and len(notes) > 100:
        sanitized["notes"] = f"{notes[:100]}..."

    return sanitized
