import logging
import sys
import os
from typing import Dict, Any, Optional
import json
from datetime import datetime, timezone
import contextlib
import contextvars
from pathlib import Path

from calsync.core.config import settings

# Per-request / per-sync context merged into every log record
request_context = contextvars.ContextVar("request_context", default={})

NOISY_LOGGERS = (
    "uvicorn.access",
    "sqlalchemy.engine",
    "googleapiclient.discovery_cache",
    "httpx",
    "httpcore",
)


class JsonFormatter(logging.Formatter):
    """
    Formatter that renders each record as a single JSON object.

    Fields passed through ``extra=`` and the active ``log_context`` are merged
    into the output so sync passes can be followed by ``account_id``.
    """

    RESERVED = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
        "message",
        "asctime",
    }

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(self._prepare_log_dict(record), default=str)

    def _prepare_log_dict(self, record: logging.LogRecord) -> Dict[str, Any]:
        record_dict = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            record_dict["exception"] = self.formatException(record.exc_info)

        # Attributes passed via extra=
        for key, value in record.__dict__.items():
            if key not in self.RESERVED and key not in record_dict:
                record_dict[key] = value

        context = request_context.get()
        for key, value in context.items():
            record_dict.setdefault(key, value)

        return record_dict


class ContextFilter(logging.Filter):
    """Copies the current log context onto each record."""

    def filter(self, record):
        context = request_context.get()
        for key, value in context.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def setup_logging(level: Optional[str] = None):
    """
    Set up logging for the application.

    Args:
        level: Optional log level override (default to settings)
    """
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    context_filter = ContextFilter()

    console_handler = logging.StreamHandler(sys.stdout)

    if settings.ENVIRONMENT == "production":
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "[%(asctime)s] [%(levelname)s] %(name)s (%(filename)s:%(lineno)d) - %(message)s"
        )

    console_handler.setFormatter(formatter)
    console_handler.setLevel(log_level)
    console_handler.addFilter(context_filter)
    root_logger.addHandler(console_handler)

    if settings.LOG_FILE:
        try:
            log_path = Path(settings.LOG_FILE)
            os.makedirs(log_path.parent, exist_ok=True)

            file_handler = logging.FileHandler(settings.LOG_FILE)
            file_handler.setFormatter(formatter)
            file_handler.setLevel(log_level)
            file_handler.addFilter(context_filter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            root_logger.error(f"Error setting up file logging: {e}")

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logging.getLogger("calsync")


@contextlib.contextmanager
def log_context(**context_data):
    """
    Context manager for adding context to logs.

    Usage:
        with log_context(account_id=12, action="import"):
            logger.info("Pulling events")

    Args:
        **context_data: Key-value pairs to add to log context
    """
    current_context = request_context.get().copy()
    current_context.update(context_data)
    token = request_context.set(current_context)

    try:
        yield
    finally:
        request_context.reset(token)
