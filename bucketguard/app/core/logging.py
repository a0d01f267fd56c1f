"""Logging setup for bucketguard.

Plain stdlib logging configured through dictConfig. Three output formats are
selectable with LOG_FORMAT: ``text``, ``structured`` (text with the bucket
context appended) and ``json`` (one object per line).
"""

import json
import logging
import logging.config
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from bucketguard.app.core.config import settings


# Fields the limiter and middleware attach through get_log_context()
CONTEXT_FIELDS = ("client_id", "bucket_key", "operation", "path", "method")

# Attributes every LogRecord carries; anything else is caller-supplied extra
_RECORD_ATTRIBUTES = frozenset((
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "message",
    "asctime", "taskName",
))


class JSONFormatter(logging.Formatter):
    """Render each record as a single JSON line.

    Bucket context fields sit at the top level when set; any other
    ``extra=`` values are grouped under ``"extra"``.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).astimezone().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        extra = {}
        for key, value in record.__dict__.items():
            if key in CONTEXT_FIELDS:
                if value is not None:
                    log_data[key] = value
            elif key not in _RECORD_ATTRIBUTES:
                extra[key] = value
        if extra:
            log_data["extra"] = extra

        if record.exc_info and record.exc_info != (None, None, None):
            log_data["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Give every record the bucket context attributes (None when unset).

    The ``structured`` format string interpolates them, so they must exist.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for field in CONTEXT_FIELDS:
            if not hasattr(record, field):
                setattr(record, field, None)
        return True


def get_logging_config() -> Dict[str, Any]:
    """Build the dictConfig mapping for the configured level and format."""
    log_format = settings.log_format.lower()
    log_level = settings.log_level.upper()

    formatters = {
        "standard": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        },
        "structured": {
            "format": (
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
                " - client_id=%(client_id)s - bucket_key=%(bucket_key)s"
                " - operation=%(operation)s"
            )
        },
    }
    if log_format == "json":
        formatters["json"] = {"()": "bucketguard.app.core.logging.JSONFormatter"}
        formatter = "json"
    elif log_format == "structured":
        formatter = "structured"
    else:
        formatter = "standard"

    def stream_handler(level: str, stream) -> Dict[str, Any]:
        return {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": formatter,
            "stream": stream,
            "filters": ["context"],
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {
            "context": {"()": "bucketguard.app.core.logging.ContextFilter"},
        },
        "handlers": {
            "console": stream_handler(log_level, sys.stdout),
            "error_console": stream_handler("ERROR", sys.stderr),
        },
        "loggers": {
            "bucketguard": {
                "level": log_level,
                "handlers": ["console", "error_console"],
                "propagate": False,
            },
            "uvicorn": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
        },
        "root": {"level": log_level, "handlers": ["console"]},
    }


def setup_logging() -> None:
    """Configure logging for the application."""
    logging.config.dictConfig(get_logging_config())
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str = "bucketguard") -> logging.Logger:
    return logging.getLogger(name)


def get_log_context(
    client_id: Optional[str] = None,
    bucket_key: Optional[str] = None,
    operation: Optional[str] = None,
    **extra
) -> Dict[str, Any]:
    """Create a dict for the ``extra=`` argument of a logging call.

    None values are dropped so they do not shadow the filter defaults.

    Example:
        >>> logger.debug(
        ...     "Token denied",
        ...     extra=get_log_context(client_id="user-1", operation="consume_token")
        ... )
    """
    context = {
        "client_id": client_id,
        "bucket_key": bucket_key,
        "operation": operation,
        **extra,
    }
    return {k: v for k, v in context.items() if v is not None}
