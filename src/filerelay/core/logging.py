"""Logging configuration for filerelay."""

import contextvars
import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict

# Request-scoped identifiers added to every record emitted while serving a request
request_id_context: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)
object_key_context: contextvars.ContextVar[str | None] = contextvars.ContextVar("object_key", default=None)

_STANDARD_ATTRS = frozenset(
    {
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "message", "pathname", "process", "processName",
        "relativeCreated", "thread", "threadName", "exc_info",
        "exc_text", "stack_info", "getMessage", "taskName",
    }
)


class JsonLogFormatter(logging.Formatter):
    """Single-line JSON formatter for log aggregation.

    Every ``extra={...}`` field is copied into the JSON object. Exceptions
    and tracebacks are included as strings.
    """

    SEVERITY_MAP = {
        logging.DEBUG: "DEBUG",
        logging.INFO: "INFO",
        logging.WARNING: "WARNING",
        logging.ERROR: "ERROR",
        logging.CRITICAL: "CRITICAL",
    }

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "severity": self.SEVERITY_MAP.get(record.levelno, "DEFAULT"),
            "message": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_context.get()
        if request_id:
            log_entry["request_id"] = request_id
        object_key = object_key_context.get()
        if object_key:
            log_entry["object_key"] = object_key

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS:
                log_entry[key] = value

        if record.exc_info:
            log_entry["exception"] = "".join(traceback.format_exception(*record.exc_info))
            log_entry["exception_type"] = record.exc_info[0].__name__ if record.exc_info[0] else "Unknown"
            log_entry["exception_message"] = str(record.exc_info[1]) if record.exc_info[1] else ""

        return json.dumps(log_entry, default=str, ensure_ascii=False)


def setup_logging() -> None:
    """Configure logging for the application.

    Local development gets a plain text format; every other environment
    gets single-line JSON on stdout. The uvicorn loggers share the handler.
    """
    from filerelay.core.config import settings

    log_level = logging.getLevelName(settings.LOG_LEVEL.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    if settings.ENV == "local":
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    else:
        formatter = JsonLogFormatter()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for logger_name in ["uvicorn", "uvicorn.access", "uvicorn.error"]:
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.setLevel(log_level)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.addHandler(handler)
        uvicorn_logger.propagate = False
