"""Structured logging configuration with request IDs and JSON formatting."""

import contextvars
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

_request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "request_id", default=""
)

_RESERVED_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
    )
)


def get_request_id() -> str:
    """Get current request ID from context."""
    return _request_id_var.get()


def set_request_id(request_id: str) -> None:
    """Set request ID for current context."""
    _request_id_var.set(request_id)


class JSONFormatter(logging.Formatter):
    """Format log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }

        request_id = get_request_id()
        if request_id:
            log_entry["request_id"] = request_id

        if record.exc_info:
            log_entry["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            log_entry["stack_info"] = record.stack_info

        # Extra fields passed via logger.x(..., extra={...})
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_entry[key] = sanitize_for_logging(value)

        return json.dumps(log_entry, default=str)


class RequestIDFormatter(logging.Formatter):
    """Text formatter that prefixes the current request ID, when there is one."""

    def format(self, record: logging.LogRecord) -> str:
        request_id = get_request_id()
        message = super().format(record)
        if request_id:
            return f"[{request_id}] {message}"
        return message


def _single_line(s: str) -> str:
    """Collapse control characters so multi-line ssh output stays on one log line."""
    s = s.replace("\r\n", " | ").replace("\n", " | ").replace("\r", " | ")
    return "".join(c for c in s if c == "\t" or ord(c) >= 32)


def sanitize_for_logging(data: Any, max_length: int = 200) -> Any:
    """
    Make data safe to log: strings are collapsed to one line and truncated.
    Containers are sanitized recursively; other values pass through.
    """
    if isinstance(data, str):
        data = _single_line(data)
        if len(data) > max_length:
            return data[: max_length - 3] + "..."
        return data
    elif isinstance(data, dict):
        return {k: sanitize_for_logging(v, max_length) for k, v in data.items()}
    elif isinstance(data, list):
        return [sanitize_for_logging(item, max_length) for item in data]
    elif isinstance(data, tuple):
        return tuple(sanitize_for_logging(item, max_length) for item in data)
    else:
        return data


def setup_logging(level: int = logging.INFO, log_format: str = "text") -> None:
    """
    Configure root logger with structured logging.

    Args:
        level: Logging level (e.g., logging.INFO)
        log_format: "text" or "json"
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = RequestIDFormatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
