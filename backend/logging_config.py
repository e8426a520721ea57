"""
Bank Sync Core - Structured JSON Logging

Provides structured logging for production environments.
Outputs JSON format for log aggregation (Datadog, CloudWatch, etc.)

Every record carries the ids of the request and the sync run it was emitted
under. Both live in context variables, so concurrent runs on separate asyncio
tasks do not see each other's ids.
"""

import logging
import json
import sys
import os
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional
import traceback

# LogRecord attributes that are not user-supplied `extra` fields
_RESERVED_ATTRS = frozenset([
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName",
])

_CONTEXT_ATTRS = ("request_id", "connection_id", "sync_run_id")

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_connection_id: ContextVar[Optional[str]] = ContextVar("connection_id", default=None)
_sync_run_id: ContextVar[Optional[str]] = ContextVar("sync_run_id", default=None)


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record: base fields, source location, exception,
    the active request/sync context and any `extra=` fields.
    """

    def __init__(self, service_name: str = "bank-sync"):
        super().__init__()
        self.service_name = service_name
        self.environment = os.environ.get("ENVIRONMENT", "development")
        self.hostname = os.environ.get("HOSTNAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
            "hostname": self.hostname,
            "location": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            log_data["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
                "traceback": traceback.format_exception(*record.exc_info) if exc_type else None,
            }

        context = {key: getattr(record, key, None) for key in _CONTEXT_ATTRS}
        context = {key: value for key, value in context.items() if value is not None}
        if context:
            log_data["context"] = context

        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and key not in _CONTEXT_ATTRS
        }
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)


class SyncContextFilter(logging.Filter):
    """
    Stamps records with the current request id and sync run ids.
    Values passed explicitly through `extra=` win.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for attr, var in (
            ("request_id", _request_id),
            ("connection_id", _connection_id),
            ("sync_run_id", _sync_run_id),
        ):
            if getattr(record, attr, None) is None:
                setattr(record, attr, var.get())
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = "bank-sync"
) -> logging.Logger:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON format (True for production)
        service_name: Service name for log aggregation

    Returns:
        Configured root logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)

    if json_format:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [run=%(sync_run_id)s] %(message)s"
        ))

    handler.addFilter(SyncContextFilter())
    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the specified name."""
    return logging.getLogger(name)


def set_request_context(request_id: Optional[str] = None):
    """Set request context for logging."""
    _request_id.set(request_id)


def clear_request_context():
    _request_id.set(None)


def get_sync_context() -> Dict[str, Optional[str]]:
    return {"connection_id": _connection_id.get(), "sync_run_id": _sync_run_id.get()}


@contextmanager
def sync_context(connection_id: str, sync_run_id: Optional[str] = None) -> Iterator[None]:
    """Tag every record logged inside the block with the connection and run."""
    connection_token = _connection_id.set(connection_id)
    run_token = _sync_run_id.set(sync_run_id)
    try:
        yield
    finally:
        _sync_run_id.reset(run_token)
        _connection_id.reset(connection_token)
