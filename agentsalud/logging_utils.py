from __future__ import annotations

import contextvars
import json
import logging
import sys
from typing import Any
from uuid import UUID

_request_id_ctx_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "request_id", default=None
)
_organization_id_ctx_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "organization_id", default=None
)
_user_id_ctx_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "user_id", default=None
)

_CONTEXT_FIELDS = ("request_id", "organization_id", "user_id")

_STANDARD_ATTRIBUTES = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "message",
    }
)


class RequestContextFilter(logging.Filter):
    """Inject request scoped context variables into log records."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - simple
        # Explicit ``extra`` values win over the ambient context.
        if getattr(record, "request_id", None) is None:
            record.request_id = _request_id_ctx_var.get()
        if getattr(record, "organization_id", None) is None:
            record.organization_id = _organization_id_ctx_var.get()
        if getattr(record, "user_id", None) is None:
            record.user_id = _user_id_ctx_var.get()
        return True


class JSONLogFormatter(logging.Formatter):
    """Serialize log records as JSON with context metadata."""

    def __init__(self) -> None:  # pragma: no cover - trivial
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in _CONTEXT_FIELDS:
            log_entry[field] = record.__dict__.get(field)

        for key, value in record.__dict__.items():
            if key in _CONTEXT_FIELDS:
                continue
            if key.startswith("_") or key in _STANDARD_ATTRIBUTES:
                continue
            log_entry[key] = value

        if record.exc_info:
            log_entry["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


_configured = False


def configure_logging(level: int = logging.INFO) -> None:
    """Configure the root logger for structured JSON output."""

    global _configured
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONLogFormatter())
    handler.addFilter(RequestContextFilter())

    root_logger = logging.getLogger()
    root_logger.handlers = []
    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logger = logging.getLogger(logger_name)
        logger.handlers = []
        logger.propagate = True

    _configured = True


def _as_text(value: UUID | str | None) -> str | None:
    if value is None:
        return None
    return str(value)


def set_organization_context(organization_id: UUID | str | None) -> None:
    """Bind the organization identifier to the current logging context."""

    _organization_id_ctx_var.set(_as_text(organization_id))


def set_user_context(user_id: UUID | str | None) -> None:
    """Bind the authenticated user identifier to the current logging context."""

    _user_id_ctx_var.set(_as_text(user_id))


def get_current_organization() -> str:
    """Return the organization id bound to the current context."""

    organization = _organization_id_ctx_var.get()
    return organization or "anonymous"


__all__ = [
    "configure_logging",
    "get_current_organization",
    "set_organization_context",
    "set_user_context",
    "_organization_id_ctx_var",
    "_request_id_ctx_var",
    "_user_id_ctx_var",
]
