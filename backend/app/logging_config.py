"""JSON log lines for the email API.

``configure_logging()`` (called by ``create_app`` and the CLI) routes every
``logging.getLogger(__name__)`` record to stdout as one JSON object, merging
``extra=`` fields into the top level.

``RequestIdMiddleware`` binds an ``X-Request-ID`` to the request context and
writes one ``app.access`` line per request with the caller's IP and
``x-subdomain``.

Secrets: a field named after a credential header is replaced with
``[redacted]``, and API keys are only ever logged through ``key_prefix``.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

_request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Attributes every LogRecord has; anything else arrived through ``extra=``.
_RESERVED = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "taskName"}

_REDACTED_FIELDS = frozenset({"x_api_key", "api_key", "raw_key", "raw_api_key", "x_admin_token", "smtp_password"})

_QUIET_LOGGERS = ("aiosqlite", "aiosmtplib", "asyncpg", "sqlalchemy.engine", "sqlalchemy.pool", "uvicorn.access")


def get_request_id() -> str:
    """Request ID of the request being handled, ``""`` outside a request."""
    return _request_id_var.get()


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: "[redacted]" if key in _REDACTED_FIELDS else value
        for key, value in record.__dict__.items()
        if key not in _RESERVED and not key.startswith("_")
    }


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = get_request_id()
        if request_id:
            entry["request_id"] = request_id
        entry.update(_extra_fields(record))
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO") -> None:
    """Replace the root handlers with a single JSON handler on stdout."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JsonFormatter())
    root.handlers = [handler]

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Echo or mint ``X-Request-ID`` and log one access line per request."""

    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID") -> None:
        super().__init__(app)
        self._header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(self._header_name) or uuid.uuid4().hex
        token = _request_id_var.set(request_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[self._header_name] = request_id
            logging.getLogger("app.access").info(
                "%s %s %s",
                request.method,
                request.url.path,
                response.status_code,
                extra={
                    "status_code": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                    "client_ip": request.client.host if request.client else None,
                    "subdomain": request.headers.get("x-subdomain"),
                },
            )
            return response
        finally:
            _request_id_var.reset(token)
