from __future__ import annotations

import contextvars
import json
import logging
import os
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "request_id", default=None
)
_user_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "user_id", default=None
)
_task_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "celery_task_id", default=None
)
_receipt_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "receipt_id", default=None
)

# Webhook keys, bot tokens and email bodies must never reach the log stream verbatim.
_REDACTED_FIELDS = frozenset({"key", "token", "api_key", "authorization", "secret"})
MAX_FIELD_CHARS = 500

_configured = False


def _scrub(key: str, value: Any) -> Any:
    if key.lower() in _REDACTED_FIELDS:
        return "[redacted]"
    if isinstance(value, str) and len(value) > MAX_FIELD_CHARS:
        return value[:MAX_FIELD_CHARS] + "...[truncated]"
    return value


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=UTC).isoformat().replace("+00:00", "Z")
        payload: dict[str, Any] = {
            "ts": ts,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        event = getattr(record, "event", None)
        if event:
            payload["event"] = event
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            payload.update(fields)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=True)


def configure_logging() -> None:
    global _configured  # noqa: PLW0603
    if _configured:
        return
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").upper())
    if not isinstance(level, int):
        level = logging.INFO
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger("receipt_nest")
    root.setLevel(level)
    root.handlers = [handler]
    root.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


def set_user_context(user_id: str | None) -> None:
    _user_id_var.set(user_id)


def set_task_context(task_id: str | None) -> contextvars.Token:
    return _task_id_var.set(task_id)


def reset_task_context(token: contextvars.Token) -> None:
    _task_id_var.reset(token)


@contextmanager
def receipt_context(*, receipt_id: str, user_id: str | None = None) -> Iterator[None]:
    """Tag every event logged inside the block with the receipt (and owner) being processed."""
    receipt_token = _receipt_id_var.set(receipt_id)
    user_token = _user_id_var.set(user_id) if user_id else None
    try:
        yield
    finally:
        _receipt_id_var.reset(receipt_token)
        if user_token is not None:
            _user_id_var.reset(user_token)


def _context_fields() -> dict[str, str]:
    ctx: dict[str, str] = {}
    for key, var in (
        ("request_id", _request_id_var),
        ("user_id", _user_id_var),
        ("celery_task_id", _task_id_var),
        ("receipt_id", _receipt_id_var),
    ):
        value = var.get()
        if value:
            ctx[key] = value
    return ctx


def _merge_fields(fields: dict[str, Any]) -> dict[str, Any]:
    payload: dict[str, Any] = _context_fields()
    for key, value in fields.items():
        if value is not None:
            payload[key] = _scrub(key, value)
    return payload


def log_event(
    logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any
) -> None:
    logger.log(level, event, extra={"event": event, "fields": _merge_fields(fields)})


def log_exception(logger: logging.Logger, event: str, **fields: Any) -> None:
    logger.exception(event, extra={"event": event, "fields": _merge_fields(fields)})


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assigns a request id and emits one `http.request.finish` event per request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        token_request = _request_id_var.set(request_id)
        token_user = _user_id_var.set(None)
        logger = get_logger(__name__)
        start = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            log_exception(
                logger,
                "http.request.error",
                method=request.method,
                path=request.url.path,
                duration_ms=monotonic_ms(start),
            )
            raise
        else:
            response.headers["x-request-id"] = request_id
            log_event(
                logger,
                "http.request.finish",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=monotonic_ms(start),
            )
            return response
        finally:
            _request_id_var.reset(token_request)
            _user_id_var.reset(token_user)


def monotonic_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
