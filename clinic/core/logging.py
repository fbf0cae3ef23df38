"""Structured JSON logging with correlation-id context and secret redaction."""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

CORRELATION_ID_CTX: ContextVar[str] = ContextVar("correlation_id", default="")

EXTRA_KEYS = (
    "connection_id",
    "user_id",
    "event_type",
    "route_key",
    "error_name",
    "error_message",
    "path",
    "method",
    "status_code",
    "count",
    "duration_ms",
    "details",
)

REDACT_KEYS = {
    "password",
    "password_hash",
    "passwordhash",
    "access_token",
    "accesstoken",
    "refresh_token",
    "refreshtoken",
    "token",
    "authorization",
    "cookie",
    "cookies",
    "set-cookie",
}

_MAX_DEPTH = 4


def redact(value: Any, depth: int = 0) -> Any:
    """Return a copy of ``value`` with credential-bearing keys masked."""
    if depth > _MAX_DEPTH:
        return "[TRUNCATED]"
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for key, item in value.items():
            if str(key).lower() in REDACT_KEYS:
                out[key] = "[REDACTED]"
            else:
                out[key] = redact(item, depth + 1)
        return out
    if isinstance(value, (list, tuple)):
        return [redact(item, depth + 1) for item in value]
    return value


class JsonLogFormatter(logging.Formatter):
    """Serialize log records into compact JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        """Return JSON string for the given log record."""
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": CORRELATION_ID_CTX.get(),
        }

        for key in EXTRA_KEYS:
            value = getattr(record, key, None)
            if value not in (None, ""):
                payload[key] = redact(value) if key == "details" else value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure root logger to emit structured JSON logs."""
    normalized_level = getattr(logging, level.upper(), logging.INFO)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(normalized_level)
    root_logger.addHandler(handler)


def set_correlation_id(correlation_id: str) -> None:
    """Store correlation id in request-local context."""
    CORRELATION_ID_CTX.set(correlation_id)


def error_fields(exc: BaseException) -> dict[str, str]:
    """Return ``extra`` fields describing an exception for structured logs."""
    return {"error_name": type(exc).__name__, "error_message": str(exc)}
