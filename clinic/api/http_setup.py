"""Request tracing, payload limits and error envelopes for the clinic API.

Every HTTP response carries ``X-Request-ID``. Calls to the gateway management
API (``/@connections/{id}``) are additionally logged with the target
connection id so pushes can be followed across publisher and gateway logs.
"""

from __future__ import annotations

import time
import uuid
from typing import Any, Mapping

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from clinic.api.contracts import ApiErrorResponse
from clinic.api.errors import ApiErrorCode, to_error_payload
from clinic.core.config import AppConfig
from clinic.core.logging import set_correlation_id

MANAGEMENT_PREFIX = "/@connections/"
# Responses on these paths carry credentials and must never be cached.
CREDENTIAL_PREFIXES = ("/api/auth/",)


def _error_response(
    status_code: int,
    error_code: str,
    message: str,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ApiErrorResponse(error_code=error_code, message=message).model_dump(),
        headers=dict(headers) if headers else None,
    )


def _request_fields(request: Request, status_code: int) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "path": request.url.path,
        "method": request.method,
        "status_code": status_code,
    }
    if request.url.path.startswith(MANAGEMENT_PREFIX):
        fields["connection_id"] = request.url.path[len(MANAGEMENT_PREFIX):]
    return fields


def _declared_length(request: Request) -> int:
    try:
        return int(request.headers.get("content-length") or 0)
    except ValueError:
        return 0


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    detail = str(first.get("msg") or "invalid value")
    return f"Invalid request: {location}: {detail}" if location else f"Invalid request: {detail}"


def register_http_middleware(app: FastAPI, *, config: AppConfig, logger: Any) -> None:
    """Attach payload limit and request tracing middleware."""
    max_bytes = config.security.request_max_bytes

    @app.middleware("http")
    async def payload_limit_middleware(request: Request, call_next):
        if _declared_length(request) > max_bytes:
            logger.warning("request_rejected_too_large", extra=_request_fields(request, 413))
            return _error_response(
                413,
                ApiErrorCode.REQUEST_TOO_LARGE,
                f"Request body exceeds {max_bytes} bytes",
            )
        return await call_next(request)

    @app.middleware("http")
    async def request_tracing_middleware(request: Request, call_next):
        request_id = (
            request.headers.get("x-request-id")
            or request.headers.get("x-correlation-id")
            or uuid.uuid4().hex
        )
        set_correlation_id(request_id)
        started = time.monotonic()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Content-Type-Options"] = "nosniff"
        if request.url.path.startswith(CREDENTIAL_PREFIXES):
            response.headers["Cache-Control"] = "no-store"
        logger.info(
            "request_completed",
            extra={
                **_request_fields(request, response.status_code),
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return response


def register_exception_handlers(app: FastAPI, *, logger: Any) -> None:
    """Render every failure as ``{error_code, message}``."""

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
        payload = to_error_payload(exc.detail, exc.status_code)
        logger.warning("http_exception", extra=_request_fields(request, exc.status_code))
        return _error_response(
            exc.status_code,
            payload["error_code"],
            payload["message"],
            getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_exception(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logger.warning("validation_exception", extra=_request_fields(request, 422))
        return _error_response(422, ApiErrorCode.VALIDATION_ERROR, _validation_message(exc))

    @app.exception_handler(Exception)
    async def handle_unexpected_exception(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unexpected_exception", extra=_request_fields(request, 500))
        return _error_response(500, ApiErrorCode.INTERNAL_SERVER_ERROR, "Internal server error")
