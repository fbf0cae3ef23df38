"""HTTP middleware and dependencies that enforce auth on protected API routes."""

from __future__ import annotations

from typing import Callable

from fastapi import Request
from fastapi.responses import JSONResponse

from clinic.api.contracts import ApiErrorResponse
from clinic.api.errors import ApiError, ApiErrorCode
from clinic.auth.models import AccessClaims
from clinic.auth.service import AuthService
from clinic.core.security import ExpiredTokenError, TokenError

PUBLIC_PATHS = {
    "/api/health",
    "/api/auth/login",
    "/api/auth/refresh",
    "/api/auth/logout",
}


def extract_bearer_token(authorization: str | None) -> str:
    """Extract bearer token from authorization header value."""
    parts = (authorization or "").strip().split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return ""
    return parts[1].strip()


def _unauthorized(error_code: ApiErrorCode, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content=ApiErrorResponse(error_code=error_code, message=message).model_dump(),
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_auth_middleware(service: AuthService) -> Callable:
    """Create middleware function that validates access tokens when enabled."""

    async def auth_middleware(request: Request, call_next: Callable):
        """Validate auth for protected API paths and attach claims to request state."""
        if not service.enabled:
            return await call_next(request)

        path = request.url.path
        if not path.startswith("/api/") or path in PUBLIC_PATHS:
            return await call_next(request)

        token = extract_bearer_token(request.headers.get("authorization"))
        if not token:
            return _unauthorized(ApiErrorCode.AUTH_MISSING_TOKEN, "Missing bearer token")

        try:
            claims = service.verify_access_token(token)
        except ExpiredTokenError:
            return _unauthorized(ApiErrorCode.AUTH_TOKEN_EXPIRED, "Access token expired")
        except TokenError:
            return _unauthorized(ApiErrorCode.AUTH_TOKEN_INVALID, "Invalid access token")

        request.state.user = claims
        return await call_next(request)

    return auth_middleware


def create_role_guard(service: AuthService, *allowed: str) -> Callable[[Request], AccessClaims | None]:
    """Build a dependency that rejects users whose role is not in ``allowed``."""

    def require_role(request: Request) -> AccessClaims | None:
        if not service.enabled:
            return None
        claims = getattr(request.state, "user", None)
        if claims is None:
            raise ApiError(
                status_code=401,
                error_code=ApiErrorCode.UNAUTHORIZED,
                message="Unauthorized",
            )
        if claims.role not in allowed:
            raise ApiError(
                status_code=403,
                error_code=ApiErrorCode.FORBIDDEN,
                message="Forbidden",
            )
        return claims

    return require_role
