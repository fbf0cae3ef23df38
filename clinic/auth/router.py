"""Authentication API router."""

from __future__ import annotations

from fastapi import APIRouter, Header, Request, Response

from clinic.api.contracts import (
    ApiErrorResponse,
    AuthMeResponse,
    LoginResponse,
    LogoutResponse,
    TokenBundleResponse,
)
from clinic.api.errors import ApiError, ApiErrorCode
from clinic.auth.middleware import extract_bearer_token
from clinic.auth.models import IssuedSession, LoginRequest, LogoutRequest, RefreshRequest
from clinic.auth.rate_limiter import LoginRateLimiter
from clinic.auth.service import AuthService
from clinic.core.security import TokenError

REFRESH_COOKIE_NAME = "refreshToken"


def _to_response(session: IssuedSession) -> LoginResponse:
    return LoginResponse(
        user_id=session.user_id,
        role=session.role,
        tokens=TokenBundleResponse(
            access_token=session.access_token,
            expires_in_sec=session.access_expires_in,
            refresh_token=session.refresh_token,
            refresh_expires_in_sec=session.refresh_expires_in,
        ),
    )


def create_auth_router(
    service: AuthService, rate_limiter: LoginRateLimiter
) -> APIRouter:
    """Build authentication router with login/refresh/logout/me endpoints."""
    router = APIRouter(tags=["auth"])
    secure_cookie = service.config.cookie_secure

    def set_refresh_cookie(response: Response, session: IssuedSession) -> None:
        response.set_cookie(
            REFRESH_COOKIE_NAME,
            session.refresh_token,
            max_age=session.refresh_expires_in,
            httponly=True,
            secure=secure_cookie,
            samesite="lax",
            path="/",
        )

    def clear_refresh_cookie(response: Response) -> None:
        response.delete_cookie(
            REFRESH_COOKIE_NAME,
            path="/",
            httponly=True,
            secure=secure_cookie,
            samesite="lax",
        )

    @router.post(
        "/api/auth/login",
        response_model=LoginResponse,
        responses={
            401: {"model": ApiErrorResponse},
            403: {"model": ApiErrorResponse},
            429: {"model": ApiErrorResponse},
        },
    )
    def login(req: LoginRequest, request: Request, response: Response) -> LoginResponse:
        """Authenticate user, set the refresh cookie and return the token pair."""
        client_ip = (request.client.host if request.client else "") or "unknown"
        rate_limiter.assert_allowed(email=req.email, client_ip=client_ip)
        try:
            session = service.login(req.email, req.password)
        except ApiError:
            rate_limiter.record_failure(email=req.email, client_ip=client_ip)
            raise
        rate_limiter.record_success(email=req.email, client_ip=client_ip)
        set_refresh_cookie(response, session)
        return _to_response(session)

    @router.post(
        "/api/auth/refresh",
        response_model=LoginResponse,
        responses={401: {"model": ApiErrorResponse}, 403: {"model": ApiErrorResponse}},
    )
    def refresh(
        request: Request, response: Response, req: RefreshRequest | None = None
    ) -> LoginResponse:
        """Rotate the refresh credential (cookie first, then body)."""
        token = request.cookies.get(REFRESH_COOKIE_NAME) or (
            req.refresh_token if req is not None else None
        )
        try:
            session = service.refresh(token)
        except ApiError as exc:
            # The cookie must not outlive a rejected refresh.
            exc.headers = {
                "set-cookie": f"{REFRESH_COOKIE_NAME}=; Max-Age=0; Path=/; HttpOnly; SameSite=lax"
            }
            raise
        set_refresh_cookie(response, session)
        return _to_response(session)

    @router.post("/api/auth/logout", response_model=LogoutResponse)
    def logout(
        request: Request, response: Response, req: LogoutRequest | None = None
    ) -> LogoutResponse:
        """Invalidate the refresh credential and clear the cookie."""
        token = request.cookies.get(REFRESH_COOKIE_NAME) or (
            req.refresh_token if req is not None else None
        )
        service.logout(token)
        clear_refresh_cookie(response)
        return LogoutResponse()

    @router.get(
        "/api/auth/me",
        response_model=AuthMeResponse,
        responses={401: {"model": ApiErrorResponse}},
    )
    def me(authorization: str | None = Header(default=None)) -> AuthMeResponse:
        """Return current authenticated user claims from access token."""
        token = extract_bearer_token(authorization)
        if not token:
            raise ApiError(
                status_code=401,
                error_code=ApiErrorCode.AUTH_MISSING_TOKEN,
                message="Missing bearer token",
            )
        try:
            claims = service.verify_access_token(token)
        except TokenError as exc:
            raise ApiError(
                status_code=401,
                error_code=ApiErrorCode.AUTH_TOKEN_INVALID,
                message=str(exc),
            ) from exc
        return AuthMeResponse(user_id=claims.user_id, email=claims.email, role=claims.role)

    return router
