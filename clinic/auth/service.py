"""Authentication service for login, refresh rotation and token verification."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable, Protocol

from clinic.api.errors import ApiError, ApiErrorCode
from clinic.auth.models import (
    ROLES,
    AccessClaims,
    AuthUser,
    IssuedSession,
    RefreshTokenRecord,
)
from clinic.core.config import AuthConfig
from clinic.core.security import (
    TokenError,
    build_signed_token,
    decode_signed_token,
    hash_password,
    hash_token,
    verify_password,
)

LOGGER = logging.getLogger(__name__)


class AuthStore(Protocol):
    """Persistence operations the service relies on."""

    def get_user_by_email(self, email: str) -> AuthUser | None: ...

    def get_user_by_id(self, user_id: str) -> AuthUser | None: ...

    def upsert_user(self, user: AuthUser) -> None: ...

    def save_refresh_token(self, record: RefreshTokenRecord) -> None: ...

    def consume_refresh_token(self, jti: str) -> RefreshTokenRecord | None: ...

    def revoke_refresh_token(self, jti: str) -> None: ...


def _invalid_credentials() -> ApiError:
    return ApiError(
        status_code=401,
        error_code=ApiErrorCode.AUTH_INVALID_CREDENTIALS,
        message="Invalid credentials",
    )


def _invalid_refresh(message: str) -> ApiError:
    return ApiError(
        status_code=401,
        error_code=ApiErrorCode.INVALID_REFRESH_TOKEN,
        message=message,
    )


def decode_token(
    token: str, config: AuthConfig, *, expected_type: str, now: int
) -> dict[str, Any]:
    """Decode signed token and validate issuer/type claims."""
    payload = decode_signed_token(token, config.secret_key, now=now)
    if str(payload.get("iss") or "") != config.issuer:
        raise TokenError("Invalid token issuer")
    if str(payload.get("type") or "") != expected_type:
        raise TokenError("Invalid token type")
    return payload


def verify_access_token(token: str, config: AuthConfig, *, now: int) -> AccessClaims:
    """Validate an access token against signing config only; no store is consulted.

    Raises ``TokenError`` (or a subclass) when the token cannot be trusted.
    """
    payload = decode_token(token, config, expected_type="access", now=now)
    user_id = str(payload.get("sub") or "")
    if not user_id:
        raise TokenError("Token has no subject")
    role = str(payload.get("role") or "")
    if role not in ROLES:
        raise TokenError("Token has an unknown role")
    return AccessClaims(
        user_id=user_id,
        email=str(payload.get("email") or ""),
        role=role,
    )


class AuthService:
    """Issues, rotates and verifies access/refresh credential pairs."""

    def __init__(
        self,
        repo: AuthStore,
        config: AuthConfig,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize service dependencies."""
        self._repo = repo
        self._config = config
        self._clock = clock

    @property
    def enabled(self) -> bool:
        """Return whether auth checks should be enforced."""
        return self._config.enabled

    @property
    def config(self) -> AuthConfig:
        return self._config

    def bootstrap_admin_user(self) -> None:
        """Ensure bootstrap admin user exists from environment values."""
        if self._repo.get_user_by_email(self._config.admin_email) is not None:
            return

        self._repo.upsert_user(
            AuthUser(
                user_id=uuid.uuid4().hex,
                email=self._config.admin_email,
                password_hash=hash_password(self._config.admin_password),
                role="ADMIN",
                is_active=True,
            )
        )
        LOGGER.info("auth_admin_bootstrapped")

    def login(self, email: str, password: str) -> IssuedSession:
        """Authenticate credentials and issue access/refresh token pair."""
        user = self._repo.get_user_by_email(email.strip().lower())
        if user is None:
            raise _invalid_credentials()
        if not verify_password(password, user.password_hash):
            raise _invalid_credentials()
        if not user.is_active:
            raise ApiError(
                status_code=403,
                error_code=ApiErrorCode.USER_INACTIVE,
                message="Account is inactive. Please contact admin.",
            )
        LOGGER.info("auth_login_success", extra={"user_id": user.user_id})
        return self._issue_session_for_user(user)

    def refresh(self, refresh_token: str | None) -> IssuedSession:
        """Validate a refresh token, consume it, and rotate the token pair."""
        if not refresh_token:
            raise _invalid_refresh("Missing refresh token")
        try:
            payload = self._decode_token(refresh_token, expected_type="refresh")
        except TokenError as exc:
            raise _invalid_refresh("Invalid refresh token") from exc

        jti = str(payload.get("jti") or "")
        record = self._repo.consume_refresh_token(jti)
        if record is None:
            raise _invalid_refresh("Refresh token expired or already used")
        if record.expires_at <= int(self._clock()):
            raise _invalid_refresh("Refresh token expired or already used")
        if record.token_hash != hash_token(refresh_token):
            raise _invalid_refresh("Refresh token mismatch")

        user = self._repo.get_user_by_id(record.user_id)
        if user is None:
            raise _invalid_refresh("User not found")
        if not user.is_active:
            raise ApiError(
                status_code=403,
                error_code=ApiErrorCode.USER_INACTIVE,
                message="User inactive",
            )
        LOGGER.info("auth_refresh_success", extra={"user_id": user.user_id})
        return self._issue_session_for_user(user)

    def logout(self, refresh_token: str | None) -> None:
        """Revoke provided refresh token when available."""
        if not refresh_token:
            return
        try:
            payload = self._decode_token(refresh_token, expected_type="refresh")
        except TokenError:
            return
        jti = str(payload.get("jti") or "")
        if jti:
            self._repo.revoke_refresh_token(jti)
            LOGGER.info("auth_logout", extra={"user_id": str(payload.get("sub") or "")})

    def verify_access_token(self, token: str) -> AccessClaims:
        """Validate access token and return normalized claims."""
        return verify_access_token(token, self._config, now=int(self._clock()))

    def _issue_session_for_user(self, user: AuthUser) -> IssuedSession:
        """Issue fresh access and refresh tokens for given user."""
        now_ts = int(self._clock())
        refresh_jti = uuid.uuid4().hex
        access_ttl = self._config.access_token_ttl_seconds
        refresh_ttl = self._config.refresh_token_ttl_seconds

        claims: dict[str, Any] = {
            "iss": self._config.issuer,
            "sub": user.user_id,
            "email": user.email,
            "role": user.role,
            "iat": now_ts,
        }
        access_token = build_signed_token(
            {
                **claims,
                "type": "access",
                "exp": now_ts + access_ttl,
                "jti": uuid.uuid4().hex,
            },
            self._config.secret_key,
        )
        refresh_token = build_signed_token(
            {**claims, "type": "refresh", "exp": now_ts + refresh_ttl, "jti": refresh_jti},
            self._config.secret_key,
        )

        self._repo.save_refresh_token(
            RefreshTokenRecord(
                jti=refresh_jti,
                user_id=user.user_id,
                token_hash=hash_token(refresh_token),
                expires_at=now_ts + refresh_ttl,
                revoked=False,
            )
        )

        return IssuedSession(
            user_id=user.user_id,
            email=user.email,
            role=user.role,
            access_token=access_token,
            access_expires_in=access_ttl,
            refresh_token=refresh_token,
            refresh_expires_in=refresh_ttl,
        )

    def _decode_token(self, token: str, *, expected_type: str) -> dict[str, Any]:
        return decode_token(
            token, self._config, expected_type=expected_type, now=int(self._clock())
        )
