"""Pydantic models for the authentication domain."""

from __future__ import annotations

from pydantic import BaseModel, Field

from clinic.api.contracts import Role

ROLES: tuple[str, ...] = ("RECEPTION", "DOCTOR", "ADMIN")


class AuthUser(BaseModel):
    """Persisted auth user model."""

    user_id: str
    email: str
    password_hash: str
    role: Role = "RECEPTION"
    is_active: bool = True


class LoginRequest(BaseModel):
    """Login request payload."""

    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=8, max_length=128)


class RefreshRequest(BaseModel):
    """Refresh request payload; the cookie takes precedence when present."""

    refresh_token: str | None = Field(default=None, alias="refreshToken")

    model_config = {"populate_by_name": True}


class LogoutRequest(BaseModel):
    """Logout request payload."""

    refresh_token: str | None = Field(default=None, alias="refreshToken")

    model_config = {"populate_by_name": True}


class AccessClaims(BaseModel):
    """Normalized claims of a verified access token."""

    user_id: str
    email: str
    role: Role


class IssuedSession(BaseModel):
    """Freshly issued access/refresh credential pair for one user."""

    user_id: str
    email: str
    role: Role
    access_token: str
    access_expires_in: int
    refresh_token: str
    refresh_expires_in: int


class RefreshTokenRecord(BaseModel):
    """Refresh token persistence record."""

    jti: str
    user_id: str
    token_hash: str
    expires_at: int
    revoked: bool = False
