"""Pydantic API request/response models used in OpenAPI contracts."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Role = Literal["RECEPTION", "DOCTOR", "ADMIN"]


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ApiErrorResponse(BaseModel):
    """Stable error envelope for API responses."""

    error_code: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error message")


class HealthResponse(BaseModel):
    """Health check response payload."""

    status: Literal["ok"]


class TokenBundleResponse(CamelModel):
    """Access/refresh credential pair with their lifetimes."""

    access_token: str
    expires_in_sec: int
    refresh_token: str | None = None
    refresh_expires_in_sec: int | None = None


class LoginResponse(CamelModel):
    """Login and refresh response payload."""

    user_id: str
    role: Role
    tokens: TokenBundleResponse


class AuthMeResponse(CamelModel):
    """Current user endpoint response payload."""

    user_id: str
    email: str
    role: Role


class LogoutResponse(BaseModel):
    """Logout response payload."""

    ok: Literal[True] = True


class DoctorQueueUpdatedRequest(CamelModel):
    """Request to fan out a queue-updated notification."""

    doctor_id: str = Field(min_length=1)
    visit_date: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$")


class PublishResponse(CamelModel):
    """Outcome summary of one fan-out publish."""

    skipped: bool
    delivered: int
    gone: int
    failed: int


class RealtimeConfigResponse(CamelModel):
    """Heartbeat contract advertised to realtime clients."""

    heartbeat_interval_sec: int
    connection_ttl_sec: int
    enabled: bool
