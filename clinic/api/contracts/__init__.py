"""Public API request/response contracts."""

from clinic.api.contracts.models import (
    ApiErrorResponse,
    AuthMeResponse,
    CamelModel,
    DoctorQueueUpdatedRequest,
    HealthResponse,
    LoginResponse,
    LogoutResponse,
    PublishResponse,
    RealtimeConfigResponse,
    Role,
    TokenBundleResponse,
)

__all__ = [
    "ApiErrorResponse",
    "AuthMeResponse",
    "CamelModel",
    "DoctorQueueUpdatedRequest",
    "HealthResponse",
    "LoginResponse",
    "LogoutResponse",
    "PublishResponse",
    "RealtimeConfigResponse",
    "Role",
    "TokenBundleResponse",
]
