"""Public API response contracts."""

from authlife.api.contracts.models import (
    ApiErrorResponse,
    AuthMeResponse,
    AuthSessionResponse,
    EventsListResponse,
    HealthResponse,
    LogoutResponse,
    PrincipalResponse,
    RegisterResponse,
    RevokeSessionsResponse,
    SessionsListResponse,
)

__all__ = [
    "ApiErrorResponse",
    "AuthMeResponse",
    "AuthSessionResponse",
    "EventsListResponse",
    "HealthResponse",
    "LogoutResponse",
    "PrincipalResponse",
    "RegisterResponse",
    "RevokeSessionsResponse",
    "SessionsListResponse",
]
