"""Pydantic API response models used in OpenAPI contracts."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from authlife.auth.models import (
    AuthSession,
    PrincipalSummary,
    SecurityEvent,
    SessionView,
)


class ApiErrorResponse(BaseModel):
    """Stable error envelope for API responses."""

    error_code: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error message")


class HealthResponse(BaseModel):
    """Health check response payload."""

    status: Literal["ok"]


class AuthSessionResponse(BaseModel):
    """Authentication session response payload."""

    access_token: str
    refresh_token: str
    token_type: str
    expires_in: int
    access_expires_at: datetime
    refresh_expires_at: datetime
    session_id: str
    principal: PrincipalSummary

    @classmethod
    def from_session(cls, session: AuthSession, expires_in: int) -> "AuthSessionResponse":
        """Flatten engine session into wire shape."""
        tokens = session.tokens
        return cls(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            expires_in=expires_in,
            access_expires_at=tokens.access_expires_at,
            refresh_expires_at=tokens.refresh_expires_at,
            session_id=session.session_id,
            principal=session.principal,
        )


class RegisterResponse(BaseModel):
    """Registration response payload."""

    principal: PrincipalSummary
    requires_email_verification: bool


class AuthMeResponse(BaseModel):
    """Current principal endpoint response payload."""

    principal_id: str
    role: str
    session_id: str
    expires_at: datetime


class LogoutResponse(BaseModel):
    """Logout response payload."""

    status: Literal["ok"]


class SessionsListResponse(BaseModel):
    """Active sessions listing."""

    items: list[SessionView]


class EventsListResponse(BaseModel):
    """Security events listing."""

    items: list[SecurityEvent]


class RevokeSessionsResponse(BaseModel):
    """Bulk revocation response payload."""

    principal_id: str
    revoked_count: int


class PrincipalResponse(BaseModel):
    """Single principal response payload."""

    principal: PrincipalSummary
