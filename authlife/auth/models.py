"""Pydantic models for the authentication domain."""

from __future__ import annotations

import re
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field, field_validator, model_validator

SELF_REGISTRATION_ROLES = {"member", "seller"}


class AccountStatus(StrEnum):
    """Lifecycle status of a principal."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    UNVERIFIED = "unverified"


class AuthEventType(StrEnum):
    """Security event log entry types."""

    REGISTERED = "registered"
    LOGIN_SUCCEEDED = "login_succeeded"
    LOGIN_FAILED = "login_failed"
    LOGIN_LOCKED = "login_locked"
    ACCOUNT_LOCKED = "account_locked"
    LOGIN_REJECTED = "login_rejected"
    REFRESHED = "refreshed"
    REFRESH_FAILED = "refresh_failed"
    REUSE_DETECTED = "reuse_detected"
    LOGGED_OUT = "logged_out"
    SESSION_REVOKED = "session_revoked"
    SESSIONS_REVOKED = "sessions_revoked"
    PASSWORD_CHANGED = "password_changed"
    STATUS_CHANGED = "status_changed"
    EMAIL_VERIFIED = "email_verified"


class Principal(BaseModel):
    """Persisted login-capable account."""

    principal_id: str
    login_key: str
    password_hash: str = Field(repr=False)
    role: str = "member"
    status: AccountStatus = AccountStatus.ACTIVE
    email_verified: bool = False
    failed_attempts: int = Field(default=0, ge=0)
    failure_window_start: datetime | None = None
    locked_until: datetime | None = None
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    version: int = 0

    @model_validator(mode="after")
    def _failure_fields_move_together(self) -> "Principal":
        if (self.failed_attempts > 0) != (self.failure_window_start is not None):
            raise ValueError("failed_attempts and failure_window_start must be set together")
        return self

    def summary(self) -> "PrincipalSummary":
        """Return the externally visible subset of the principal."""
        return PrincipalSummary(
            principal_id=self.principal_id,
            login_key=self.login_key,
            role=self.role,
            status=self.status,
            email_verified=self.email_verified,
        )


class PrincipalSummary(BaseModel):
    """Minimal principal description returned to clients."""

    principal_id: str
    login_key: str
    role: str
    status: AccountStatus
    email_verified: bool


class SessionRecord(BaseModel):
    """One persisted refresh-token lineage link."""

    session_id: str
    principal_id: str
    fingerprint: str = Field(repr=False)
    parent_session_id: str | None = None
    expires_at: datetime
    revoked: bool = False
    revoked_at: datetime | None = None
    revoked_reason: str | None = None
    created_at: datetime
    last_activity_at: datetime
    ip_address: str | None = None
    user_agent: str | None = None

    def is_active(self, now: datetime) -> bool:
        """Return whether session is neither revoked nor expired at ``now``."""
        return not self.revoked and self.expires_at > now


class SessionView(BaseModel):
    """Session listing entry; never carries token material."""

    session_id: str
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    ip_address: str | None = None
    user_agent: str | None = None
    current: bool = False


class SecurityEvent(BaseModel):
    """Security event log entry."""

    event_type: AuthEventType
    principal_id: str | None = None
    login_key_digest: str | None = None
    session_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    reason: str | None = None
    created_at: datetime


class TokenPair(BaseModel):
    """Access and refresh token pair handed to the client."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class AuthSession(BaseModel):
    """Successful authentication result."""

    session_id: str
    tokens: TokenPair
    principal: PrincipalSummary


class AccessClaims(BaseModel):
    """Verified contents of an access token."""

    principal_id: str
    role: str
    session_id: str
    issued_at: datetime
    expires_at: datetime


class ClientInfo(BaseModel):
    """Optional request metadata stored with sessions and events."""

    ip_address: str | None = None
    user_agent: str | None = None


def validate_password_strength(value: str) -> str:
    """Require 8+ characters mixing letters and digits."""
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters")
    if not re.search(r"[A-Za-z]", value):
        raise ValueError("Password must contain a letter")
    if not re.search(r"[0-9]", value):
        raise ValueError("Password must contain a digit")
    return value


class RegisterRequest(BaseModel):
    """Self-registration payload."""

    login_key: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=1024)
    role: str = "member"

    @field_validator("password")
    @classmethod
    def _password_strength(cls, value: str) -> str:
        return validate_password_strength(value)

    @field_validator("role")
    @classmethod
    def _self_registration_role(cls, value: str) -> str:
        if value not in SELF_REGISTRATION_ROLES:
            raise ValueError(f"role must be one of {sorted(SELF_REGISTRATION_ROLES)}")
        return value


class LoginRequest(BaseModel):
    """Login request payload."""

    login_key: str = Field(min_length=1, max_length=254)
    password: str = Field(min_length=1, max_length=1024)


class RefreshRequest(BaseModel):
    """Refresh request payload."""

    refresh_token: str = Field(min_length=1)


class LogoutRequest(BaseModel):
    """Logout request payload."""

    refresh_token: str | None = None


class ChangePasswordRequest(BaseModel):
    """Password change payload."""

    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=1, max_length=1024)

    @field_validator("new_password")
    @classmethod
    def _password_strength(cls, value: str) -> str:
        return validate_password_strength(value)


class AccountStatusRequest(BaseModel):
    """Administrative status change payload."""

    status: AccountStatus
