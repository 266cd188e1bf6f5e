"""Authentication failure taxonomy returned by the engine."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import timedelta
from enum import StrEnum


class AuthErrorKind(StrEnum):
    """Classified authentication failures."""

    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_NOT_ELIGIBLE = "account_not_eligible"
    INVALID_OR_EXPIRED_TOKEN = "invalid_or_expired_token"
    TOKEN_REUSE_DETECTED = "token_reuse_detected"


@dataclass(frozen=True)
class AuthFailure:
    """Failed engine operation.

    ``reason`` names the internal cause (``unknown_principal``,
    ``password_mismatch``, ``session_revoked``...) and is meant for logs only.
    """

    kind: AuthErrorKind
    reason: str = ""
    retry_after: timedelta | None = None

    def public_kind(self) -> AuthErrorKind:
        """Return the kind a client is allowed to learn about."""
        if self.kind is AuthErrorKind.TOKEN_REUSE_DETECTED:
            return AuthErrorKind.INVALID_OR_EXPIRED_TOKEN
        return self.kind

    @property
    def retry_after_seconds(self) -> int | None:
        """Whole seconds until retry is sensible, rounded up."""
        if self.retry_after is None:
            return None
        return max(1, math.ceil(self.retry_after.total_seconds()))


class PrincipalExistsError(Exception):
    """Raised when a login key is already registered."""


class PrincipalNotFoundError(Exception):
    """Raised by administrative operations on an unknown principal."""


class ConcurrentUpdateError(Exception):
    """Raised when a principal update keeps losing to concurrent writers."""
