"""Shared API error types and helpers."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from fastapi import HTTPException

from authlife.auth.errors import AuthErrorKind, AuthFailure


class ApiErrorCode(StrEnum):
    """Machine-readable API error codes."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTH_MISSING_TOKEN = "AUTH_MISSING_TOKEN"
    AUTH_INVALID_CREDENTIALS = "AUTH_INVALID_CREDENTIALS"
    AUTH_ACCOUNT_LOCKED = "AUTH_ACCOUNT_LOCKED"
    AUTH_ACCOUNT_NOT_ELIGIBLE = "AUTH_ACCOUNT_NOT_ELIGIBLE"
    AUTH_TOKEN_INVALID = "AUTH_TOKEN_INVALID"
    AUTH_PRINCIPAL_EXISTS = "AUTH_PRINCIPAL_EXISTS"
    AUTH_FORBIDDEN = "AUTH_FORBIDDEN"
    PRINCIPAL_NOT_FOUND = "PRINCIPAL_NOT_FOUND"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    CONCURRENT_UPDATE = "CONCURRENT_UPDATE"
    REQUEST_TOO_LARGE = "REQUEST_TOO_LARGE"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"


class ApiError(HTTPException):
    """HTTP exception carrying stable API error envelope."""

    def __init__(
        self,
        *,
        status_code: int,
        error_code: ApiErrorCode,
        message: str,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Build an HTTP exception with standard detail structure."""
        super().__init__(
            status_code=status_code,
            detail={"error_code": str(error_code), "message": message},
            headers=headers,
        )


def to_error_payload(detail: Any, status_code: int) -> dict[str, str]:
    """Normalize HTTP exception detail into stable error payload."""
    if isinstance(detail, dict):
        error_code = str(detail.get("error_code") or f"HTTP_{status_code}")
        message = str(detail.get("message") or detail.get("detail") or "HTTP error")
        return {"error_code": error_code, "message": message}
    return {
        "error_code": f"HTTP_{status_code}",
        "message": str(detail or "HTTP error"),
    }


def failure_to_api_error(failure: AuthFailure) -> ApiError:
    """Translate an engine failure into one of the client-visible errors."""
    kind = failure.public_kind()
    if kind is AuthErrorKind.ACCOUNT_LOCKED:
        seconds = failure.retry_after_seconds or 1
        return ApiError(
            status_code=423,
            error_code=ApiErrorCode.AUTH_ACCOUNT_LOCKED,
            message=f"Account locked. Retry after {seconds} seconds",
            headers={"Retry-After": str(seconds)},
        )
    if kind is AuthErrorKind.ACCOUNT_NOT_ELIGIBLE:
        message = (
            "Email address is not verified"
            if failure.reason == "email_not_verified"
            else "Account is not eligible to sign in"
        )
        return ApiError(
            status_code=403,
            error_code=ApiErrorCode.AUTH_ACCOUNT_NOT_ELIGIBLE,
            message=message,
        )
    if kind is AuthErrorKind.INVALID_OR_EXPIRED_TOKEN:
        return ApiError(
            status_code=401,
            error_code=ApiErrorCode.AUTH_TOKEN_INVALID,
            message="Invalid or expired token",
        )
    return ApiError(
        status_code=401,
        error_code=ApiErrorCode.AUTH_INVALID_CREDENTIALS,
        message="Invalid credentials",
    )
