"""HTTP middleware that enforces auth on protected API routes."""

from __future__ import annotations

from typing import Callable

from fastapi import Request
from fastapi.responses import JSONResponse

from authlife.api.contracts import ApiErrorResponse
from authlife.api.errors import ApiErrorCode, failure_to_api_error, to_error_payload
from authlife.auth.errors import AuthFailure
from authlife.auth.service import AuthService

PUBLIC_PATHS = {
    "/api/health",
    "/api/auth/login",
    "/api/auth/refresh",
    "/api/auth/logout",
    "/api/auth/register",
}


def extract_bearer_token(authorization: str | None) -> str:
    """Extract bearer token from authorization header value."""
    parts = (authorization or "").strip().split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return ""
    return parts[1].strip()


def create_auth_middleware(service: AuthService) -> Callable:
    """Create middleware that verifies access tokens without store access."""

    async def auth_middleware(request: Request, call_next: Callable):
        """Validate auth for protected API paths and attach claims to request state."""
        path = request.url.path
        if not path.startswith("/api/") or path in PUBLIC_PATHS:
            return await call_next(request)
        if request.method == "OPTIONS":
            return await call_next(request)

        token = extract_bearer_token(request.headers.get("authorization"))
        if not token:
            return JSONResponse(
                status_code=401,
                content=ApiErrorResponse(
                    error_code=ApiErrorCode.AUTH_MISSING_TOKEN,
                    message="Missing bearer token",
                ).model_dump(),
            )

        claims = service.verify_access_token(token)
        if isinstance(claims, AuthFailure):
            error = failure_to_api_error(claims)
            return JSONResponse(
                status_code=error.status_code,
                content=to_error_payload(error.detail, error.status_code),
            )

        request.state.principal = claims
        return await call_next(request)

    return auth_middleware
