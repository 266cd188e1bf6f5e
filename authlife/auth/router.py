"""Authentication API router."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from authlife.api.contracts import (
    ApiErrorResponse,
    AuthMeResponse,
    AuthSessionResponse,
    EventsListResponse,
    LogoutResponse,
    PrincipalResponse,
    RegisterResponse,
    RevokeSessionsResponse,
    SessionsListResponse,
)
from authlife.api.errors import ApiError, ApiErrorCode, failure_to_api_error
from authlife.auth.errors import AuthFailure
from authlife.auth.middleware import extract_bearer_token
from authlife.auth.models import (
    AccessClaims,
    AccountStatusRequest,
    AuthSession,
    ChangePasswordRequest,
    ClientInfo,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
)
from authlife.auth.service import AuthService

ADMIN_ROLE = "admin"
UNAUTHORIZED = {401: {"model": ApiErrorResponse}}


def _client_info(request: Request) -> ClientInfo:
    """Collect request metadata stored alongside sessions and events."""
    return ClientInfo(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def create_auth_router(service: AuthService) -> APIRouter:
    """Build authentication router with account, session and admin endpoints."""
    router = APIRouter(tags=["auth"])
    expires_in = int(service.policy.access_ttl.total_seconds())

    def session_response(result: AuthSession | AuthFailure) -> AuthSessionResponse:
        if isinstance(result, AuthFailure):
            raise failure_to_api_error(result)
        return AuthSessionResponse.from_session(result, expires_in)

    def current_claims(request: Request) -> AccessClaims:
        """Return claims attached by the auth middleware, verifying if absent."""
        claims = getattr(request.state, "principal", None)
        if isinstance(claims, AccessClaims):
            return claims
        token = extract_bearer_token(request.headers.get("authorization"))
        if not token:
            raise ApiError(
                status_code=401,
                error_code=ApiErrorCode.AUTH_MISSING_TOKEN,
                message="Missing bearer token",
            )
        verified = service.verify_access_token(token)
        if isinstance(verified, AuthFailure):
            raise failure_to_api_error(verified)
        return verified

    def admin_claims(claims: AccessClaims = Depends(current_claims)) -> AccessClaims:
        """Require the admin role tag."""
        if claims.role != ADMIN_ROLE:
            raise ApiError(
                status_code=403,
                error_code=ApiErrorCode.AUTH_FORBIDDEN,
                message="Admin role required",
            )
        return claims

    @router.post(
        "/api/auth/register",
        response_model=RegisterResponse,
        status_code=201,
        responses={409: {"model": ApiErrorResponse}, 422: {"model": ApiErrorResponse}},
    )
    def register(req: RegisterRequest) -> RegisterResponse:
        """Self-register a member or seller account."""
        principal = service.register(req.login_key, req.password, req.role)
        return RegisterResponse(
            principal=principal,
            requires_email_verification=(
                service.policy.require_verified_email and not principal.email_verified
            ),
        )

    @router.post(
        "/api/auth/login",
        response_model=AuthSessionResponse,
        responses={
            **UNAUTHORIZED,
            403: {"model": ApiErrorResponse},
            423: {"model": ApiErrorResponse},
        },
    )
    def login(req: LoginRequest, request: Request) -> AuthSessionResponse:
        """Authenticate principal and return token pair."""
        return session_response(
            service.authenticate(req.login_key, req.password, _client_info(request))
        )

    @router.post(
        "/api/auth/refresh",
        response_model=AuthSessionResponse,
        responses=UNAUTHORIZED,
    )
    def refresh(req: RefreshRequest, request: Request) -> AuthSessionResponse:
        """Rotate refresh token and issue new session tokens."""
        return session_response(service.refresh(req.refresh_token, _client_info(request)))

    @router.post("/api/auth/logout", response_model=LogoutResponse)
    def logout(req: LogoutRequest) -> LogoutResponse:
        """Invalidate supplied refresh token."""
        service.logout(req.refresh_token)
        return LogoutResponse(status="ok")

    @router.get("/api/auth/me", response_model=AuthMeResponse, responses=UNAUTHORIZED)
    def me(claims: AccessClaims = Depends(current_claims)) -> AuthMeResponse:
        """Return current principal claims from access token."""
        return AuthMeResponse(
            principal_id=claims.principal_id,
            role=claims.role,
            session_id=claims.session_id,
            expires_at=claims.expires_at,
        )

    @router.post(
        "/api/auth/change-password",
        response_model=PrincipalResponse,
        responses={
            **UNAUTHORIZED,
            422: {"model": ApiErrorResponse},
            423: {"model": ApiErrorResponse},
        },
    )
    def change_password(
        req: ChangePasswordRequest, claims: AccessClaims = Depends(current_claims)
    ) -> PrincipalResponse:
        """Change password and end every session of the principal."""
        result = service.change_password(
            claims.principal_id, req.current_password, req.new_password
        )
        if isinstance(result, AuthFailure):
            raise failure_to_api_error(result)
        return PrincipalResponse(principal=result)

    @router.get("/api/auth/sessions", response_model=SessionsListResponse, responses=UNAUTHORIZED)
    def list_sessions(claims: AccessClaims = Depends(current_claims)) -> SessionsListResponse:
        """List active sessions of the current principal."""
        return SessionsListResponse(
            items=service.list_sessions(claims.principal_id, claims.session_id)
        )

    @router.delete(
        "/api/auth/sessions/{session_id}",
        response_model=LogoutResponse,
        responses={**UNAUTHORIZED, 404: {"model": ApiErrorResponse}},
    )
    def revoke_session(
        session_id: str, claims: AccessClaims = Depends(current_claims)
    ) -> LogoutResponse:
        """Revoke one of the current principal's sessions."""
        if not service.revoke_session(
            session_id, principal_id=claims.principal_id, reason="user_revoked"
        ):
            raise ApiError(
                status_code=404,
                error_code=ApiErrorCode.SESSION_NOT_FOUND,
                message="Session not found",
            )
        return LogoutResponse(status="ok")

    @router.get("/api/auth/events", response_model=EventsListResponse, responses=UNAUTHORIZED)
    def list_events(
        limit: int = Query(default=50, ge=1, le=200),
        claims: AccessClaims = Depends(current_claims),
    ) -> EventsListResponse:
        """Return login history of the current principal."""
        return EventsListResponse(items=service.list_events(claims.principal_id, limit))

    @router.post(
        "/api/auth/admin/principals/{principal_id}/revoke-sessions",
        response_model=RevokeSessionsResponse,
        responses={**UNAUTHORIZED, 403: {"model": ApiErrorResponse}, 404: {"model": ApiErrorResponse}},
    )
    def admin_revoke_sessions(
        principal_id: str, _: AccessClaims = Depends(admin_claims)
    ) -> RevokeSessionsResponse:
        """Revoke every session of a principal."""
        if service.get_principal(principal_id) is None:
            raise ApiError(
                status_code=404,
                error_code=ApiErrorCode.PRINCIPAL_NOT_FOUND,
                message="Principal not found",
            )
        revoked_count = service.revoke_principal_sessions(principal_id, reason="admin_revoked")
        return RevokeSessionsResponse(principal_id=principal_id, revoked_count=revoked_count)

    @router.post(
        "/api/auth/admin/principals/{principal_id}/status",
        response_model=PrincipalResponse,
        responses={**UNAUTHORIZED, 403: {"model": ApiErrorResponse}, 404: {"model": ApiErrorResponse}},
    )
    def admin_set_status(
        principal_id: str,
        req: AccountStatusRequest,
        _: AccessClaims = Depends(admin_claims),
    ) -> PrincipalResponse:
        """Suspend or reactivate a principal."""
        return PrincipalResponse(principal=service.set_account_status(principal_id, req.status))

    @router.post(
        "/api/auth/admin/principals/{principal_id}/verify-email",
        response_model=PrincipalResponse,
        responses={**UNAUTHORIZED, 403: {"model": ApiErrorResponse}, 404: {"model": ApiErrorResponse}},
    )
    def admin_verify_email(
        principal_id: str, _: AccessClaims = Depends(admin_claims)
    ) -> PrincipalResponse:
        """Mark a principal's email address as verified."""
        return PrincipalResponse(principal=service.mark_email_verified(principal_id))

    return router
