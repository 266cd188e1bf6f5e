"""Authentication service for login, refresh, revocation and account upkeep."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable

from authlife.auth.errors import (
    AuthErrorKind,
    AuthFailure,
    PrincipalNotFoundError,
)
from authlife.auth.lockout import LockoutPolicy
from authlife.auth.models import (
    AccessClaims,
    AccountStatus,
    AuthEventType,
    AuthSession,
    ClientInfo,
    Principal,
    PrincipalSummary,
    SecurityEvent,
    SessionRecord,
    SessionView,
    TokenPair,
)
from authlife.auth.repository import AuthStore
from authlife.auth.sessions import SessionRegistry
from authlife.auth.tokens import TokenIssuer
from authlife.core.clock import Clock, utc_now
from authlife.core.config import AuthPolicy, KeyConfig
from authlife.core.logging import login_key_digest
from authlife.core.security import PasswordVerifier, fingerprint_token

LOGGER = logging.getLogger(__name__)

# Initial write plus one retry after an optimistic-concurrency conflict.
WRITE_ATTEMPTS = 2


def normalize_login_key(login_key: str) -> str:
    """Return canonical login key used for storage and lookup."""
    return login_key.strip().lower()


class AuthService:
    """Orchestrates credential checks, lockout, token issuance and sessions.

    Public operations return a value or an ``AuthFailure``; only the HTTP
    boundary turns failures into responses.
    """

    def __init__(
        self,
        store: AuthStore,
        policy: AuthPolicy,
        keys: KeyConfig,
        *,
        verifier: PasswordVerifier | None = None,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize service dependencies."""
        self._store = store
        self._policy = policy
        self._lockout = LockoutPolicy(policy)
        self._tokens = TokenIssuer(keys, policy)
        self._sessions = SessionRegistry(store)
        self._verifier = verifier or PasswordVerifier()
        self._clock = clock

    @property
    def policy(self) -> AuthPolicy:
        """Return active auth policy."""
        return self._policy

    # Login

    def authenticate(
        self, login_key: str, secret: str, client: ClientInfo | None = None
    ) -> AuthSession | AuthFailure:
        """Check credentials and issue a token pair."""
        now = self._clock()
        client = client or ClientInfo()
        digest = login_key_digest(login_key)

        principal = self._store.get_principal_by_login_key(normalize_login_key(login_key))
        if principal is None:
            self._verifier.verify_dummy(secret)
            self._record(
                AuthEventType.LOGIN_FAILED, now, client=client,
                login_key=login_key, reason="unknown_principal",
            )
            LOGGER.info(
                "login_failed",
                extra={"login_key_digest": digest, "reason": "unknown_principal"},
            )
            return AuthFailure(AuthErrorKind.INVALID_CREDENTIALS, reason="unknown_principal")

        locked = self._locked_failure(principal, now, client, login_key)
        if locked is not None:
            return locked

        checked_hash = principal.password_hash
        if not self._verifier.verify(secret, checked_hash):
            return self._count_failure(
                principal.principal_id, now, client, login_key, "password_mismatch"
            )

        for _ in range(WRITE_ATTEMPTS):
            updated = self._lockout.on_success(principal).model_copy(
                update={"last_login_at": now, "updated_at": now}
            )
            if self._verifier.needs_rehash(principal.password_hash):
                updated = updated.model_copy(
                    update={"password_hash": self._verifier.hash(secret)}
                )
            if self._store.compare_and_set_principal(updated, principal.version):
                break

            refreshed = self._store.get_principal(principal.principal_id)
            if refreshed is None:
                return AuthFailure(AuthErrorKind.INVALID_CREDENTIALS, reason="principal_vanished")
            principal = refreshed
            locked = self._locked_failure(principal, now, client, login_key)
            if locked is not None:
                return locked
            if principal.password_hash != checked_hash:
                checked_hash = principal.password_hash
                if not self._verifier.verify(secret, checked_hash):
                    return self._count_failure(
                        principal.principal_id, now, client, login_key, "password_mismatch"
                    )
        else:
            LOGGER.warning(
                "principal_write_conflict",
                extra={"principal_id": principal.principal_id, "reason": "login"},
            )
            return AuthFailure(AuthErrorKind.INVALID_CREDENTIALS, reason="write_conflict")

        ineligible = self._eligibility_failure(updated)
        if ineligible is not None:
            self._record(
                AuthEventType.LOGIN_REJECTED, now, principal_id=updated.principal_id,
                client=client, login_key=login_key, reason=ineligible.reason,
            )
            LOGGER.info(
                "login_rejected",
                extra={"principal_id": updated.principal_id, "reason": ineligible.reason},
            )
            return ineligible

        raw_refresh, fingerprint, refresh_expires_at = self._tokens.issue_refresh(now)
        session_id = self._sessions.create(
            updated.principal_id, fingerprint, refresh_expires_at, now, client
        )
        self._record(
            AuthEventType.LOGIN_SUCCEEDED, now, principal_id=updated.principal_id,
            session_id=session_id, client=client,
        )
        LOGGER.info(
            "login_succeeded",
            extra={"principal_id": updated.principal_id, "session_id": session_id},
        )
        return self._build_session(updated, session_id, raw_refresh, refresh_expires_at, now)

    def _locked_failure(
        self, principal: Principal, now: datetime, client: ClientInfo, login_key: str
    ) -> AuthFailure | None:
        state = self._lockout.evaluate(principal, now)
        if not state.locked:
            return None
        self._record(
            AuthEventType.LOGIN_LOCKED, now, principal_id=principal.principal_id,
            client=client, login_key=login_key, reason="account_locked",
        )
        LOGGER.info(
            "login_refused_locked",
            extra={"principal_id": principal.principal_id, "reason": "account_locked"},
        )
        return AuthFailure(
            AuthErrorKind.ACCOUNT_LOCKED, reason="account_locked", retry_after=state.remaining
        )

    def _count_failure(
        self,
        principal_id: str,
        now: datetime,
        client: ClientInfo,
        login_key: str,
        reason: str,
    ) -> AuthFailure:
        """Persist one failed secret check; the store serializes concurrent counts."""
        already_locked = False
        locked_before: datetime | None = None

        def apply_failure(current: Principal) -> Principal:
            nonlocal already_locked, locked_before
            already_locked = self._lockout.evaluate(current, now).locked
            locked_before = current.locked_until
            if already_locked:
                return current
            return self._lockout.on_failure(current, now).model_copy(
                update={"updated_at": now}
            )

        stored = self._store.update_principal(principal_id, apply_failure)
        if stored is None:
            return AuthFailure(AuthErrorKind.INVALID_CREDENTIALS, reason="principal_vanished")
        if already_locked:
            return self._locked_failure(stored, now, client, login_key) or AuthFailure(
                AuthErrorKind.INVALID_CREDENTIALS, reason=reason
            )

        self._record(
            AuthEventType.LOGIN_FAILED, now, principal_id=principal_id,
            client=client, login_key=login_key, reason=reason,
        )
        LOGGER.info("login_failed", extra={"principal_id": principal_id, "reason": reason})
        if stored.locked_until is not None and stored.locked_until != locked_before:
            self._record(
                AuthEventType.ACCOUNT_LOCKED, now, principal_id=principal_id,
                client=client, login_key=login_key, reason="failure_threshold",
            )
            LOGGER.warning("account_locked", extra={"principal_id": principal_id})
        return AuthFailure(AuthErrorKind.INVALID_CREDENTIALS, reason=reason)

    def _eligibility_failure(self, principal: Principal) -> AuthFailure | None:
        if principal.status == AccountStatus.SUSPENDED:
            return AuthFailure(AuthErrorKind.ACCOUNT_NOT_ELIGIBLE, reason="account_suspended")
        if principal.status == AccountStatus.UNVERIFIED or (
            self._policy.require_verified_email and not principal.email_verified
        ):
            return AuthFailure(AuthErrorKind.ACCOUNT_NOT_ELIGIBLE, reason="email_not_verified")
        return None

    # Refresh

    def refresh(
        self, raw_refresh_token: str, client: ClientInfo | None = None
    ) -> AuthSession | AuthFailure:
        """Exchange a refresh token for a new token pair."""
        now = self._clock()
        client = client or ClientInfo()
        if not raw_refresh_token:
            return self._refresh_failed(now, client, reason="empty_token")

        fingerprint = fingerprint_token(raw_refresh_token)
        session = self._sessions.find_active(fingerprint, now)
        if session is None:
            stale = self._sessions.find_any(fingerprint)
            if stale is None:
                return self._refresh_failed(now, client, reason="unknown_token")
            if stale.revoked:
                return self._reuse_detected(stale, now, client)
            return self._refresh_failed(
                now, client, reason="session_expired", session=stale
            )

        principal = self._store.get_principal(session.principal_id)
        if principal is None:
            self._sessions.revoke(session.session_id, now, "principal_missing")
            return self._refresh_failed(now, client, reason="principal_missing", session=session)
        ineligible = self._eligibility_failure(principal)
        if ineligible is not None:
            self._sessions.revoke(session.session_id, now, ineligible.reason)
            return self._refresh_failed(now, client, reason=ineligible.reason, session=session)

        if not self._policy.rotate_on_refresh:
            self._sessions.touch(session.session_id, now)
            self._record(
                AuthEventType.REFRESHED, now, principal_id=principal.principal_id,
                session_id=session.session_id, client=client,
            )
            return self._build_session(
                principal, session.session_id, raw_refresh_token, session.expires_at, now
            )

        raw_new, new_fingerprint, new_expires_at = self._tokens.issue_refresh(now)
        child = self._sessions.rotate(session, new_fingerprint, new_expires_at, now, client)
        if child is None:
            return self._refresh_failed(
                now, client, reason="rotation_conflict", session=session
            )

        self._record(
            AuthEventType.REFRESHED, now, principal_id=principal.principal_id,
            session_id=child.session_id, client=client,
        )
        LOGGER.info(
            "session_rotated",
            extra={"principal_id": principal.principal_id, "session_id": child.session_id},
        )
        return self._build_session(principal, child.session_id, raw_new, new_expires_at, now)

    def _reuse_detected(
        self, stale: SessionRecord, now: datetime, client: ClientInfo
    ) -> AuthFailure:
        revoked_count = 0
        if self._policy.revoke_all_on_reuse:
            revoked_count = self._sessions.revoke_all_for_principal(
                stale.principal_id, now, "reuse_detected"
            )
        self._record(
            AuthEventType.REUSE_DETECTED, now, principal_id=stale.principal_id,
            session_id=stale.session_id, client=client, reason=stale.revoked_reason,
        )
        LOGGER.warning(
            "refresh_reuse_detected",
            extra={
                "principal_id": stale.principal_id,
                "session_id": stale.session_id,
                "revoked_count": revoked_count,
            },
        )
        return AuthFailure(AuthErrorKind.TOKEN_REUSE_DETECTED, reason="revoked_token_presented")

    def _refresh_failed(
        self,
        now: datetime,
        client: ClientInfo,
        *,
        reason: str,
        session: SessionRecord | None = None,
    ) -> AuthFailure:
        self._record(
            AuthEventType.REFRESH_FAILED, now,
            principal_id=session.principal_id if session else None,
            session_id=session.session_id if session else None,
            client=client, reason=reason,
        )
        LOGGER.info(
            "refresh_failed",
            extra={"session_id": session.session_id if session else None, "reason": reason},
        )
        return AuthFailure(AuthErrorKind.INVALID_OR_EXPIRED_TOKEN, reason=reason)

    # Access tokens

    def verify_access_token(self, token: str) -> AccessClaims | AuthFailure:
        """Validate access token signature and expiry without store access."""
        return self._tokens.verify_access(token, self._clock())

    # Revocation

    def logout(self, raw_refresh_token: str | None) -> bool:
        """Revoke the session behind a refresh token; unknown tokens are ignored."""
        if not raw_refresh_token:
            return False
        now = self._clock()
        session = self._sessions.find_any(fingerprint_token(raw_refresh_token))
        if session is None or not self._sessions.revoke(session.session_id, now, "logout"):
            return False
        self._record(
            AuthEventType.LOGGED_OUT, now, principal_id=session.principal_id,
            session_id=session.session_id,
        )
        LOGGER.info(
            "logged_out",
            extra={"principal_id": session.principal_id, "session_id": session.session_id},
        )
        return True

    def revoke_session(
        self,
        session_id: str,
        *,
        principal_id: str | None = None,
        reason: str = "revoked",
    ) -> bool:
        """Revoke one session, optionally only if owned by ``principal_id``."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        if principal_id is not None and session.principal_id != principal_id:
            return False
        now = self._clock()
        if not self._sessions.revoke(session_id, now, reason):
            return False
        self._record(
            AuthEventType.SESSION_REVOKED, now, principal_id=session.principal_id,
            session_id=session_id, reason=reason,
        )
        LOGGER.info(
            "session_revoked",
            extra={"principal_id": session.principal_id, "session_id": session_id, "reason": reason},
        )
        return True

    def revoke_principal_sessions(
        self,
        principal_id: str,
        *,
        reason: str = "revoked",
        except_session_id: str | None = None,
    ) -> int:
        """Revoke all live sessions of a principal and return how many."""
        now = self._clock()
        revoked_count = self._sessions.revoke_all_for_principal(
            principal_id, now, reason, except_session_id
        )
        self._record(
            AuthEventType.SESSIONS_REVOKED, now, principal_id=principal_id, reason=reason
        )
        LOGGER.info(
            "sessions_revoked",
            extra={"principal_id": principal_id, "reason": reason, "revoked_count": revoked_count},
        )
        return revoked_count

    # Accounts

    def register(
        self,
        login_key: str,
        secret: str,
        role: str = "member",
        *,
        email_verified: bool = False,
        status: AccountStatus = AccountStatus.ACTIVE,
    ) -> PrincipalSummary:
        """Create a principal; raises ``PrincipalExistsError`` on duplicates."""
        now = self._clock()
        principal = Principal(
            principal_id=uuid.uuid4().hex,
            login_key=normalize_login_key(login_key),
            password_hash=self._verifier.hash(secret),
            role=role,
            status=status,
            email_verified=email_verified,
            created_at=now,
            updated_at=now,
        )
        self._store.insert_principal(principal)
        self._record(AuthEventType.REGISTERED, now, principal_id=principal.principal_id)
        LOGGER.info("principal_registered", extra={"principal_id": principal.principal_id})
        return principal.summary()

    def get_principal(self, principal_id: str) -> PrincipalSummary | None:
        """Return principal summary by id."""
        principal = self._store.get_principal(principal_id)
        return principal.summary() if principal else None

    def mark_email_verified(self, principal_id: str) -> PrincipalSummary:
        """Flip the email verification flag."""
        updated = self._update_principal(
            principal_id,
            lambda principal: principal.model_copy(update={"email_verified": True}),
        )
        self._record(AuthEventType.EMAIL_VERIFIED, self._clock(), principal_id=principal_id)
        return updated.summary()

    def set_account_status(
        self, principal_id: str, status: AccountStatus
    ) -> PrincipalSummary:
        """Change account status; suspension revokes every session."""
        updated = self._update_principal(
            principal_id, lambda principal: principal.model_copy(update={"status": status})
        )
        self._record(
            AuthEventType.STATUS_CHANGED, self._clock(), principal_id=principal_id,
            reason=str(status),
        )
        if status == AccountStatus.SUSPENDED:
            self.revoke_principal_sessions(principal_id, reason="account_suspended")
        return updated.summary()

    def change_password(
        self, principal_id: str, current_secret: str, new_secret: str
    ) -> PrincipalSummary | AuthFailure:
        """Replace password after re-checking the current one; ends all sessions.

        The current-secret check counts toward the same lockout as login.
        """
        now = self._clock()
        client = ClientInfo()
        principal = self._store.get_principal(principal_id)
        if principal is None:
            LOGGER.info(
                "password_change_rejected",
                extra={"principal_id": principal_id, "reason": "principal_missing"},
            )
            return AuthFailure(AuthErrorKind.INVALID_CREDENTIALS, reason="principal_missing")
        locked = self._locked_failure(principal, now, client, principal.login_key)
        if locked is not None:
            return locked
        if not self._verifier.verify(current_secret, principal.password_hash):
            return self._count_failure(
                principal_id, now, client, principal.login_key, "current_password_mismatch"
            )

        new_hash = self._verifier.hash(new_secret)
        updated = self._update_principal(
            principal_id,
            lambda current: self._lockout.on_success(current).model_copy(
                update={"password_hash": new_hash}
            ),
        )
        self._record(AuthEventType.PASSWORD_CHANGED, self._clock(), principal_id=principal_id)
        self.revoke_principal_sessions(principal_id, reason="password_changed")
        return updated.summary()

    def bootstrap_admin(self, login_key: str, password: str) -> PrincipalSummary | None:
        """Ensure an active, verified admin exists for the given login key."""
        if not login_key or not password:
            return None
        existing = self._store.get_principal_by_login_key(normalize_login_key(login_key))
        if existing is not None:
            return existing.summary()
        return self.register(login_key, password, "admin", email_verified=True)

    def _update_principal(
        self, principal_id: str, change: Callable[[Principal], Principal]
    ) -> Principal:
        now = self._clock()
        updated = self._store.update_principal(
            principal_id,
            lambda principal: change(principal).model_copy(update={"updated_at": now}),
        )
        if updated is None:
            raise PrincipalNotFoundError(principal_id)
        return updated

    # Listings

    def list_sessions(
        self, principal_id: str, current_session_id: str | None = None
    ) -> list[SessionView]:
        """Return active sessions for a principal, newest first."""
        return [
            SessionView(
                session_id=record.session_id,
                created_at=record.created_at,
                last_activity_at=record.last_activity_at,
                expires_at=record.expires_at,
                ip_address=record.ip_address,
                user_agent=record.user_agent,
                current=record.session_id == current_session_id,
            )
            for record in self._sessions.list_active(principal_id, self._clock())
        ]

    def list_events(self, principal_id: str, limit: int = 50) -> list[SecurityEvent]:
        """Return a principal's security events, most recent first."""
        return self._store.list_events(principal_id, limit)

    def sweep_sessions(self, retention: timedelta) -> int:
        """Delete session rows revoked or expired longer ago than ``retention``."""
        return self._sessions.sweep(self._clock(), retention)

    # Helpers

    def _build_session(
        self,
        principal: Principal,
        session_id: str,
        raw_refresh: str,
        refresh_expires_at: datetime,
        now: datetime,
    ) -> AuthSession:
        access_token, access_expires_at = self._tokens.issue_access(
            principal.principal_id, principal.role, session_id, now
        )
        return AuthSession(
            session_id=session_id,
            tokens=TokenPair(
                access_token=access_token,
                refresh_token=raw_refresh,
                access_expires_at=access_expires_at,
                refresh_expires_at=refresh_expires_at,
            ),
            principal=principal.summary(),
        )

    def _record(
        self,
        event_type: AuthEventType,
        now: datetime,
        *,
        principal_id: str | None = None,
        session_id: str | None = None,
        client: ClientInfo | None = None,
        login_key: str | None = None,
        reason: str | None = None,
    ) -> None:
        client = client or ClientInfo()
        self._store.append_event(
            SecurityEvent(
                event_type=event_type,
                principal_id=principal_id,
                login_key_digest=login_key_digest(login_key) if login_key else None,
                session_id=session_id,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                reason=reason,
                created_at=now,
            )
        )
