from __future__ import annotations

from datetime import timedelta
from typing import Any

import pytest

from authlife.auth.errors import (
    AuthErrorKind,
    AuthFailure,
    PrincipalExistsError,
    PrincipalNotFoundError,
)
from authlife.auth.models import (
    AccessClaims,
    AccountStatus,
    AuthEventType,
    AuthSession,
    ClientInfo,
)
from authlife.auth.repository import SqliteAuthRepository
from authlife.auth.service import AuthService
from authlife.core.config import AuthPolicy, KeyConfig
from authlife.core.logging import login_key_digest
from authlife.core.security import PasswordVerifier

LOGIN = "P@Example.com"
PASSWORD = "Sw0rd!23"


class _CountingStore:
    """Proxy recording every store method call."""

    def __init__(self, inner: Any) -> None:
        self._inner = inner
        self.calls: list[str] = []

    def __getattr__(self, name: str) -> Any:
        target = getattr(self._inner, name)
        if not callable(target):
            return target

        def wrapper(*args: Any, **kwargs: Any) -> Any:
            self.calls.append(name)
            return target(*args, **kwargs)

        return wrapper


class _ConflictingStore(_CountingStore):
    """Proxy whose principal compare-and-set loses the first ``conflicts`` times."""

    def __init__(self, inner: Any, conflicts: int) -> None:
        super().__init__(inner)
        self._conflicts = conflicts

    def compare_and_set_principal(self, principal: Any, expected_version: int) -> bool:
        self.calls.append("compare_and_set_principal")
        if self._conflicts > 0:
            self._conflicts -= 1
            current = self._inner.get_principal(principal.principal_id)
            self._inner.compare_and_set_principal(
                current.model_copy(update={"updated_at": principal.updated_at}),
                current.version,
            )
            return False
        return self._inner.compare_and_set_principal(principal, expected_version)


def _register(service: AuthService, **kwargs: Any) -> str:
    return service.register(LOGIN, PASSWORD, **kwargs).principal_id


def _login(service: AuthService, password: str = PASSWORD) -> AuthSession:
    result = service.authenticate(LOGIN, password)
    assert isinstance(result, AuthSession), result
    return result


def _verification_required(
    store: SqliteAuthRepository, keys: KeyConfig, verifier: PasswordVerifier, clock
) -> AuthService:
    return AuthService(
        store,
        AuthPolicy(require_verified_email=True),
        keys,
        verifier=verifier,
        clock=clock,
    )


def test_scenario_register_then_authenticate(service: AuthService) -> None:
    service.register(LOGIN, PASSWORD)

    result = service.authenticate(LOGIN, PASSWORD)

    assert isinstance(result, AuthSession)
    assert result.tokens.access_token
    assert result.tokens.refresh_token
    assert result.tokens.access_expires_at < result.tokens.refresh_expires_at
    assert result.principal.login_key == "p@example.com"


def test_scenario_five_failures_lock_account(service: AuthService, clock) -> None:
    _register(service)

    failures = []
    for _ in range(5):
        failures.append(service.authenticate(LOGIN, "wrong"))
        clock.advance(seconds=10)
    locked = service.authenticate(LOGIN, PASSWORD)

    assert all(isinstance(f, AuthFailure) for f in failures)
    assert [f.kind for f in failures] == [AuthErrorKind.INVALID_CREDENTIALS] * 5
    assert isinstance(locked, AuthFailure)
    assert locked.kind is AuthErrorKind.ACCOUNT_LOCKED
    assert locked.retry_after is not None
    assert locked.retry_after_seconds == 30 * 60 - 10


def test_scenario_refresh_rotation_invalidates_original(service: AuthService) -> None:
    _register(service)
    session = _login(service)

    rotated = service.refresh(session.tokens.refresh_token)
    replay = service.refresh(session.tokens.refresh_token)

    assert isinstance(rotated, AuthSession)
    assert rotated.tokens.refresh_token != session.tokens.refresh_token
    assert rotated.session_id != session.session_id
    assert isinstance(replay, AuthFailure)
    assert replay.public_kind() is AuthErrorKind.INVALID_OR_EXPIRED_TOKEN


def test_unknown_login_key_and_wrong_password_look_identical(service: AuthService) -> None:
    _register(service)

    unknown = service.authenticate("nobody@example.com", PASSWORD)
    wrong = service.authenticate(LOGIN, "wrong-password-1")

    assert isinstance(unknown, AuthFailure) and isinstance(wrong, AuthFailure)
    assert unknown.public_kind() is wrong.public_kind() is AuthErrorKind.INVALID_CREDENTIALS
    assert unknown.reason == "unknown_principal"
    assert wrong.reason == "password_mismatch"


def test_attempt_while_locked_leaves_lock_untouched(
    service: AuthService, sqlite_store: SqliteAuthRepository, clock
) -> None:
    principal_id = _register(service)
    for _ in range(5):
        service.authenticate(LOGIN, "wrong")
    before = sqlite_store.get_principal(principal_id)

    clock.advance(minutes=1)
    result = service.authenticate(LOGIN, "wrong")
    after = sqlite_store.get_principal(principal_id)

    assert isinstance(result, AuthFailure)
    assert result.kind is AuthErrorKind.ACCOUNT_LOCKED
    assert before is not None and after is not None
    assert after.locked_until == before.locked_until
    assert after.failed_attempts == before.failed_attempts == 5
    assert after.version == before.version


def test_lock_expires_lazily_and_success_clears_state(
    service: AuthService, sqlite_store: SqliteAuthRepository, clock
) -> None:
    principal_id = _register(service)
    for _ in range(5):
        service.authenticate(LOGIN, "wrong")
    locked = sqlite_store.get_principal(principal_id)
    assert locked is not None and locked.locked_until is not None

    clock.now = locked.locked_until
    at_boundary = service.authenticate(LOGIN, PASSWORD)
    clock.advance(microseconds=1)
    after_boundary = service.authenticate(LOGIN, PASSWORD)
    cleared = sqlite_store.get_principal(principal_id)

    assert isinstance(at_boundary, AuthFailure)
    assert at_boundary.kind is AuthErrorKind.ACCOUNT_LOCKED
    assert isinstance(after_boundary, AuthSession)
    assert cleared is not None
    assert cleared.failed_attempts == 0
    assert cleared.failure_window_start is None
    assert cleared.locked_until is None
    assert cleared.last_login_at == clock.now


def test_unverified_email_is_not_eligible_when_required(
    sqlite_store: SqliteAuthRepository, keys: KeyConfig, verifier: PasswordVerifier, clock
) -> None:
    service = _verification_required(sqlite_store, keys, verifier, clock)
    principal_id = _register(service, email_verified=False)
    service.authenticate(LOGIN, "wrong")

    result = service.authenticate(LOGIN, PASSWORD)
    stored = sqlite_store.get_principal(principal_id)

    assert isinstance(result, AuthFailure)
    assert result.kind is AuthErrorKind.ACCOUNT_NOT_ELIGIBLE
    assert result.reason == "email_not_verified"
    assert stored is not None and stored.failed_attempts == 0
    assert sqlite_store.list_active_sessions(principal_id, stored.updated_at) == []


def test_default_policy_lets_unverified_principal_sign_in(service: AuthService) -> None:
    summary = service.register(LOGIN, PASSWORD)

    assert summary.email_verified is False
    assert service.policy.require_verified_email is False
    assert isinstance(service.authenticate(LOGIN, PASSWORD), AuthSession)


def test_suspended_account_is_not_eligible(service: AuthService) -> None:
    _register(service, status=AccountStatus.SUSPENDED)

    result = service.authenticate(LOGIN, PASSWORD)

    assert isinstance(result, AuthFailure)
    assert result.kind is AuthErrorKind.ACCOUNT_NOT_ELIGIBLE
    assert result.reason == "account_suspended"


def test_reuse_of_rotated_token_revokes_every_session(
    service: AuthService, sqlite_store: SqliteAuthRepository, clock
) -> None:
    principal_id = _register(service)
    first = _login(service)
    other_device = _login(service)
    rotated = service.refresh(first.tokens.refresh_token)
    assert isinstance(rotated, AuthSession)

    replay = service.refresh(first.tokens.refresh_token)

    assert isinstance(replay, AuthFailure)
    assert replay.kind is AuthErrorKind.TOKEN_REUSE_DETECTED
    assert replay.public_kind() is AuthErrorKind.INVALID_OR_EXPIRED_TOKEN
    assert sqlite_store.list_active_sessions(principal_id, clock.now) == []
    assert isinstance(service.refresh(rotated.tokens.refresh_token), AuthFailure)
    assert isinstance(service.refresh(other_device.tokens.refresh_token), AuthFailure)
    events = [e.event_type for e in service.list_events(principal_id)]
    assert AuthEventType.REUSE_DETECTED in events


def test_reuse_without_mass_revocation_when_disabled(
    sqlite_store: SqliteAuthRepository, keys: KeyConfig, verifier: PasswordVerifier, clock
) -> None:
    service = AuthService(
        sqlite_store,
        AuthPolicy(revoke_all_on_reuse=False),
        keys,
        verifier=verifier,
        clock=clock,
    )
    _register(service)
    first = _login(service)
    rotated = service.refresh(first.tokens.refresh_token)
    assert isinstance(rotated, AuthSession)

    replay = service.refresh(first.tokens.refresh_token)

    assert isinstance(replay, AuthFailure)
    assert replay.kind is AuthErrorKind.TOKEN_REUSE_DETECTED
    assert isinstance(service.refresh(rotated.tokens.refresh_token), AuthSession)


def test_expired_refresh_token_is_plain_invalid(service: AuthService, clock) -> None:
    _register(service)
    session = _login(service)

    clock.now = session.tokens.refresh_expires_at
    result = service.refresh(session.tokens.refresh_token)

    assert isinstance(result, AuthFailure)
    assert result.kind is AuthErrorKind.INVALID_OR_EXPIRED_TOKEN
    assert result.reason == "session_expired"


@pytest.mark.parametrize("token", ["", "never-issued-token"])
def test_unknown_refresh_token_rejected(service: AuthService, token: str) -> None:
    result = service.refresh(token)

    assert isinstance(result, AuthFailure)
    assert result.kind is AuthErrorKind.INVALID_OR_EXPIRED_TOKEN


def test_refresh_without_rotation_reuses_refresh_token(
    sqlite_store: SqliteAuthRepository, keys: KeyConfig, verifier: PasswordVerifier, clock
) -> None:
    service = AuthService(
        sqlite_store,
        AuthPolicy(rotate_on_refresh=False),
        keys,
        verifier=verifier,
        clock=clock,
    )
    _register(service)
    session = _login(service)

    clock.advance(minutes=5)
    first = service.refresh(session.tokens.refresh_token)
    second = service.refresh(session.tokens.refresh_token)

    assert isinstance(first, AuthSession) and isinstance(second, AuthSession)
    assert first.session_id == second.session_id == session.session_id
    assert first.tokens.refresh_token == session.tokens.refresh_token
    assert sqlite_store.get_session(session.session_id).last_activity_at == clock.now


def test_refresh_after_suspension_fails(service: AuthService) -> None:
    principal_id = _register(service)
    session = _login(service)

    service.set_account_status(principal_id, AccountStatus.SUSPENDED)
    result = service.refresh(session.tokens.refresh_token)

    assert isinstance(result, AuthFailure)
    assert result.public_kind() is AuthErrorKind.INVALID_OR_EXPIRED_TOKEN


def test_verify_access_token_makes_no_store_calls(
    sqlite_store: SqliteAuthRepository,
    policy: AuthPolicy,
    keys: KeyConfig,
    verifier: PasswordVerifier,
    clock,
) -> None:
    counting = _CountingStore(sqlite_store)
    service = AuthService(counting, policy, keys, verifier=verifier, clock=clock)
    _register(service)
    session = _login(service)
    counting.calls.clear()

    claims = service.verify_access_token(session.tokens.access_token)
    rejected = service.verify_access_token("not-a-token")

    assert isinstance(claims, AccessClaims)
    assert claims.session_id == session.session_id
    assert isinstance(rejected, AuthFailure)
    assert counting.calls == []


def test_access_token_expires_after_ttl_plus_skew(service: AuthService, clock) -> None:
    _register(service)
    session = _login(service)

    clock.now = session.tokens.access_expires_at + timedelta(seconds=61)
    result = service.verify_access_token(session.tokens.access_token)

    assert isinstance(result, AuthFailure)
    assert result.kind is AuthErrorKind.INVALID_OR_EXPIRED_TOKEN


def test_single_success_write_conflict_is_retried(
    sqlite_store: SqliteAuthRepository,
    policy: AuthPolicy,
    keys: KeyConfig,
    verifier: PasswordVerifier,
    clock,
) -> None:
    conflicting = _ConflictingStore(sqlite_store, conflicts=1)
    service = AuthService(conflicting, policy, keys, verifier=verifier, clock=clock)
    principal_id = _register(service)
    service.authenticate(LOGIN, "wrong")

    result = service.authenticate(LOGIN, PASSWORD)
    stored = sqlite_store.get_principal(principal_id)

    assert isinstance(result, AuthSession)
    assert conflicting.calls.count("compare_and_set_principal") == 2
    assert stored is not None and stored.failed_attempts == 0


def test_failed_attempt_is_counted_in_one_atomic_update(
    sqlite_store: SqliteAuthRepository,
    policy: AuthPolicy,
    keys: KeyConfig,
    verifier: PasswordVerifier,
    clock,
) -> None:
    conflicting = _ConflictingStore(sqlite_store, conflicts=2)
    service = AuthService(conflicting, policy, keys, verifier=verifier, clock=clock)
    principal_id = _register(service)

    result = service.authenticate(LOGIN, "wrong")
    stored = sqlite_store.get_principal(principal_id)

    assert isinstance(result, AuthFailure)
    assert result.reason == "password_mismatch"
    assert "compare_and_set_principal" not in conflicting.calls
    assert conflicting.calls.count("update_principal") == 1
    assert stored is not None and stored.failed_attempts == 1 and stored.version == 1


def test_repeated_write_conflict_returns_generic_failure(
    sqlite_store: SqliteAuthRepository,
    policy: AuthPolicy,
    keys: KeyConfig,
    verifier: PasswordVerifier,
    clock,
) -> None:
    conflicting = _ConflictingStore(sqlite_store, conflicts=2)
    service = AuthService(conflicting, policy, keys, verifier=verifier, clock=clock)
    _register(service)

    result = service.authenticate(LOGIN, PASSWORD)

    assert isinstance(result, AuthFailure)
    assert result.kind is AuthErrorKind.INVALID_CREDENTIALS
    assert result.reason == "write_conflict"


def test_logout_revokes_presented_session(service: AuthService) -> None:
    _register(service)
    session = _login(service)

    assert service.logout(session.tokens.refresh_token) is True
    assert service.logout(session.tokens.refresh_token) is False
    assert service.logout("unknown-token") is False
    assert service.logout(None) is False
    assert isinstance(service.refresh(session.tokens.refresh_token), AuthFailure)


def test_revoke_session_checks_owner(service: AuthService) -> None:
    _register(service)
    session = _login(service)

    assert service.revoke_session(session.session_id, principal_id="someone-else") is False
    assert service.revoke_session(session.session_id, principal_id=session.principal.principal_id)
    assert service.revoke_session(session.session_id) is False
    assert service.revoke_session("missing") is False


def test_revoke_principal_sessions_counts(service: AuthService) -> None:
    principal_id = _register(service)
    _login(service)
    _login(service)

    assert service.revoke_principal_sessions(principal_id, reason="admin_revoked") == 2
    assert service.list_sessions(principal_id) == []


def test_change_password_revokes_sessions(service: AuthService) -> None:
    principal_id = _register(service)
    session = _login(service)

    rejected = service.change_password(principal_id, "wrong", "N3wPassword")
    changed = service.change_password(principal_id, PASSWORD, "N3wPassword")

    assert isinstance(rejected, AuthFailure)
    assert rejected.kind is AuthErrorKind.INVALID_CREDENTIALS
    assert not isinstance(changed, AuthFailure)
    assert isinstance(service.refresh(session.tokens.refresh_token), AuthFailure)
    assert isinstance(service.authenticate(LOGIN, PASSWORD), AuthFailure)
    assert isinstance(service.authenticate(LOGIN, "N3wPassword"), AuthSession)


def test_wrong_current_password_counts_toward_lockout(
    service: AuthService, sqlite_store: SqliteAuthRepository, verifier: PasswordVerifier
) -> None:
    principal_id = _register(service)

    guesses = [
        service.change_password(principal_id, f"guess-{i}", "N3wPassword") for i in range(5)
    ]
    correct = service.change_password(principal_id, PASSWORD, "N3wPassword")
    login = service.authenticate(LOGIN, PASSWORD)
    stored = sqlite_store.get_principal(principal_id)

    assert [g.kind for g in guesses] == [AuthErrorKind.INVALID_CREDENTIALS] * 5
    assert isinstance(correct, AuthFailure)
    assert correct.kind is AuthErrorKind.ACCOUNT_LOCKED
    assert isinstance(login, AuthFailure)
    assert login.kind is AuthErrorKind.ACCOUNT_LOCKED
    assert stored is not None
    assert stored.failed_attempts == 5
    assert stored.locked_until is not None
    assert verifier.verify(PASSWORD, stored.password_hash) is True


def test_register_normalizes_and_rejects_duplicates(service: AuthService) -> None:
    summary = service.register("  New.User@Example.COM ", PASSWORD)

    assert summary.login_key == "new.user@example.com"
    assert summary.role == "member"
    assert summary.email_verified is False
    with pytest.raises(PrincipalExistsError):
        service.register("new.user@example.com", PASSWORD)


def test_mark_email_verified_enables_login(
    sqlite_store: SqliteAuthRepository, keys: KeyConfig, verifier: PasswordVerifier, clock
) -> None:
    service = _verification_required(sqlite_store, keys, verifier, clock)
    principal_id = _register(service, email_verified=False)
    assert isinstance(service.authenticate(LOGIN, PASSWORD), AuthFailure)

    summary = service.mark_email_verified(principal_id)

    assert summary.email_verified is True
    assert isinstance(service.authenticate(LOGIN, PASSWORD), AuthSession)


def test_admin_operations_on_unknown_principal_raise(service: AuthService) -> None:
    with pytest.raises(PrincipalNotFoundError):
        service.mark_email_verified("missing")
    with pytest.raises(PrincipalNotFoundError):
        service.set_account_status("missing", AccountStatus.SUSPENDED)


def test_bootstrap_admin_is_idempotent(service: AuthService) -> None:
    first = service.bootstrap_admin("admin@example.com", "Adm1nPassword")
    second = service.bootstrap_admin("ADMIN@example.com", "other-password-1")

    assert first is not None and second is not None
    assert first.principal_id == second.principal_id
    assert first.role == "admin"
    assert first.email_verified is True
    assert service.bootstrap_admin("", "") is None


def test_outdated_hash_is_replaced_on_login(
    sqlite_store: SqliteAuthRepository,
    policy: AuthPolicy,
    keys: KeyConfig,
    verifier: PasswordVerifier,
    clock,
) -> None:
    legacy = AuthService(sqlite_store, policy, keys, verifier=verifier, clock=clock)
    principal_id = _register(legacy)
    old_hash = sqlite_store.get_principal(principal_id).password_hash
    stronger = PasswordVerifier(time_cost=2, memory_cost=16, parallelism=1)
    current = AuthService(sqlite_store, policy, keys, verifier=stronger, clock=clock)

    assert isinstance(current.authenticate(LOGIN, PASSWORD), AuthSession)
    new_hash = sqlite_store.get_principal(principal_id).password_hash

    assert new_hash != old_hash
    assert stronger.needs_rehash(new_hash) is False
    assert stronger.verify(PASSWORD, new_hash) is True


def test_list_sessions_marks_current_and_hides_tokens(service: AuthService) -> None:
    principal_id = _register(service)
    client = ClientInfo(ip_address="192.0.2.7", user_agent="pytest-agent")
    current = service.authenticate(LOGIN, PASSWORD, client)
    assert isinstance(current, AuthSession)
    _login(service)

    views = service.list_sessions(principal_id, current.session_id)

    assert len(views) == 2
    marked = [v for v in views if v.current]
    assert [v.session_id for v in marked] == [current.session_id]
    assert marked[0].ip_address == "192.0.2.7"
    assert "fingerprint" not in marked[0].model_dump()


def test_events_record_failures_without_raw_login_key(service: AuthService) -> None:
    principal_id = _register(service)
    service.authenticate(LOGIN, "wrong", ClientInfo(ip_address="198.51.100.1"))
    _login(service)

    events = service.list_events(principal_id)
    failed = [e for e in events if e.event_type is AuthEventType.LOGIN_FAILED]

    assert events[0].event_type is AuthEventType.LOGIN_SUCCEEDED
    assert len(failed) == 1
    assert failed[0].login_key_digest == login_key_digest(LOGIN)
    assert failed[0].ip_address == "198.51.100.1"
    assert failed[0].reason == "password_mismatch"
    assert all(LOGIN.lower() not in str(e.model_dump()) for e in events)
