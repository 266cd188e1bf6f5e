from __future__ import annotations

from datetime import datetime, timedelta, timezone

from authlife.auth.models import ClientInfo
from authlife.auth.repository import SqliteAuthRepository
from authlife.auth.sessions import SessionRegistry

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
EXPIRES = T0 + timedelta(days=14)


def test_create_and_find_active(sqlite_store: SqliteAuthRepository) -> None:
    registry = SessionRegistry(sqlite_store)

    session_id = registry.create(
        "p1", "fp-1", EXPIRES, T0, ClientInfo(ip_address="10.0.0.5", user_agent="pytest")
    )
    found = registry.find_active("fp-1", T0)

    assert found is not None
    assert found.session_id == session_id
    assert found.ip_address == "10.0.0.5"
    assert found.user_agent == "pytest"
    assert found.parent_session_id is None


def test_find_active_hides_expired_and_revoked(sqlite_store: SqliteAuthRepository) -> None:
    registry = SessionRegistry(sqlite_store)
    expired_id = registry.create("p1", "fp-expired", T0 + timedelta(hours=1), T0)
    revoked_id = registry.create("p1", "fp-revoked", EXPIRES, T0)
    registry.revoke(revoked_id, T0, "logout")

    assert registry.find_active("fp-expired", T0 + timedelta(hours=1)) is None
    assert registry.find_active("fp-revoked", T0) is None
    assert registry.find_any("fp-expired").session_id == expired_id
    assert registry.find_any("fp-revoked").revoked is True


def test_rotate_links_child_and_revokes_parent(sqlite_store: SqliteAuthRepository) -> None:
    registry = SessionRegistry(sqlite_store)
    registry.create("p1", "fp-1", EXPIRES, T0)
    parent = registry.find_active("fp-1", T0)
    assert parent is not None

    child = registry.rotate(parent, "fp-2", EXPIRES, T0 + timedelta(minutes=1))
    again = registry.rotate(parent, "fp-3", EXPIRES, T0 + timedelta(minutes=1))

    assert child is not None
    assert child.parent_session_id == parent.session_id
    assert child.principal_id == "p1"
    assert again is None
    assert registry.find_active("fp-1", T0) is None
    assert registry.find_active("fp-2", T0) is not None
    assert registry.get(parent.session_id).revoked_reason == "rotated"


def test_revoked_session_never_reactivated(sqlite_store: SqliteAuthRepository) -> None:
    registry = SessionRegistry(sqlite_store)
    session_id = registry.create("p1", "fp-1", EXPIRES, T0)

    assert registry.revoke(session_id, T0) is True
    registry.touch(session_id, T0 + timedelta(minutes=1))

    assert registry.revoke(session_id, T0) is False
    assert registry.find_active("fp-1", T0 + timedelta(minutes=1)) is None


def test_revoke_all_and_list_active(sqlite_store: SqliteAuthRepository) -> None:
    registry = SessionRegistry(sqlite_store)
    keep = registry.create("p1", "fp-1", EXPIRES, T0)
    registry.create("p1", "fp-2", EXPIRES, T0)
    registry.create("p1", "fp-3", EXPIRES, T0)

    revoked = registry.revoke_all_for_principal("p1", T0, "admin", except_session_id=keep)

    assert revoked == 2
    assert [s.session_id for s in registry.list_active("p1", T0)] == [keep]


def test_sweep_uses_retention_cutoff(sqlite_store: SqliteAuthRepository) -> None:
    registry = SessionRegistry(sqlite_store)
    stale = registry.create("p1", "fp-stale", T0 + timedelta(hours=1), T0)
    fresh = registry.create("p1", "fp-fresh", EXPIRES, T0)

    removed = registry.sweep(T0 + timedelta(days=31), timedelta(days=30))

    assert removed == 1
    assert registry.get(stale) is None
    assert registry.get(fresh) is not None
