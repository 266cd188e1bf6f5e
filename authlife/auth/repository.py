"""Credential, session and security-event persistence."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Iterator, Protocol

from pymongo.errors import PyMongoError

from authlife.auth.errors import PrincipalExistsError
from authlife.auth.models import Principal, SecurityEvent, SessionRecord
from authlife.auth.mongo_repository import MongoAuthRepository
from authlife.core.clock import from_storage, to_storage
from authlife.core.config import StorageConfig
from authlife.core.migrations import apply_migrations

LOGGER = logging.getLogger(__name__)


class AuthStore(Protocol):
    """Storage operations the engine relies on."""

    def insert_principal(self, principal: Principal) -> None: ...

    def get_principal(self, principal_id: str) -> Principal | None: ...

    def get_principal_by_login_key(self, login_key: str) -> Principal | None: ...

    def compare_and_set_principal(
        self, principal: Principal, expected_version: int
    ) -> bool: ...

    def update_principal(
        self, principal_id: str, change: Callable[[Principal], Principal]
    ) -> Principal | None: ...

    def insert_session(self, record: SessionRecord) -> None: ...

    def get_session(self, session_id: str) -> SessionRecord | None: ...

    def get_session_by_fingerprint(self, fingerprint: str) -> SessionRecord | None: ...

    def revoke_session_if_active(
        self, session_id: str, now: datetime, reason: str
    ) -> bool: ...

    def rotate_session(
        self, old_session_id: str, new_record: SessionRecord, now: datetime
    ) -> bool: ...

    def revoke_sessions_for_principal(
        self,
        principal_id: str,
        now: datetime,
        reason: str,
        except_session_id: str | None = None,
    ) -> int: ...

    def touch_session(self, session_id: str, now: datetime) -> None: ...

    def list_active_sessions(
        self, principal_id: str, now: datetime
    ) -> list[SessionRecord]: ...

    def delete_sessions_before(self, cutoff: datetime) -> int: ...

    def append_event(self, event: SecurityEvent) -> None: ...

    def list_events(self, principal_id: str, limit: int = 50) -> list[SecurityEvent]: ...

    def close(self) -> None: ...


PRINCIPAL_COLUMNS = (
    "principal_id",
    "login_key",
    "password_hash",
    "role",
    "status",
    "email_verified",
    "failed_attempts",
    "failure_window_start",
    "locked_until",
    "last_login_at",
    "created_at",
    "updated_at",
    "version",
)
SESSION_COLUMNS = (
    "session_id",
    "principal_id",
    "fingerprint",
    "parent_session_id",
    "expires_at",
    "revoked",
    "revoked_at",
    "revoked_reason",
    "created_at",
    "last_activity_at",
    "ip_address",
    "user_agent",
)
PRINCIPAL_TIMESTAMPS = {
    "failure_window_start",
    "locked_until",
    "last_login_at",
    "created_at",
    "updated_at",
}
SESSION_TIMESTAMPS = {"expires_at", "revoked_at", "created_at", "last_activity_at"}

PRINCIPAL_UPDATE_SQL = """
UPDATE auth_principals SET
  password_hash = :password_hash,
  role = :role,
  status = :status,
  email_verified = :email_verified,
  failed_attempts = :failed_attempts,
  failure_window_start = :failure_window_start,
  locked_until = :locked_until,
  last_login_at = :last_login_at,
  updated_at = :updated_at,
  version = version + 1
WHERE principal_id = :principal_id AND version = :expected_version
"""


def _to_row(values: dict[str, Any], timestamps: set[str]) -> dict[str, Any]:
    row: dict[str, Any] = {}
    for key, value in values.items():
        if key in timestamps:
            row[key] = to_storage(value)
        elif isinstance(value, bool):
            row[key] = int(value)
        elif isinstance(value, Enum):
            row[key] = value.value
        else:
            row[key] = value
    return row


def _from_row(row: sqlite3.Row, timestamps: set[str]) -> dict[str, Any]:
    return {
        key: from_storage(row[key]) if key in timestamps else row[key]
        for key in row.keys()
    }


class SqliteAuthRepository:
    """SQLite-backed credential and session store.

    One connection is shared across threads behind a lock; every
    read-then-write runs inside ``BEGIN IMMEDIATE`` so concurrent
    processes on the same file serialize on the write lock.
    """

    def __init__(self, database_path: Path) -> None:
        """Open database and apply pending schema migrations."""
        apply_migrations(database_path)
        self._connection = sqlite3.connect(
            str(database_path),
            check_same_thread=False,
            isolation_level=None,
            timeout=5.0,
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = Lock()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            try:
                yield cursor
            except BaseException:
                cursor.execute("ROLLBACK")
                raise
            cursor.execute("COMMIT")

    def _fetch_one(self, sql: str, params: tuple[Any, ...]) -> sqlite3.Row | None:
        with self._lock:
            return self._connection.execute(sql, params).fetchone()

    def _fetch_all(self, sql: str, params: tuple[Any, ...]) -> list[sqlite3.Row]:
        with self._lock:
            return self._connection.execute(sql, params).fetchall()

    # Principals

    def insert_principal(self, principal: Principal) -> None:
        """Insert new principal; login key must be unused."""
        row = _to_row(principal.model_dump(), PRINCIPAL_TIMESTAMPS)
        placeholders = ", ".join(f":{column}" for column in PRINCIPAL_COLUMNS)
        try:
            with self._transaction() as cursor:
                cursor.execute(
                    f"INSERT INTO auth_principals({', '.join(PRINCIPAL_COLUMNS)}) "
                    f"VALUES ({placeholders})",
                    row,
                )
        except sqlite3.IntegrityError as exc:
            raise PrincipalExistsError(principal.login_key) from exc

    def get_principal(self, principal_id: str) -> Principal | None:
        """Get principal by id."""
        row = self._fetch_one(
            "SELECT * FROM auth_principals WHERE principal_id = ?", (principal_id,)
        )
        return Principal.model_validate(_from_row(row, PRINCIPAL_TIMESTAMPS)) if row else None

    def get_principal_by_login_key(self, login_key: str) -> Principal | None:
        """Get principal by normalized login key."""
        row = self._fetch_one(
            "SELECT * FROM auth_principals WHERE login_key = ?",
            (login_key.strip().lower(),),
        )
        return Principal.model_validate(_from_row(row, PRINCIPAL_TIMESTAMPS)) if row else None

    def compare_and_set_principal(
        self, principal: Principal, expected_version: int
    ) -> bool:
        """Write mutable principal fields only if version is unchanged."""
        row = _to_row(principal.model_dump(), PRINCIPAL_TIMESTAMPS)
        row["expected_version"] = expected_version
        with self._transaction() as cursor:
            cursor.execute(PRINCIPAL_UPDATE_SQL, row)
            return cursor.rowcount == 1

    def update_principal(
        self, principal_id: str, change: Callable[[Principal], Principal]
    ) -> Principal | None:
        """Read, apply ``change`` and write back under one write lock.

        ``change`` runs while the lock is held and must not call the store.
        """
        with self._transaction() as cursor:
            row = cursor.execute(
                "SELECT * FROM auth_principals WHERE principal_id = ?", (principal_id,)
            ).fetchone()
            if row is None:
                return None
            current = Principal.model_validate(_from_row(row, PRINCIPAL_TIMESTAMPS))
            updated = change(current)
            values = _to_row(updated.model_dump(), PRINCIPAL_TIMESTAMPS)
            values["principal_id"] = principal_id
            values["expected_version"] = current.version
            cursor.execute(PRINCIPAL_UPDATE_SQL, values)
            return updated.model_copy(update={"version": current.version + 1})

    # Sessions

    def _insert_session(self, cursor: sqlite3.Cursor, record: SessionRecord) -> None:
        placeholders = ", ".join(f":{column}" for column in SESSION_COLUMNS)
        cursor.execute(
            f"INSERT INTO auth_sessions({', '.join(SESSION_COLUMNS)}) VALUES ({placeholders})",
            _to_row(record.model_dump(), SESSION_TIMESTAMPS),
        )

    def insert_session(self, record: SessionRecord) -> None:
        """Persist a new session row."""
        with self._transaction() as cursor:
            self._insert_session(cursor, record)

    def get_session(self, session_id: str) -> SessionRecord | None:
        """Get session by id regardless of state."""
        row = self._fetch_one(
            "SELECT * FROM auth_sessions WHERE session_id = ?", (session_id,)
        )
        return SessionRecord.model_validate(_from_row(row, SESSION_TIMESTAMPS)) if row else None

    def get_session_by_fingerprint(self, fingerprint: str) -> SessionRecord | None:
        """Get session by refresh-token fingerprint regardless of state."""
        row = self._fetch_one(
            "SELECT * FROM auth_sessions WHERE fingerprint = ?", (fingerprint,)
        )
        return SessionRecord.model_validate(_from_row(row, SESSION_TIMESTAMPS)) if row else None

    @staticmethod
    def _revoke_if_active(
        cursor: sqlite3.Cursor, session_id: str, now: datetime, reason: str
    ) -> bool:
        cursor.execute(
            """
            UPDATE auth_sessions
            SET revoked = 1, revoked_at = ?, revoked_reason = ?
            WHERE session_id = ? AND revoked = 0
            """,
            (to_storage(now), reason, session_id),
        )
        return cursor.rowcount == 1

    def revoke_session_if_active(
        self, session_id: str, now: datetime, reason: str
    ) -> bool:
        """Revoke session; returns False when it was already revoked."""
        with self._transaction() as cursor:
            return self._revoke_if_active(cursor, session_id, now, reason)

    def rotate_session(
        self, old_session_id: str, new_record: SessionRecord, now: datetime
    ) -> bool:
        """Revoke old session and insert its successor in one transaction."""
        try:
            with self._transaction() as cursor:
                if not self._revoke_if_active(cursor, old_session_id, now, "rotated"):
                    return False
                self._insert_session(cursor, new_record)
        except sqlite3.IntegrityError:
            return False
        return True

    def revoke_sessions_for_principal(
        self,
        principal_id: str,
        now: datetime,
        reason: str,
        except_session_id: str | None = None,
    ) -> int:
        """Revoke every unrevoked session of a principal."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE auth_sessions
                SET revoked = 1, revoked_at = ?, revoked_reason = ?
                WHERE principal_id = ? AND revoked = 0 AND session_id != ?
                """,
                (to_storage(now), reason, principal_id, except_session_id or ""),
            )
            return cursor.rowcount

    def touch_session(self, session_id: str, now: datetime) -> None:
        """Update last activity timestamp."""
        with self._transaction() as cursor:
            cursor.execute(
                "UPDATE auth_sessions SET last_activity_at = ? WHERE session_id = ?",
                (to_storage(now), session_id),
            )

    def list_active_sessions(self, principal_id: str, now: datetime) -> list[SessionRecord]:
        """Return unrevoked, unexpired sessions newest first."""
        rows = self._fetch_all(
            """
            SELECT * FROM auth_sessions
            WHERE principal_id = ? AND revoked = 0 AND expires_at > ?
            ORDER BY created_at DESC
            """,
            (principal_id, to_storage(now)),
        )
        return [SessionRecord.model_validate(_from_row(row, SESSION_TIMESTAMPS)) for row in rows]

    def delete_sessions_before(self, cutoff: datetime) -> int:
        """Physically remove sessions revoked or expired before ``cutoff``."""
        stamp = to_storage(cutoff)
        with self._transaction() as cursor:
            cursor.execute(
                """
                DELETE FROM auth_sessions
                WHERE (revoked = 1 AND revoked_at < ?) OR expires_at < ?
                """,
                (stamp, stamp),
            )
            return cursor.rowcount

    # Events

    def append_event(self, event: SecurityEvent) -> None:
        """Append security event."""
        row = _to_row(event.model_dump(), {"created_at"})
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO auth_events(
                  event_type, principal_id, login_key_digest, session_id,
                  ip_address, user_agent, reason, created_at
                ) VALUES (
                  :event_type, :principal_id, :login_key_digest, :session_id,
                  :ip_address, :user_agent, :reason, :created_at
                )
                """,
                row,
            )

    def list_events(self, principal_id: str, limit: int = 50) -> list[SecurityEvent]:
        """Return most recent events for a principal."""
        rows = self._fetch_all(
            """
            SELECT event_type, principal_id, login_key_digest, session_id,
                   ip_address, user_agent, reason, created_at
            FROM auth_events
            WHERE principal_id = ?
            ORDER BY created_at DESC, event_id DESC
            LIMIT ?
            """,
            (principal_id, max(1, int(limit))),
        )
        return [SecurityEvent.model_validate(_from_row(row, {"created_at"})) for row in rows]

    def close(self) -> None:
        """Close SQLite resources."""
        with self._lock:
            self._connection.close()


def build_auth_store(config: StorageConfig, app_root: Path) -> AuthStore:
    """Open MongoDB store when configured and reachable, SQLite otherwise."""
    if config.mongodb_uri:
        try:
            return MongoAuthRepository.connect(config.mongodb_uri, config.mongodb_db)
        except PyMongoError as exc:
            LOGGER.warning(
                "mongodb_unavailable_falling_back_to_sqlite",
                extra={"reason": exc.__class__.__name__},
            )
    database_path = (app_root / config.sqlite_path).resolve()
    database_path.parent.mkdir(parents=True, exist_ok=True)
    LOGGER.info("auth_store_sqlite", extra={"path": str(database_path)})
    return SqliteAuthRepository(database_path)
