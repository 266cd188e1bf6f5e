"""MongoDB implementation of the credential and session store."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from pymongo import DESCENDING, MongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from authlife.auth.errors import ConcurrentUpdateError, PrincipalExistsError
from authlife.auth.models import Principal, SecurityEvent, SessionRecord
from authlife.core.mongo_migrations import EVENTS, PRINCIPALS, SESSIONS, apply_mongo_migrations

LOGGER = logging.getLogger(__name__)

# Compare-and-set rounds before a read-modify-write gives up.
PRINCIPAL_UPDATE_ATTEMPTS = 25

PRINCIPAL_MUTABLE_FIELDS = (
    "password_hash",
    "role",
    "status",
    "email_verified",
    "failed_attempts",
    "failure_window_start",
    "locked_until",
    "last_login_at",
    "updated_at",
)


def ceil_to_millisecond(value: datetime | None) -> datetime | None:
    """Round up to BSON date precision so stored deadlines never move earlier."""
    if value is None:
        return None
    remainder = value.microsecond % 1000
    if remainder:
        return value + timedelta(microseconds=1000 - remainder)
    return value


def _principal_doc(principal: Principal, fields: set[str] | None = None) -> dict[str, Any]:
    doc = principal.model_dump(include=fields)
    doc["status"] = str(principal.status)
    doc["locked_until"] = ceil_to_millisecond(principal.locked_until)
    return doc


def _session_doc(record: SessionRecord) -> dict[str, Any]:
    doc = record.model_dump()
    doc["expires_at"] = ceil_to_millisecond(record.expires_at)
    return doc


class MongoAuthRepository:
    """Store backed by three MongoDB collections.

    Conditional writes use ``update_one`` filters on ``version`` and
    ``revoked`` so only one concurrent writer can win. Rotation is two
    writes; the revoke is the compare-and-set, and the unique partial index
    on ``parent_session_id`` keeps a parent from gaining a second child.
    """

    def __init__(self, db: Any, client: MongoClient | None = None) -> None:
        """Bind collections and apply pending index migrations."""
        self._client = client
        apply_mongo_migrations(db)
        self._principals = db[PRINCIPALS]
        self._sessions = db[SESSIONS]
        self._events = db[EVENTS]

    @classmethod
    def connect(cls, uri: str, db_name: str) -> "MongoAuthRepository":
        """Connect to MongoDB and fail fast if the server is unreachable."""
        client: MongoClient = MongoClient(uri, serverSelectionTimeoutMS=3000, tz_aware=True)
        try:
            client.admin.command("ping")
        except PyMongoError:
            client.close()
            raise
        return cls(client[db_name], client=client)

    # Principals

    def insert_principal(self, principal: Principal) -> None:
        """Insert new principal; login key must be unused."""
        try:
            self._principals.insert_one(_principal_doc(principal))
        except DuplicateKeyError as exc:
            raise PrincipalExistsError(principal.login_key) from exc

    def get_principal(self, principal_id: str) -> Principal | None:
        """Get principal by id."""
        doc = self._principals.find_one({"principal_id": principal_id}, {"_id": 0})
        return Principal.model_validate(doc) if doc else None

    def get_principal_by_login_key(self, login_key: str) -> Principal | None:
        """Get principal by normalized login key."""
        doc = self._principals.find_one(
            {"login_key": login_key.strip().lower()}, {"_id": 0}
        )
        return Principal.model_validate(doc) if doc else None

    def compare_and_set_principal(
        self, principal: Principal, expected_version: int
    ) -> bool:
        """Write mutable principal fields only if version is unchanged."""
        values = _principal_doc(principal, set(PRINCIPAL_MUTABLE_FIELDS))
        values["version"] = expected_version + 1
        result = self._principals.update_one(
            {"principal_id": principal.principal_id, "version": expected_version},
            {"$set": values},
        )
        return result.matched_count == 1

    def update_principal(
        self, principal_id: str, change: Callable[[Principal], Principal]
    ) -> Principal | None:
        """Apply ``change`` to the latest document, re-reading until a write lands."""
        for _ in range(PRINCIPAL_UPDATE_ATTEMPTS):
            current = self.get_principal(principal_id)
            if current is None:
                return None
            updated = change(current)
            if self.compare_and_set_principal(updated, current.version):
                return updated.model_copy(
                    update={
                        "version": current.version + 1,
                        "locked_until": ceil_to_millisecond(updated.locked_until),
                    }
                )
        LOGGER.warning("principal_update_exhausted", extra={"principal_id": principal_id})
        raise ConcurrentUpdateError(principal_id)

    # Sessions

    def insert_session(self, record: SessionRecord) -> None:
        """Persist a new session document."""
        self._sessions.insert_one(_session_doc(record))

    def get_session(self, session_id: str) -> SessionRecord | None:
        """Get session by id regardless of state."""
        doc = self._sessions.find_one({"session_id": session_id}, {"_id": 0})
        return SessionRecord.model_validate(doc) if doc else None

    def get_session_by_fingerprint(self, fingerprint: str) -> SessionRecord | None:
        """Get session by refresh-token fingerprint regardless of state."""
        doc = self._sessions.find_one({"fingerprint": fingerprint}, {"_id": 0})
        return SessionRecord.model_validate(doc) if doc else None

    def revoke_session_if_active(
        self, session_id: str, now: datetime, reason: str
    ) -> bool:
        """Revoke session; returns False when it was already revoked."""
        result = self._sessions.update_one(
            {"session_id": session_id, "revoked": False},
            {"$set": {"revoked": True, "revoked_at": now, "revoked_reason": reason}},
        )
        return result.matched_count == 1

    def rotate_session(
        self, old_session_id: str, new_record: SessionRecord, now: datetime
    ) -> bool:
        """Revoke old session, then insert its successor."""
        if not self.revoke_session_if_active(old_session_id, now, "rotated"):
            return False
        try:
            self._sessions.insert_one(_session_doc(new_record))
        except DuplicateKeyError:
            LOGGER.warning(
                "session_rotation_child_conflict",
                extra={"session_id": old_session_id},
            )
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
        query: dict[str, Any] = {"principal_id": principal_id, "revoked": False}
        if except_session_id:
            query["session_id"] = {"$ne": except_session_id}
        result = self._sessions.update_many(
            query,
            {"$set": {"revoked": True, "revoked_at": now, "revoked_reason": reason}},
        )
        return int(result.modified_count)

    def touch_session(self, session_id: str, now: datetime) -> None:
        """Update last activity timestamp."""
        self._sessions.update_one(
            {"session_id": session_id}, {"$set": {"last_activity_at": now}}
        )

    def list_active_sessions(self, principal_id: str, now: datetime) -> list[SessionRecord]:
        """Return unrevoked, unexpired sessions newest first."""
        cursor = self._sessions.find(
            {"principal_id": principal_id, "revoked": False, "expires_at": {"$gt": now}},
            {"_id": 0},
        ).sort("created_at", DESCENDING)
        return [SessionRecord.model_validate(doc) for doc in cursor]

    def delete_sessions_before(self, cutoff: datetime) -> int:
        """Physically remove sessions revoked or expired before ``cutoff``."""
        result = self._sessions.delete_many(
            {
                "$or": [
                    {"revoked": True, "revoked_at": {"$lt": cutoff}},
                    {"expires_at": {"$lt": cutoff}},
                ]
            }
        )
        return int(result.deleted_count)

    # Events

    def append_event(self, event: SecurityEvent) -> None:
        """Append security event."""
        doc = event.model_dump()
        doc["event_type"] = str(event.event_type)
        self._events.insert_one(doc)

    def list_events(self, principal_id: str, limit: int = 50) -> list[SecurityEvent]:
        """Return most recent events for a principal."""
        cursor = (
            self._events.find({"principal_id": principal_id}, {"_id": 0})
            .sort("created_at", DESCENDING)
            .limit(max(1, int(limit)))
        )
        return [SecurityEvent.model_validate(doc) for doc in cursor]

    def close(self) -> None:
        """Close the owned client, if any."""
        if self._client is not None:
            self._client.close()
