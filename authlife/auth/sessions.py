"""Session registry: one record per refresh-token lineage link."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from authlife.auth.models import ClientInfo, SessionRecord
from authlife.auth.repository import AuthStore

LOGGER = logging.getLogger(__name__)


class SessionRegistry:
    """Create, look up, rotate and revoke refresh sessions by fingerprint."""

    def __init__(self, store: AuthStore) -> None:
        """Initialize registry over a session store."""
        self._store = store

    def create(
        self,
        principal_id: str,
        fingerprint: str,
        expires_at: datetime,
        now: datetime,
        client: ClientInfo | None = None,
    ) -> str:
        """Persist a new root session and return its id."""
        record = self._new_record(principal_id, fingerprint, expires_at, now, client)
        self._store.insert_session(record)
        return record.session_id

    def find_active(self, fingerprint: str, now: datetime) -> SessionRecord | None:
        """Return the session only if it is neither revoked nor expired."""
        record = self._store.get_session_by_fingerprint(fingerprint)
        if record is None or not record.is_active(now):
            return None
        return record

    def find_any(self, fingerprint: str) -> SessionRecord | None:
        """Return the session for a fingerprint in any state."""
        return self._store.get_session_by_fingerprint(fingerprint)

    def get(self, session_id: str) -> SessionRecord | None:
        return self._store.get_session(session_id)

    def revoke(self, session_id: str, now: datetime, reason: str = "revoked") -> bool:
        """Revoke one session; False if it was already revoked."""
        return self._store.revoke_session_if_active(session_id, now, reason)

    def touch(self, session_id: str, now: datetime) -> None:
        self._store.touch_session(session_id, now)

    def rotate(
        self,
        current: SessionRecord,
        fingerprint: str,
        expires_at: datetime,
        now: datetime,
        client: ClientInfo | None = None,
    ) -> SessionRecord | None:
        """Atomically replace ``current`` with a child session.

        Returns None when another caller already revoked or rotated
        ``current``.
        """
        child = self._new_record(
            current.principal_id,
            fingerprint,
            expires_at,
            now,
            client,
            parent_session_id=current.session_id,
        )
        if not self._store.rotate_session(current.session_id, child, now):
            return None
        return child

    def revoke_all_for_principal(
        self,
        principal_id: str,
        now: datetime,
        reason: str,
        except_session_id: str | None = None,
    ) -> int:
        """Revoke every live session of a principal and return the count."""
        return self._store.revoke_sessions_for_principal(
            principal_id, now, reason, except_session_id
        )

    def list_active(self, principal_id: str, now: datetime) -> list[SessionRecord]:
        return self._store.list_active_sessions(principal_id, now)

    def sweep(self, now: datetime, retention: timedelta) -> int:
        """Delete sessions revoked or expired more than ``retention`` ago."""
        removed = self._store.delete_sessions_before(now - retention)
        if removed:
            LOGGER.info("sessions_swept", extra={"revoked_count": removed})
        return removed

    @staticmethod
    def _new_record(
        principal_id: str,
        fingerprint: str,
        expires_at: datetime,
        now: datetime,
        client: ClientInfo | None,
        parent_session_id: str | None = None,
    ) -> SessionRecord:
        client = client or ClientInfo()
        return SessionRecord(
            session_id=uuid.uuid4().hex,
            principal_id=principal_id,
            fingerprint=fingerprint,
            parent_session_id=parent_session_id,
            expires_at=expires_at,
            created_at=now,
            last_activity_at=now,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
