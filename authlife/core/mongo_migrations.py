"""Versioned MongoDB index migrations for credential and session collections."""

from __future__ import annotations

import logging
from typing import Any, Callable

from authlife.core.clock import utc_now
from authlife.core.logging import CORRELATION_ID_CTX

MigrationFn = Callable[[Any], None]
LOGGER = logging.getLogger(__name__)

PRINCIPALS = "auth_principals"
SESSIONS = "auth_sessions"
EVENTS = "auth_events"


def _migration_0001_principal_indexes(db: Any) -> None:
    db[PRINCIPALS].create_index("principal_id", unique=True)
    db[PRINCIPALS].create_index("login_key", unique=True)


def _migration_0002_session_indexes(db: Any) -> None:
    db[SESSIONS].create_index("session_id", unique=True)
    db[SESSIONS].create_index("fingerprint", unique=True)
    db[SESSIONS].create_index([("principal_id", 1), ("revoked", 1), ("expires_at", 1)])
    db[SESSIONS].create_index(
        "parent_session_id",
        unique=True,
        partialFilterExpression={"parent_session_id": {"$type": "string"}},
        name="idx_auth_sessions_single_child",
    )


def _migration_0003_event_indexes(db: Any) -> None:
    db[EVENTS].create_index([("principal_id", 1), ("created_at", -1)])


MIGRATIONS: list[tuple[str, MigrationFn]] = [
    ("0001_principal_indexes", _migration_0001_principal_indexes),
    ("0002_session_indexes", _migration_0002_session_indexes),
    ("0003_event_indexes", _migration_0003_event_indexes),
]


def apply_mongo_migrations(db: Any) -> list[str]:
    """Apply pending migrations to the given database handle."""
    migration_collection = db["schema_migrations"]
    migration_collection.create_index("migration_id", unique=True)

    applied_now: list[str] = []
    for migration_id, migration_fn in MIGRATIONS:
        if migration_collection.find_one({"migration_id": migration_id}):
            continue
        migration_fn(db)
        migration_collection.insert_one(
            {
                "migration_id": migration_id,
                "applied_at": utc_now(),
                "correlation_id": CORRELATION_ID_CTX.get(),
            }
        )
        applied_now.append(migration_id)

    if applied_now:
        LOGGER.info("mongo_migrations_applied", extra={"event": ",".join(applied_now)})
    return applied_now
