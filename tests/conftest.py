from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator

import pytest

from authlife.auth.repository import SqliteAuthRepository
from authlife.auth.service import AuthService
from authlife.core.config import AuthPolicy, KeyConfig
from authlife.core.security import PasswordVerifier

START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
PASSWORD = "Sw0rd!23"


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def cheap_verifier() -> PasswordVerifier:
    return PasswordVerifier(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def verifier() -> PasswordVerifier:
    return cheap_verifier()


@pytest.fixture
def policy() -> AuthPolicy:
    return AuthPolicy()


@pytest.fixture
def keys() -> KeyConfig:
    return KeyConfig(active_kid="k1", keys={"k1": "test-signing-secret-k1-0123456789abcdef"})


@pytest.fixture
def sqlite_store(tmp_path: Path) -> Iterator[SqliteAuthRepository]:
    store = SqliteAuthRepository(tmp_path / "auth.db")
    yield store
    store.close()


@pytest.fixture
def service(
    sqlite_store: SqliteAuthRepository,
    policy: AuthPolicy,
    keys: KeyConfig,
    verifier: PasswordVerifier,
    clock: FakeClock,
) -> AuthService:
    return AuthService(sqlite_store, policy, keys, verifier=verifier, clock=clock)
