"""Application configuration loaded from environment variables."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta

LOGGER = logging.getLogger(__name__)

DEV_SIGNING_KID = "dev"
DEV_SIGNING_SECRET = "dev-insecure-signing-secret-change-me-0123456789"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_seconds(name: str, default: int) -> timedelta:
    return timedelta(seconds=int(os.getenv(name, str(default))))


@dataclass(frozen=True)
class AuthPolicy:
    """Lockout thresholds, token lifetimes and rotation policy."""

    failure_threshold: int = 5
    failure_window: timedelta = timedelta(minutes=15)
    lock_duration: timedelta = timedelta(minutes=30)
    access_ttl: timedelta = timedelta(minutes=30)
    refresh_ttl: timedelta = timedelta(days=14)
    rotate_on_refresh: bool = True
    clock_skew: timedelta = timedelta(seconds=60)
    require_verified_email: bool = False
    revoke_all_on_reuse: bool = True

    def __post_init__(self) -> None:
        """Reject policies that would make lockout or expiry meaningless."""
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        for name in ("failure_window", "lock_duration", "access_ttl", "refresh_ttl"):
            if getattr(self, name) <= timedelta(0):
                raise ValueError(f"{name} must be positive")
        if self.clock_skew < timedelta(0):
            raise ValueError("clock_skew must not be negative")
        if self.access_ttl >= self.refresh_ttl:
            raise ValueError("access_ttl must be shorter than refresh_ttl")


@dataclass(frozen=True)
class KeyConfig:
    """Token signing key material with key ids for rotation."""

    active_kid: str
    keys: dict[str, str]
    issuer: str = "authlife"
    algorithm: str = "HS256"

    def __post_init__(self) -> None:
        """Require the active key id to be present in the key set."""
        if self.active_kid not in self.keys:
            raise ValueError(f"active signing key {self.active_kid!r} is not configured")


@dataclass(frozen=True)
class StorageConfig:
    """Credential and session store location."""

    sqlite_path: str = "runtime/auth_state.db"
    mongodb_uri: str = ""
    mongodb_db: str = "authlife"


@dataclass(frozen=True)
class SweepConfig:
    """Background archival of stale session rows."""

    enabled: bool = False
    interval_seconds: float = 3600.0
    retention: timedelta = timedelta(days=30)


@dataclass(frozen=True)
class LoggingConfig:
    """Structured logging configuration."""

    level: str = "INFO"


@dataclass(frozen=True)
class SecurityConfig:
    """API perimeter security settings."""

    cors_allowed_origins: list[str] = field(default_factory=list)
    request_max_bytes: int = 1024 * 1024


@dataclass(frozen=True)
class BootstrapConfig:
    """Initial administrator account."""

    admin_login_key: str = ""
    admin_password: str = ""


def parse_signing_keys(raw: str) -> dict[str, str]:
    """Parse ``kid:secret,kid:secret`` into an ordered key map."""
    keys: dict[str, str] = {}
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        kid, sep, secret = chunk.partition(":")
        if not sep or not kid.strip() or not secret.strip():
            raise ValueError(f"Malformed signing key entry: {kid.strip() or '<empty>'}")
        keys[kid.strip()] = secret.strip()
    return keys


@dataclass(frozen=True)
class AppConfig:
    """Top-level application configuration."""

    policy: AuthPolicy
    keys: KeyConfig
    storage: StorageConfig
    sweep: SweepConfig
    logging: LoggingConfig
    security: SecurityConfig
    bootstrap: BootstrapConfig

    @staticmethod
    def from_env() -> "AppConfig":
        """Build app config from process environment."""
        policy = AuthPolicy(
            failure_threshold=int(os.getenv("AUTH_FAILURE_THRESHOLD", "5")),
            failure_window=_env_seconds("AUTH_FAILURE_WINDOW_SECONDS", 900),
            lock_duration=_env_seconds("AUTH_LOCK_DURATION_SECONDS", 1800),
            access_ttl=_env_seconds("AUTH_ACCESS_TOKEN_TTL_SECONDS", 1800),
            refresh_ttl=_env_seconds("AUTH_REFRESH_TOKEN_TTL_SECONDS", 14 * 86400),
            rotate_on_refresh=_env_bool("AUTH_ROTATE_ON_REFRESH", "1"),
            clock_skew=_env_seconds("AUTH_CLOCK_SKEW_SECONDS", 60),
            require_verified_email=_env_bool("AUTH_REQUIRE_VERIFIED_EMAIL", "0"),
            revoke_all_on_reuse=_env_bool("AUTH_REVOKE_ALL_ON_REUSE", "1"),
        )

        signing_keys = parse_signing_keys(os.getenv("AUTH_SIGNING_KEYS", ""))
        if not signing_keys:
            LOGGER.warning("signing_keys_missing_using_dev_key")
            signing_keys = {DEV_SIGNING_KID: DEV_SIGNING_SECRET}
        active_kid = os.getenv("AUTH_ACTIVE_KID", "").strip() or next(iter(signing_keys))
        keys = KeyConfig(
            active_kid=active_kid,
            keys=signing_keys,
            issuer=os.getenv("AUTH_ISSUER", "authlife").strip() or "authlife",
        )

        storage = StorageConfig(
            sqlite_path=(
                os.getenv("AUTH_SQLITE_PATH", "runtime/auth_state.db").strip()
                or "runtime/auth_state.db"
            ),
            mongodb_uri=os.getenv("MONGODB_URI", "").strip(),
            mongodb_db=os.getenv("MONGODB_DB", "authlife").strip() or "authlife",
        )
        sweep = SweepConfig(
            enabled=_env_bool("SESSION_SWEEP_ENABLED", "0"),
            interval_seconds=float(os.getenv("SESSION_SWEEP_INTERVAL_SECONDS", "3600")),
            retention=_env_seconds("SESSION_SWEEP_RETENTION_SECONDS", 30 * 86400),
        )
        cors_allowed_origins = [
            origin.strip()
            for origin in os.getenv(
                "CORS_ALLOWED_ORIGINS",
                "http://localhost:3000,http://127.0.0.1:3000",
            ).split(",")
            if origin.strip()
        ]

        return AppConfig(
            policy=policy,
            keys=keys,
            storage=storage,
            sweep=sweep,
            logging=LoggingConfig(level=os.getenv("LOG_LEVEL", "INFO").strip() or "INFO"),
            security=SecurityConfig(
                cors_allowed_origins=cors_allowed_origins,
                request_max_bytes=int(os.getenv("REQUEST_MAX_BYTES", str(1024 * 1024))),
            ),
            bootstrap=BootstrapConfig(
                admin_login_key=os.getenv("AUTH_ADMIN_LOGIN_KEY", "").strip().lower(),
                admin_password=os.getenv("AUTH_ADMIN_PASSWORD", "").strip(),
            ),
        )
