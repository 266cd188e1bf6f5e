"""Wall-clock abstraction injected into every time-dependent component."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_storage(value: datetime | None) -> str | None:
    """Serialize datetime into fixed-width ISO-8601 UTC text."""
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def from_storage(value: str | None) -> datetime | None:
    """Parse ISO-8601 text written by ``to_storage``."""
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))
