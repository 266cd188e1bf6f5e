"""Progressive lockout policy over a principal's failure-window fields."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from authlife.auth.models import Principal
from authlife.core.config import AuthPolicy


@dataclass(frozen=True)
class LockState:
    """Result of evaluating a principal against the lockout policy."""

    locked: bool
    remaining: timedelta | None = None


class LockoutPolicy:
    """Pure lockout rules; callers persist the returned principal copies."""

    def __init__(self, policy: AuthPolicy) -> None:
        """Capture threshold and durations from policy configuration."""
        self._threshold = policy.failure_threshold
        self._window = policy.failure_window
        self._lock_duration = policy.lock_duration

    def evaluate(self, principal: Principal, now: datetime) -> LockState:
        """Return whether principal is locked at ``now``.

        The lock interval is closed on the locked side: an attempt arriving
        exactly at ``locked_until`` is still refused.
        """
        locked_until = principal.locked_until
        if locked_until is None or now > locked_until:
            return LockState(locked=False)
        return LockState(locked=True, remaining=locked_until - now)

    def on_failure(self, principal: Principal, now: datetime) -> Principal:
        """Return principal with the failed attempt counted."""
        window_start = principal.failure_window_start
        if window_start is None or now - window_start > self._window:
            failed_attempts = 1
            window_start = now
        else:
            failed_attempts = principal.failed_attempts + 1

        locked_until = principal.locked_until
        if locked_until is not None and now > locked_until:
            locked_until = None
        if failed_attempts >= self._threshold:
            locked_until = now + self._lock_duration

        return principal.model_copy(
            update={
                "failed_attempts": failed_attempts,
                "failure_window_start": window_start,
                "locked_until": locked_until,
            }
        )

    def on_success(self, principal: Principal) -> Principal:
        """Return principal with all failure state cleared."""
        return principal.model_copy(
            update={
                "failed_attempts": 0,
                "failure_window_start": None,
                "locked_until": None,
            }
        )
