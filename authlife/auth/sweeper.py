"""Periodic archival of long-dead session rows."""

from __future__ import annotations

import asyncio
import logging

from authlife.auth.service import AuthService
from authlife.core.config import SweepConfig

LOGGER = logging.getLogger(__name__)


class SessionSweeper:
    """Background loop deleting sessions revoked or expired beyond retention.

    Lookups already ignore such rows, so a missed run only costs storage.
    """

    def __init__(self, service: AuthService, config: SweepConfig) -> None:
        """Initialize sweeper with service and schedule."""
        self._service = service
        self._config = config
        self._worker_task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        """Return whether the background loop is active."""
        return self._worker_task is not None and not self._worker_task.done()

    def run_once(self) -> int:
        """Sweep once and return the number of removed rows."""
        return self._service.sweep_sessions(self._config.retention)

    async def start(self) -> None:
        """Start background loop if not already running."""
        if self.running:
            return
        self._stop_event.clear()
        self._worker_task = asyncio.create_task(self._worker_loop())

    async def stop(self) -> None:
        """Stop background loop gracefully."""
        self._stop_event.set()
        if self._worker_task:
            await self._worker_task
            self._worker_task = None

    async def _worker_loop(self) -> None:
        """Sweep on every interval until stop event is set."""
        while not self._stop_event.is_set():
            try:
                removed = await asyncio.to_thread(self.run_once)
            except Exception:
                LOGGER.exception("session_sweep_failed")
            else:
                LOGGER.debug("session_sweep_completed", extra={"revoked_count": removed})
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self._config.interval_seconds,
                )
            except asyncio.TimeoutError:
                continue
