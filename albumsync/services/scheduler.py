"""Polling scheduler: drives sync cycles and credential refresh on timers."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import TYPE_CHECKING

from albumsync.services.notification_service import AlertLevel

if TYPE_CHECKING:
    from collections.abc import Callable

    from albumsync.clients.base import TargetClient
    from albumsync.services.notification_service import NotificationService
    from albumsync.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

SYNC_FAILED_ALERT = "Sync cycle failed"
AUTH_LOST_ALERT = "Target authentication failed; refresh the Amazon cookies"


class SyncScheduler:
    """Run one cycle immediately, then one every ``poll_interval`` seconds.

    Polling is fixed-rate: ticks are scheduled against a monotonic deadline, so
    a cycle's duration does not shift later ticks. Ticks that pass while a
    cycle is still running are skipped. A failed cycle never stops the loop.
    Cycles are not queued: if a manual trigger is still running when the timer
    fires, the engine drops the tick.
    """

    def __init__(
        self,
        engine: SyncEngine,
        *,
        poll_interval: float,
        target: TargetClient | None = None,
        refresh_interval: float | None = None,
        notifications: NotificationService | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if poll_interval <= 0:
            msg = f"poll_interval must be > 0, got {poll_interval}"
            raise ValueError(msg)
        self._engine = engine
        self._poll_interval = poll_interval
        self._target = target
        self._refresh_interval = refresh_interval
        self._notifications = notifications
        self._clock = clock
        self._tasks: list[asyncio.Task[None]] = []

    async def authenticate(self) -> bool:
        """Startup credential check: refresh now if enabled, else just probe."""
        if self._target is None:
            return False
        authenticated = False
        if self._refresh_interval is not None:
            authenticated = await self._target.refresh_credentials()
            if not authenticated:
                logger.warning("Startup credential refresh failed, checking existing cookies")
        if not authenticated:
            authenticated = await self._target.check_authenticated()
        self._engine.set_target_authenticated(authenticated)
        if authenticated:
            logger.info("Target authentication OK")
        else:
            logger.error("Target authentication failed at startup")
            await self._alert(AUTH_LOST_ALERT, AlertLevel.ERROR)
        return authenticated

    async def run_once(self) -> bool:
        """Run a cycle, converting any failure into logs and alerts.

        Returns True when the cycle ran and succeeded.
        """
        try:
            ran = await self._engine.run()
        except Exception as exc:
            logger.error("Sync cycle failed: %s", exc)
            await self._alert(SYNC_FAILED_ALERT, AlertLevel.ERROR, {"error": str(exc)})
            await self._check_auth_alert()
            return False

        if ran and self._notifications is not None:
            self._notifications.clear_throttle(SYNC_FAILED_ALERT, AlertLevel.ERROR)
        await self._check_auth_alert()
        return ran

    async def _check_auth_alert(self) -> None:
        if self._engine.metrics.target_authenticated:
            if self._notifications is not None:
                self._notifications.clear_throttle(AUTH_LOST_ALERT, AlertLevel.ERROR)
            return
        await self._alert(AUTH_LOST_ALERT, AlertLevel.ERROR)

    async def _alert(
        self, message: str, level: AlertLevel, details: dict[str, str] | None = None
    ) -> None:
        if self._notifications is None:
            return
        await self._notifications.send_alert(message, level, details)

    async def run_forever(self) -> None:
        """Poll until cancelled."""
        next_tick = self._clock()
        while True:
            await self.run_once()
            next_tick += self._poll_interval
            now = self._clock()
            if next_tick <= now:
                missed = math.floor((now - next_tick) / self._poll_interval) + 1
                logger.warning("Sync cycle overran %d poll tick(s)", missed)
                next_tick += missed * self._poll_interval
            delay = next_tick - now
            logger.info("Next sync in %.0f seconds", delay)
            await asyncio.sleep(delay)

    async def refresh_forever(self) -> None:
        """Proactively refresh target credentials until cancelled."""
        if self._target is None or self._refresh_interval is None:
            return
        while True:
            await asyncio.sleep(self._refresh_interval)
            refreshed = await self._target.refresh_credentials()
            if refreshed:
                logger.info("Proactive credential refresh succeeded")
                continue
            logger.error("Proactive credential refresh failed")
            self._engine.set_target_authenticated(False)
            await self._alert(AUTH_LOST_ALERT, AlertLevel.ERROR)

    def start(self) -> None:
        """Launch the polling and refresh loops as background tasks."""
        if self._tasks:
            return
        self._tasks.append(asyncio.create_task(self.run_forever(), name="sync-poll"))
        if self._target is not None and self._refresh_interval is not None:
            self._tasks.append(asyncio.create_task(self.refresh_forever(), name="cookie-refresh"))

    async def stop(self) -> None:
        """Cancel the background loops and wait for them to finish."""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
