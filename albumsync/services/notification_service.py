"""Alert delivery to a generic webhook and Pushover, throttled per message."""

from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from typing import Any

import httpx
from pydantic import BaseModel

from albumsync.services.datetime_service import format_iso, now_utc

logger = logging.getLogger(__name__)

PUSHOVER_URL = "https://api.pushover.net/1/messages.json"
SERVICE_NAME = "albumsync"
_TIMEOUT = 15.0


class AlertLevel(StrEnum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class AlertPayload(BaseModel):
    """JSON body posted to the generic webhook."""

    service: str
    level: AlertLevel
    message: str
    timestamp: str
    details: dict[str, Any] | None = None


_PUSHOVER_ICONS = {
    AlertLevel.ERROR: "⛔",
    AlertLevel.WARNING: "⚠️",
    AlertLevel.INFO: "ℹ️",
}


class NotificationService:
    """Send operator alerts, suppressing repeats of the same alert.

    An alert is identified by ``(level, message)``; once sent it is not sent
    again until ``throttle_seconds`` have passed or the throttle is cleared.
    Delivery failures are logged and never raised.

    Safe under asyncio's single-threaded model: the throttle map is only
    touched between await points.
    """

    def __init__(
        self,
        *,
        webhook_url: str | None = None,
        pushover_token: str | None = None,
        pushover_user: str | None = None,
        throttle_seconds: float = 3600,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._pushover_token = pushover_token
        self._pushover_user = pushover_user
        self._throttle_seconds = throttle_seconds
        self._client = http_client or httpx.AsyncClient(timeout=_TIMEOUT)
        self._owns_client = http_client is None
        self._sent: dict[tuple[str, str], float] = {}

    @property
    def has_channels(self) -> bool:
        return bool(self._webhook_url) or bool(self._pushover_token and self._pushover_user)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _should_send(self, key: tuple[str, str]) -> bool:
        last_sent = self._sent.get(key)
        if last_sent is None:
            return True
        return now_utc().timestamp() - last_sent >= self._throttle_seconds

    def clear_throttle(self, message: str, level: AlertLevel | str = AlertLevel.ERROR) -> None:
        """Forget that an alert was sent, e.g. once the problem is resolved."""
        self._sent.pop((str(level), message), None)

    async def send_alert(
        self,
        message: str,
        level: AlertLevel | str = AlertLevel.ERROR,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Deliver an alert on every configured channel.

        Returns True if the alert was dispatched, False if it was throttled or
        no channel is configured.
        """
        level = AlertLevel(level)
        key = (str(level), message)
        if not self._should_send(key):
            logger.debug("Alert throttled (already sent recently): %s", message)
            return False
        if not self.has_channels:
            logger.debug("No notification channels configured")
            return False

        deliveries = []
        if self._webhook_url:
            payload = AlertPayload(
                service=SERVICE_NAME,
                level=level,
                message=message,
                timestamp=format_iso(now_utc()),
                details=details,
            )
            deliveries.append(self._send_webhook(self._webhook_url, payload))
        if self._pushover_token and self._pushover_user:
            deliveries.append(self._send_pushover(message, level))

        await asyncio.gather(*deliveries)
        self._sent[key] = now_utc().timestamp()
        return True

    async def _send_webhook(self, url: str, payload: AlertPayload) -> None:
        try:
            resp = await self._client.post(url, json=payload.model_dump(mode="json"))
        except httpx.HTTPError as exc:
            logger.error("Webhook notification error: %s", exc)
            return
        if resp.is_success:
            logger.debug("Webhook notification sent")
        else:
            logger.warning("Webhook notification failed: HTTP %d", resp.status_code)

    async def _send_pushover(self, message: str, level: AlertLevel) -> None:
        try:
            resp = await self._client.post(
                PUSHOVER_URL,
                data={
                    "token": self._pushover_token or "",
                    "user": self._pushover_user or "",
                    "message": message,
                    "title": f"albumsync {_PUSHOVER_ICONS[level]}",
                    "priority": "1" if level is AlertLevel.ERROR else "0",
                },
            )
        except httpx.HTTPError as exc:
            logger.error("Pushover notification error: %s", exc)
            return
        if resp.is_success:
            logger.debug("Pushover notification sent")
        else:
            logger.warning("Pushover notification failed: HTTP %d %s", resp.status_code, resp.text)
