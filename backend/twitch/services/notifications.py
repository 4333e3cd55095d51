"""Outbound notification channels: broadcaster webhooks and overlay events."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from shared.logging_utils import sanitize
from shared.models import User

logger = logging.getLogger(__name__)


class WebhookNotificationChannel:
    """POST ``{"event", "data", "timestamp"}`` to the broadcaster's webhook URL.

    Users without a webhook URL are skipped. Non-2xx responses raise
    ``httpx.HTTPStatusError`` so the caller can log the failure.
    """

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None, timeout: float = 10.0):
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._http.aclose()

    async def send_notification(self, user: User, event_name: str, data: dict[str, Any]) -> None:
        if not user.webhook_url:
            logger.debug(f"No webhook configured for {sanitize(user.user_id)}, skipping {event_name}")
            return

        payload = {
            "event": event_name,
            "username": user.display_name or user.username,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        response = await self._http.post(user.webhook_url, json=payload)
        response.raise_for_status()
        logger.info(f"Sent {event_name} notification for {sanitize(user.username)}")


class LoggingOverlayNotifier:
    """Overlay sink used when no realtime push channel is wired in."""

    async def notify_milestone_reached(
        self,
        user_id: str,
        counter: str,
        milestone: int,
        new_value: int,
        remaining: int | None,
    ) -> None:
        logger.info(
            f"[Overlay] milestone_reached user={sanitize(user_id)} counter={counter} "
            f"milestone={milestone} value={new_value} remaining={remaining}"
        )
