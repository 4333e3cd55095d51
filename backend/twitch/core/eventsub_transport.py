"""EventSub websocket transport.

Publishes session lifecycle and notifications to an asyncio.Queue; the
consumer (EventSubscriptionService) drains it in order. Reconnecting after
a drop is the consumer's call, except for Twitch-requested
``session_reconnect`` migrations which keep the same subscriptions.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

import aiohttp

LOGGER = logging.getLogger("EventSubWS")

EVENTSUB_WS_URL = "wss://eventsub.wss.twitch.tv/ws"

# Extra slack on top of the keepalive Twitch announces in the welcome
_KEEPALIVE_GRACE = 10.0
_DEFAULT_KEEPALIVE = 10.0
_DEDUPE_TTL = 600.0


@dataclass
class SessionWelcome:
    session_id: str
    keepalive_timeout: float = _DEFAULT_KEEPALIVE


@dataclass
class Notification:
    subscription_type: str
    event: dict[str, Any] = field(default_factory=dict)
    message_id: str = ""


@dataclass
class SessionDisconnected:
    reason: str = ""


TransportEvent = SessionWelcome | Notification | SessionDisconnected


class NotificationTransport(Protocol):
    events: asyncio.Queue

    @property
    def session_id(self) -> str | None: ...

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...


class EventSubWebsocket:
    """aiohttp websocket client for the EventSub websocket transport."""

    def __init__(
        self,
        url: str = EVENTSUB_WS_URL,
        *,
        http: aiohttp.ClientSession | None = None,
    ) -> None:
        self.url = url
        self.events: asyncio.Queue[TransportEvent] = asyncio.Queue()
        self._http = http
        self._owns_http = http is None
        self._task: asyncio.Task | None = None
        self._session_id: str | None = None
        self._seen: dict[str, float] = {}

    @property
    def session_id(self) -> str | None:
        return self._session_id

    async def connect(self) -> None:
        """Open the websocket in a background task. No-op while one is running."""
        if self._task is not None and not self._task.done():
            return
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True
        self._task = asyncio.create_task(self._run(self.url), name="eventsub-ws")

    async def disconnect(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._session_id = None
        if self._owns_http and self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None

    async def _run(self, url: str) -> None:
        reason = "closed"
        migrating = False
        try:
            while True:
                reconnect_url = await self._read_socket(url, migrating)
                if reconnect_url is None:
                    break
                LOGGER.info("EventSub requested reconnect, migrating session")
                url, migrating = reconnect_url, True
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            reason = "keepalive timeout"
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"

        self._session_id = None
        await self.events.put(SessionDisconnected(reason=reason))

    async def _read_socket(self, url: str, migrating: bool) -> str | None:
        """Read one websocket until it closes. Returns a reconnect URL if Twitch sent one."""
        assert self._http is not None
        keepalive = _DEFAULT_KEEPALIVE

        async with self._http.ws_connect(url) as ws:
            LOGGER.debug(f"EventSub websocket open: {url}")
            while True:
                msg = await asyncio.wait_for(ws.receive(), timeout=keepalive + _KEEPALIVE_GRACE)

                if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.CLOSING):
                    LOGGER.warning(f"EventSub websocket closed ({ws.close_code})")
                    return None
                if msg.type == aiohttp.WSMsgType.ERROR:
                    raise ws.exception() or ConnectionError("websocket error")
                if msg.type != aiohttp.WSMsgType.TEXT:
                    continue

                try:
                    message = json.loads(msg.data)
                except ValueError:
                    LOGGER.warning("Dropping malformed EventSub frame")
                    continue

                metadata = message.get("metadata") or {}
                payload = message.get("payload") or {}
                message_type = metadata.get("message_type")

                if message_type == "session_welcome":
                    session = payload.get("session") or {}
                    keepalive = float(session.get("keepalive_timeout_seconds") or _DEFAULT_KEEPALIVE)
                    self._session_id = session.get("id")
                    if migrating:
                        # Subscriptions move with the session; nothing to resubscribe
                        LOGGER.info(f"EventSub session migrated: {self._session_id}")
                        migrating = False
                        continue
                    LOGGER.info(f"EventSub session welcome: {self._session_id}")
                    await self.events.put(SessionWelcome(self._session_id or "", keepalive))

                elif message_type == "session_keepalive":
                    continue

                elif message_type == "notification":
                    message_id = metadata.get("message_id") or ""
                    if self._is_duplicate(message_id):
                        continue
                    subscription = payload.get("subscription") or {}
                    await self.events.put(
                        Notification(
                            subscription_type=subscription.get("type", ""),
                            event=payload.get("event") or {},
                            message_id=message_id,
                        )
                    )

                elif message_type == "session_reconnect":
                    session = payload.get("session") or {}
                    return session.get("reconnect_url") or None

                elif message_type == "revocation":
                    subscription = payload.get("subscription") or {}
                    LOGGER.warning(
                        f"EventSub subscription revoked: {subscription.get('type')} "
                        f"({subscription.get('status')})"
                    )

    def _is_duplicate(self, message_id: str) -> bool:
        if not message_id:
            return False
        now = time.monotonic()
        for key in [k for k, seen in self._seen.items() if now - seen > _DEDUPE_TTL]:
            del self._seen[key]
        if message_id in self._seen:
            return True
        self._seen[message_id] = now
        return False
