"""EventSub session lifecycle and notification dispatch.

One shared websocket session carries events for every broadcaster:

    DISCONNECTED -> CONNECTING -> CONNECTED(session_id) -> DISCONNECTED
                                                    any -> STOPPED

Each welcome starts a fresh subscription pass over all active users. A drop
only logs and schedules a reconnect; subscriptions are recreated on the next
welcome, never against a dead session id.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from datetime import datetime, timezone
from typing import Any

from shared.logging_utils import sanitize
from shared.models import ChatCommandContext, Counter, User
from shared.protocols import CounterStore, EventSubSubscriber, NotificationChannel, UserStore
from twitch.core.eventsub_transport import (
    Notification,
    NotificationTransport,
    SessionDisconnected,
    SessionWelcome,
)
from twitch.core.subscriptions import get_channel_subscriptions, subscription_request
from twitch.services.command_processor import CommandProcessor
from twitch.services.connection_manager import ConnectionManager
from twitch.services.helix import HelixAPIError

LOGGER = logging.getLogger("EventSub")

STREAM_ONLINE = "stream.online"
STREAM_OFFLINE = "stream.offline"
CHAT_MESSAGE = "channel.chat.message"

_MODERATOR_BADGES = {"moderator", "lead_moderator"}
_SUBSCRIBER_BADGES = {"subscriber", "founder"}


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STOPPED = "stopped"


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def build_chat_context(event: dict[str, Any]) -> ChatCommandContext:
    """ChatCommandContext from a ``channel.chat.message`` event."""
    broadcaster_id = str(event.get("broadcaster_user_id") or "")
    chatter_id = str(event.get("chatter_user_id") or "")
    badges = {str(b.get("set_id", "")).lower() for b in event.get("badges") or [] if isinstance(b, dict)}
    message = event.get("message") or {}
    text = message.get("text", "") if isinstance(message, dict) else str(message)

    return ChatCommandContext(
        user_id=broadcaster_id,
        message=text,
        is_moderator=bool(badges & _MODERATOR_BADGES),
        is_broadcaster="broadcaster" in badges or (bool(chatter_id) and chatter_id == broadcaster_id),
        is_subscriber=bool(badges & _SUBSCRIBER_BADGES),
        message_id=event.get("message_id") or None,
        chatter_name=event.get("chatter_user_name") or event.get("chatter_user_login") or None,
    )


class EventSubscriptionService:
    """Owns the shared EventSub session and routes its notifications."""

    def __init__(
        self,
        transport: NotificationTransport,
        subscriber: EventSubSubscriber,
        users: UserStore,
        counters: CounterStore,
        processor: CommandProcessor,
        connections: ConnectionManager,
        notifications: NotificationChannel,
        *,
        subscribe_chat: bool = True,
        reconnect_initial: float = 1.0,
        reconnect_max: float = 60.0,
    ) -> None:
        if transport is None or subscriber is None or users is None or counters is None:
            raise ValueError("transport, subscriber, users and counters are required")
        self.transport = transport
        self.subscriber = subscriber
        self.users = users
        self.counters = counters
        self.processor = processor
        self.connections = connections
        self.notifications = notifications
        self.subscribe_chat = subscribe_chat
        self.reconnect_initial = reconnect_initial
        self.reconnect_max = reconnect_max

        self.state = SessionState.DISCONNECTED
        self.session_id: str | None = None
        self._stop_event = asyncio.Event()
        self._consumer_task: asyncio.Task | None = None
        self._subscribe_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._reconnect_attempt = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.state in (SessionState.CONNECTING, SessionState.CONNECTED):
            return
        self._stop_event.clear()
        if self._consumer_task is None or self._consumer_task.done():
            self._consumer_task = asyncio.create_task(self._consume(), name="eventsub-consumer")
        if not await self._connect():
            self._schedule_reconnect()

    async def stop(self) -> None:
        """Stop everything. Safe to call before start() or twice."""
        self.state = SessionState.STOPPED
        self._stop_event.set()

        for task in (self._reconnect_task, self._subscribe_task, self._consumer_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reconnect_task = self._subscribe_task = self._consumer_task = None

        try:
            await self.transport.disconnect()
        except Exception as e:
            LOGGER.warning(f"Error closing EventSub transport: {type(e).__name__}: {e}")
        self.session_id = None
        LOGGER.info("EventSub service stopped")

    async def _connect(self) -> bool:
        self.state = SessionState.CONNECTING
        try:
            await self.transport.connect()
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            LOGGER.error(f"EventSub connect failed: {type(e).__name__}: {e}")
            self.state = SessionState.DISCONNECTED
            return False

    async def _consume(self) -> None:
        """Single consumer: events are handled strictly in arrival order."""
        while True:
            event = await self.transport.events.get()
            try:
                await self.dispatch(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception(f"Error handling EventSub event {type(event).__name__}")

    async def dispatch(self, event: Any) -> None:
        if self.state is SessionState.STOPPED:
            return
        if isinstance(event, SessionWelcome):
            self._on_welcome(event)
        elif isinstance(event, SessionDisconnected):
            self._on_disconnected(event)
        elif isinstance(event, Notification):
            await self.handle_notification(event)

    # ------------------------------------------------------------------
    # Session events
    # ------------------------------------------------------------------

    def _on_welcome(self, welcome: SessionWelcome) -> None:
        self.state = SessionState.CONNECTED
        self.session_id = welcome.session_id
        self._reconnect_attempt = 0
        LOGGER.info(f"EventSub connected, session {welcome.session_id}")

        if self._subscribe_task is not None and not self._subscribe_task.done():
            self._subscribe_task.cancel()
        self._subscribe_task = asyncio.create_task(
            self.subscribe_all(welcome.session_id), name="eventsub-subscribe"
        )

    def _on_disconnected(self, event: SessionDisconnected) -> None:
        if self.state is SessionState.STOPPED:
            return
        LOGGER.warning(f"EventSub session disconnected: {event.reason or 'unknown reason'}")
        self.state = SessionState.DISCONNECTED
        self.session_id = None
        if self._subscribe_task is not None and not self._subscribe_task.done():
            self._subscribe_task.cancel()
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect(), name="eventsub-reconnect")

    async def _reconnect(self) -> None:
        """Back off and reconnect until the transport is up again or we are stopped."""
        while not self._stop_event.is_set():
            delay = min(self.reconnect_max, self.reconnect_initial * (2**self._reconnect_attempt))
            self._reconnect_attempt += 1
            LOGGER.warning(f"Reconnecting to EventSub in {delay:.1f}s...")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                return
            except asyncio.TimeoutError:
                pass
            if await self._connect():
                return

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe_all(self, session_id: str) -> int:
        """Subscribe every active broadcaster on *session_id*. Returns how many succeeded."""
        try:
            users = await self.users.list_active_users()
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("Failed to list active users for EventSub")
            return 0

        subscribed = 0
        for user in users:
            if self._stop_event.is_set() or self.session_id not in (None, session_id):
                LOGGER.info("Subscription pass interrupted")
                break
            try:
                if await self.subscribe_broadcaster(user, session_id):
                    subscribed += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception(
                    f"Failed to subscribe EventSub for {sanitize(user.username)} ({user.user_id})"
                )

        LOGGER.info(f"EventSub subscriptions active for {subscribed}/{len(users)} broadcasters")
        return subscribed

    async def subscribe_broadcaster(self, user: User, session_id: str) -> bool:
        """Create this broadcaster's subscriptions with a fresh token.

        A 401 forces one token refresh and a single retry. Returns False when
        no usable token could be obtained.
        """
        if not await self.connections.ensure_user_token(user):
            LOGGER.warning(f"Skipping EventSub for {sanitize(user.username)}: token refresh failed")
            return False

        for payload in get_channel_subscriptions(user.user_id, include_chat=self.subscribe_chat):
            sub_type, version, condition = subscription_request(payload)
            try:
                await self.subscriber.create_eventsub_subscription(
                    sub_type, version, condition, session_id, user.access_token
                )
            except HelixAPIError as e:
                if e.status_code != 401:
                    raise
                LOGGER.info(f"Token rejected for {sanitize(user.username)}, refreshing")
                if not await self.connections.ensure_user_token(user, force=True):
                    return False
                await self.subscriber.create_eventsub_subscription(
                    sub_type, version, condition, session_id, user.access_token
                )
            LOGGER.debug(f"Subscribed {sub_type} for {user.user_id}")
        return True

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def handle_notification(self, notification: Notification) -> None:
        event = notification.event
        if notification.subscription_type == STREAM_ONLINE:
            await self._on_stream_online(event)
        elif notification.subscription_type == STREAM_OFFLINE:
            await self._on_stream_offline(event)
        elif notification.subscription_type == CHAT_MESSAGE:
            await self._on_chat_message(event)
        else:
            LOGGER.debug(f"Ignoring EventSub notification {notification.subscription_type}")

    async def _load_counter(self, user_id: str) -> Counter:
        return await self.counters.get_counters(user_id) or Counter(user_id=user_id)

    async def _on_stream_online(self, event: dict[str, Any]) -> None:
        user_id = str(event.get("broadcaster_user_id") or "")
        if not user_id:
            return
        stream_id = event.get("id") or None
        started = _parse_timestamp(event.get("started_at")) or datetime.now(timezone.utc)

        async with self.processor.counter_locks.hold(user_id):
            counter = await self._load_counter(user_id)
            counter.stream_started = started
            already_notified = stream_id is not None and counter.last_notified_stream_id == stream_id
            if stream_id is not None:
                counter.last_notified_stream_id = stream_id
            await self.counters.save_counters(counter)

        LOGGER.info(f"Stream online: {sanitize(event.get('broadcaster_user_login') or user_id)}")
        await self.connections.connect_user(user_id)

        if already_notified:
            LOGGER.debug(f"stream_start already sent for stream {stream_id}")
            return

        try:
            user = await self.users.get_user(user_id)
            if user is not None:
                await self.notifications.send_notification(
                    user,
                    "stream_start",
                    {"streamId": stream_id, "startedAt": started.isoformat()},
                )
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception(f"Failed to send stream_start for {sanitize(user_id)}")

    async def _on_stream_offline(self, event: dict[str, Any]) -> None:
        user_id = str(event.get("broadcaster_user_id") or "")
        if not user_id:
            return
        async with self.processor.counter_locks.hold(user_id):
            counter = await self._load_counter(user_id)
            counter.stream_started = None
            await self.counters.save_counters(counter)
        LOGGER.info(f"Stream offline: {sanitize(event.get('broadcaster_user_login') or user_id)}")

    async def _on_chat_message(self, event: dict[str, Any]) -> None:
        context = build_chat_context(event)
        if not context.user_id or not context.message.startswith("!"):
            return

        await self.connections.connect_user(context.user_id)

        async def reply(broadcaster_id: str, text: str) -> None:
            await self.connections.send_message(broadcaster_id, text, reply_to=context.message_id)

        await self.processor.process(context, reply)
