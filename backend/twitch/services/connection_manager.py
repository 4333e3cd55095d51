"""Per-broadcaster chat sessions: identity choice, token refresh, outbound chat."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import twitchio

from shared.cache import KeyedLock
from shared.logging_utils import sanitize
from shared.models import BotStatus, MonitoringState, User
from shared.protocols import BotCredentialStore, TokenRefresher, UserStore
from twitch.core.monitoring import MonitoringRegistry
from twitch.services.eligibility import BotEligibilityResolver

LOGGER = logging.getLogger("ConnectionManager")

# Refresh tokens that expire within this window before using them
TOKEN_REFRESH_WINDOW = timedelta(minutes=5)


@dataclass
class ChatSession:
    """Outbound chat identity registered for one broadcaster."""

    broadcaster_id: str
    sender_id: str
    use_bot: bool
    connected_at: datetime


class ConnectionManager:
    """Owns one chat session per broadcaster.

    Every public method is isolated per broadcaster: failures are logged and
    reported through return values, never raised to the caller.
    """

    def __init__(
        self,
        chat_client: twitchio.Client,
        users: UserStore,
        bot_credentials: BotCredentialStore,
        registry: MonitoringRegistry,
        resolver: BotEligibilityResolver,
        token_refresher: TokenRefresher,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if chat_client is None or users is None or registry is None or resolver is None:
            raise ValueError("chat_client, users, registry and resolver are required")
        self.chat_client = chat_client
        self.users = users
        self.bot_credentials = bot_credentials
        self.registry = registry
        self.resolver = resolver
        self.token_refresher = token_refresher
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sessions: dict[str, ChatSession] = {}
        self._connect_locks = KeyedLock()
        self._token_locks = KeyedLock()

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def is_connected(self, user_id: str) -> bool:
        return user_id in self._sessions

    async def connect_user(self, user_id: str) -> bool:
        """Register a chat session for *user_id*. Returns True when connected."""
        if user_id in self._sessions:
            return True

        try:
            user = await self.users.get_user(user_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception(f"Failed to load user {sanitize(user_id)}")
            return False

        if user is None:
            LOGGER.warning(f"Cannot connect unknown user {sanitize(user_id)}")
            return False

        async with self._connect_locks.hold(user_id):
            if user_id in self._sessions:
                return True
            try:
                return await self._connect(user)
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception(f"Failed to connect chat for {sanitize(user.username)}")
                return False

    async def _connect(self, user: User) -> bool:
        # The moderator check must not run with an expired broadcaster token
        if not await self.ensure_user_token(user):
            return False
        state = await self._resolve_identity(user)

        use_bot = state.use_bot
        sender_id: str | None = user.user_id
        token: str | None = None
        refresh: str | None = None

        if use_bot:
            credentials = await self.bot_credentials.get_bot_credentials()
            if credentials is not None and credentials.access_token:
                if not await self._ensure_fresh_bot_token(credentials):
                    return False
                token, refresh = credentials.access_token, credentials.refresh_token
                sender_id = state.bot_user_id or credentials.user_id
            else:
                LOGGER.warning(
                    f"Bot credentials missing, {sanitize(user.username)} will post as broadcaster"
                )
                use_bot = False

        if not use_bot:
            token, refresh = user.access_token, user.refresh_token
            sender_id = user.user_id

        if not token or not sender_id:
            LOGGER.error(f"No usable token for {sanitize(user.username)}")
            return False

        try:
            await self.chat_client.add_token(token, refresh or "")
        except twitchio.exceptions.InvalidTokenException as e:
            LOGGER.error(
                f"Invalid token for {sanitize(user.username)}, user needs to re-authenticate: {e}"
            )
            return False

        self._sessions[user.user_id] = ChatSession(
            broadcaster_id=user.user_id,
            sender_id=sender_id,
            use_bot=use_bot,
            connected_at=self._clock(),
        )
        identity = "bot" if use_bot else "broadcaster"
        LOGGER.info(f"Connected chat for {sanitize(user.username)} as {identity} ({sender_id})")
        return True

    async def _resolve_identity(self, user: User) -> MonitoringState:
        """Ask the resolver on every connect; its cache decides how long a decision holds."""
        result = await self.resolver.get_eligibility(user.user_id, user.access_token)
        LOGGER.debug(f"Eligibility for {sanitize(user.username)}: {result.reason}")
        state = MonitoringState(
            use_bot=result.use_bot,
            bot_user_id=result.bot_user_id,
            updated_at=self._clock(),
        )
        self.registry.set_state(user.user_id, state)
        return state

    async def disconnect_user(self, user_id: str) -> None:
        session = self._sessions.pop(user_id, None)
        self.registry.remove(user_id)
        if session is None:
            return
        LOGGER.info(f"Disconnected chat for {sanitize(user_id)}")

    async def connect_all_users(self, stop_event: asyncio.Event | None = None) -> int:
        """Connect every active user. Returns how many are connected afterwards."""
        try:
            users = await self.users.list_active_users()
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("Failed to list active users")
            return 0

        connected = 0
        for user in users:
            if stop_event is not None and stop_event.is_set():
                break
            try:
                if await self.connect_user(user.user_id):
                    connected += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception(f"Failed to connect {sanitize(user.username)}")

        LOGGER.info(f"Connected chat for {connected}/{len(users)} active users")
        return connected

    # ------------------------------------------------------------------
    # Token refresh
    # ------------------------------------------------------------------

    def _expires_soon(self, expiry: datetime | None) -> bool:
        if expiry is None:
            return False
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        return expiry - self._clock() <= TOKEN_REFRESH_WINDOW

    async def _refresh(self, refresh_token: str, owner: str) -> Any:
        if not refresh_token:
            LOGGER.error(f"Token for {sanitize(owner)} is expiring and has no refresh token")
            return None
        result = await self.token_refresher.refresh_token(refresh_token)
        if result is None:
            LOGGER.error(f"Failed to refresh token for {sanitize(owner)}")
        return result

    def _new_expiry(self, result: Any) -> datetime | None:
        expires_in = getattr(result, "expires_in", None)
        if not expires_in:
            return None
        return self._clock() + timedelta(seconds=int(expires_in))

    async def ensure_user_token(self, user: User, *, force: bool = False) -> bool:
        """Refresh the broadcaster token when it expires soon, or always with *force*.

        Updates *user* in place and persists it. Returns False when a needed
        refresh failed. Refreshes are serialized per broadcaster because
        Twitch rotates the refresh token on every use.
        """
        async with self._token_locks.hold(user.user_id):
            stored = await self.users.get_user(user.user_id)
            if (
                stored is not None
                and stored is not user
                and stored.access_token
                and stored.access_token != user.access_token
            ):
                # Another caller already refreshed this broadcaster
                user.access_token = stored.access_token
                user.refresh_token = stored.refresh_token
                user.token_expiry = stored.token_expiry
                force = False

            if not force and not self._expires_soon(user.token_expiry):
                return True
            result = await self._refresh(user.refresh_token, user.username)
            if result is None:
                return False
            user.access_token = result.access_token
            user.refresh_token = result.refresh_token
            user.token_expiry = self._new_expiry(result)
            await self.users.save_user(user)
            LOGGER.info(f"Refreshed token for {sanitize(user.username)}")
            return True

    async def _ensure_fresh_bot_token(self, credentials) -> bool:
        if not self._expires_soon(credentials.token_expiry):
            return True
        result = await self._refresh(credentials.refresh_token, credentials.username)
        if result is None:
            return False
        credentials.access_token = result.access_token
        credentials.refresh_token = result.refresh_token
        credentials.token_expiry = self._new_expiry(result)
        await self.bot_credentials.save_bot_credentials(credentials)
        LOGGER.info(f"Refreshed bot token for {sanitize(credentials.username)}")
        return True

    # ------------------------------------------------------------------
    # Outbound chat
    # ------------------------------------------------------------------

    async def send_message(self, user_id: str, message: str, reply_to: str | None = None) -> bool:
        session = self._sessions.get(user_id)
        if session is None:
            LOGGER.debug(f"No chat session for {sanitize(user_id)}, dropping message")
            return False

        try:
            broadcaster = self.chat_client.create_partialuser(user_id=user_id)
            await broadcaster.send_message(
                message=message,
                sender=session.sender_id,
                token_for=session.sender_id,
                reply_to_message_id=reply_to,
            )
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            LOGGER.warning(f"Failed to send message to {sanitize(user_id)}: {type(e).__name__}: {e}")
            return False

    def get_user_bot_status(self, user_id: str) -> BotStatus:
        session = self._sessions.get(user_id)
        if session is None:
            return BotStatus(connected=False, reason="Not connected")
        return BotStatus(
            connected=True,
            reason="Connected",
            use_bot=session.use_bot,
            sender_id=session.sender_id,
        )
