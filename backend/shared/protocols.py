"""Interfaces the bot services depend on.

Concrete implementations live in ``shared.repositories`` (asyncpg),
``shared.eligibility_cache`` (redis / in-memory) and ``twitch.services``
(Helix, webhooks, twitchio). Tests swap them for mocks.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any, Protocol

from shared.models import (
    BotCredentials,
    BotEligibilityResult,
    ChatCommandConfiguration,
    Counter,
    User,
)

# (broadcaster_id, text) -> None
ReplySender = Callable[[str, str], Awaitable[Any]]


class CounterStore(Protocol):
    async def get_counters(self, user_id: str) -> Counter | None: ...

    async def save_counters(self, counter: Counter) -> None: ...


class ChatCommandConfigStore(Protocol):
    async def get_chat_commands(self, user_id: str) -> ChatCommandConfiguration: ...


class UserStore(Protocol):
    async def get_user(self, user_id: str) -> User | None: ...

    async def save_user(self, user: User) -> None: ...

    async def list_active_users(self) -> list[User]: ...


class BotCredentialStore(Protocol):
    async def get_bot_credentials(self) -> BotCredentials | None: ...

    async def save_bot_credentials(self, credentials: BotCredentials) -> None: ...


class ModeratorLister(Protocol):
    async def get_moderators(
        self, broadcaster_id: str, access_token: str
    ) -> tuple[int, list[dict[str, str]]]: ...


class TokenRefresher(Protocol):
    async def refresh_token(self, refresh_token: str) -> Any: ...


class EligibilityCache(Protocol):
    async def try_get(self, broadcaster_id: str, bot_username: str) -> BotEligibilityResult | None: ...

    async def set(
        self,
        broadcaster_id: str,
        bot_username: str,
        result: BotEligibilityResult,
        ttl: timedelta,
    ) -> None: ...


class NotificationChannel(Protocol):
    async def send_notification(self, user: User, event_name: str, data: dict[str, Any]) -> None: ...


class OverlayNotifier(Protocol):
    async def notify_milestone_reached(
        self,
        user_id: str,
        counter: str,
        milestone: int,
        new_value: int,
        remaining: int | None,
    ) -> None: ...


class EventSubSubscriber(Protocol):
    async def create_eventsub_subscription(
        self,
        subscription_type: str,
        version: str,
        condition: dict[str, str],
        session_id: str,
        access_token: str,
    ) -> None: ...
