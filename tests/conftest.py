"""Shared fixtures: in-memory stores and a controllable clock."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from shared.models import (
    BotCredentials,
    ChatCommandConfiguration,
    Counter,
    NotificationSettings,
    User,
)


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class InMemoryUsers:
    def __init__(self, *users: User) -> None:
        self.users = {u.user_id: u for u in users}
        self.saved: list[User] = []

    async def get_user(self, user_id: str) -> User | None:
        return self.users.get(user_id)

    async def save_user(self, user: User) -> None:
        self.users[user.user_id] = user
        self.saved.append(user)

    async def list_active_users(self) -> list[User]:
        return [u for u in self.users.values() if u.is_active]


class InMemoryCounters:
    def __init__(self) -> None:
        self.counters: dict[str, Counter] = {}
        self.saves = 0

    async def get_counters(self, user_id: str) -> Counter | None:
        return self.counters.get(user_id)

    async def save_counters(self, counter: Counter) -> None:
        self.counters[counter.user_id] = counter
        self.saves += 1


class InMemoryCommandConfigs:
    def __init__(self) -> None:
        self.configs: dict[str, ChatCommandConfiguration] = {}

    async def get_chat_commands(self, user_id: str) -> ChatCommandConfiguration | None:
        return self.configs.get(user_id)


class InMemoryBotCredentials:
    def __init__(self, credentials: BotCredentials | None = None) -> None:
        self.credentials = credentials
        self.saved: list[BotCredentials] = []

    async def get_bot_credentials(self) -> BotCredentials | None:
        return self.credentials

    async def save_bot_credentials(self, credentials: BotCredentials) -> None:
        self.credentials = credentials
        self.saved.append(credentials)


def make_user(user_id: str = "1001", **kwargs) -> User:
    defaults = {
        "username": f"streamer{user_id}",
        "access_token": f"token-{user_id}",
        "refresh_token": f"refresh-{user_id}",
    }
    defaults.update(kwargs)
    return User(user_id=user_id, **defaults)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def user() -> User:
    return make_user(
        "1001",
        notification_settings=NotificationSettings(
            chat_enabled=True, external_enabled=True, thresholds={"deaths": [10, 50, 100]}
        ),
        webhook_url="https://hooks.example.com/tally",
    )


@pytest.fixture
def users(user: User) -> InMemoryUsers:
    return InMemoryUsers(user)


@pytest.fixture
def counters() -> InMemoryCounters:
    return InMemoryCounters()


@pytest.fixture
def command_configs() -> InMemoryCommandConfigs:
    return InMemoryCommandConfigs()


@pytest.fixture
def milestones() -> MagicMock:
    notifier = MagicMock()
    notifier.check_and_send_milestone_notifications = AsyncMock(return_value=[])
    return notifier


@pytest.fixture
def reply_sender() -> AsyncMock:
    return AsyncMock(return_value=True)
