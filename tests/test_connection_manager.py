"""Tests for per-broadcaster chat sessions."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from shared.models import BotCredentials, BotEligibilityResult, MonitoringState
from shared.eligibility_cache import MemoryBotEligibilityCache
from twitch.core.monitoring import MonitoringRegistry
from twitch.services.connection_manager import ConnectionManager
from twitch.services.eligibility import BotEligibilityResolver
from twitch.services.helix import TokenRefreshResult

from .conftest import InMemoryBotCredentials, InMemoryUsers, make_user


@pytest.fixture
def chat_client() -> MagicMock:
    client = MagicMock()
    client.add_token = AsyncMock()
    client.partial = MagicMock()
    client.partial.send_message = AsyncMock()
    client.create_partialuser = MagicMock(return_value=client.partial)
    return client


@pytest.fixture
def resolver() -> MagicMock:
    mock = MagicMock()
    mock.get_eligibility = AsyncMock(
        return_value=BotEligibilityResult(False, None, "Bot is not a moderator in this channel")
    )
    return mock


@pytest.fixture
def refresher() -> MagicMock:
    mock = MagicMock()
    mock.refresh_token = AsyncMock(
        return_value=TokenRefreshResult("new-access", "new-refresh", expires_in=14400)
    )
    return mock


@pytest.fixture
def registry() -> MonitoringRegistry:
    return MonitoringRegistry()


@pytest.fixture
def bot_credentials() -> InMemoryBotCredentials:
    return InMemoryBotCredentials(
        BotCredentials(username="tallybot", user_id="42", access_token="bot-token", refresh_token="bot-refresh")
    )


@pytest.fixture
def manager(chat_client, users, bot_credentials, registry, resolver, refresher, clock):
    return ConnectionManager(
        chat_client, users, bot_credentials, registry, resolver, refresher, clock=clock
    )


class TestConnect:
    async def test_connects_as_broadcaster_when_bot_not_eligible(
        self, manager, chat_client, registry, user
    ):
        assert await manager.connect_user(user.user_id) is True

        chat_client.add_token.assert_awaited_once_with("token-1001", "refresh-1001")
        found, state = registry.try_get_state(user.user_id)
        assert found and state.use_bot is False

        status = manager.get_user_bot_status(user.user_id)
        assert status.connected is True
        assert status.use_bot is False
        assert status.sender_id == user.user_id

    async def test_connects_as_bot_when_moderator(self, manager, chat_client, resolver, user):
        resolver.get_eligibility.return_value = BotEligibilityResult(True, "42", "Bot is a moderator")

        assert await manager.connect_user(user.user_id)

        chat_client.add_token.assert_awaited_once_with("bot-token", "bot-refresh")
        status = manager.get_user_bot_status(user.user_id)
        assert status.use_bot is True
        assert status.sender_id == "42"

    async def test_missing_bot_credentials_fall_back_to_broadcaster(
        self, chat_client, users, registry, resolver, refresher, clock, user
    ):
        resolver.get_eligibility.return_value = BotEligibilityResult(True, "42", "Bot is a moderator")
        manager = ConnectionManager(
            chat_client, users, InMemoryBotCredentials(None), registry, resolver, refresher, clock=clock
        )

        assert await manager.connect_user(user.user_id)
        assert manager.get_user_bot_status(user.user_id).sender_id == user.user_id

    async def test_resolver_overrides_previous_registry_state(self, manager, registry, resolver, user):
        registry.set_state(user.user_id, MonitoringState(use_bot=True, bot_user_id="42"))

        await manager.connect_user(user.user_id)

        resolver.get_eligibility.assert_awaited_once_with(user.user_id, "token-1001")
        assert manager.get_user_bot_status(user.user_id).use_bot is False
        found, state = registry.try_get_state(user.user_id)
        assert found and state.use_bot is False

    async def test_already_connected_is_noop(self, manager, chat_client, user):
        await manager.connect_user(user.user_id)
        await manager.connect_user(user.user_id)

        chat_client.add_token.assert_awaited_once()

    async def test_unknown_user(self, manager, chat_client):
        assert await manager.connect_user("nobody") is False
        chat_client.add_token.assert_not_called()

    async def test_add_token_failure_is_contained(self, manager, chat_client, user):
        chat_client.add_token.side_effect = RuntimeError("helix down")

        assert await manager.connect_user(user.user_id) is False
        assert manager.is_connected(user.user_id) is False


class TestTokenRefresh:
    async def test_expiring_user_token_is_refreshed_and_saved(
        self, manager, chat_client, users, refresher, clock, user
    ):
        user.token_expiry = clock() + timedelta(minutes=2)

        assert await manager.connect_user(user.user_id)

        refresher.refresh_token.assert_awaited_once_with("refresh-1001")
        assert users.saved[-1].access_token == "new-access"
        assert users.saved[-1].token_expiry == clock() + timedelta(seconds=14400)
        chat_client.add_token.assert_awaited_once_with("new-access", "new-refresh")

    async def test_fresh_token_is_not_refreshed(self, manager, refresher, clock, user):
        user.token_expiry = clock() + timedelta(hours=2)

        await manager.connect_user(user.user_id)

        refresher.refresh_token.assert_not_called()

    async def test_refresh_failure_aborts_connect(self, manager, chat_client, refresher, clock, user):
        user.token_expiry = clock() - timedelta(minutes=1)
        refresher.refresh_token.return_value = None

        assert await manager.connect_user(user.user_id) is False
        chat_client.add_token.assert_not_called()

    async def test_expiring_bot_token_is_refreshed(
        self, manager, resolver, refresher, bot_credentials, clock, user
    ):
        resolver.get_eligibility.return_value = BotEligibilityResult(True, "42", "Bot is a moderator")
        bot_credentials.credentials.token_expiry = clock() + timedelta(minutes=1)

        assert await manager.connect_user(user.user_id)

        refresher.refresh_token.assert_awaited_once_with("bot-refresh")
        assert bot_credentials.saved[-1].access_token == "new-access"

    async def test_broadcaster_token_refreshed_before_moderator_check(
        self, manager, chat_client, users, resolver, refresher, clock, user
    ):
        user.token_expiry = clock() - timedelta(hours=1)
        resolver.get_eligibility.return_value = BotEligibilityResult(True, "42", "Bot is a moderator")

        assert await manager.connect_user(user.user_id)

        resolver.get_eligibility.assert_awaited_once_with(user.user_id, "new-access")
        refresher.refresh_token.assert_awaited_once_with("refresh-1001")
        assert users.saved[-1].access_token == "new-access"
        chat_client.add_token.assert_awaited_once_with("bot-token", "bot-refresh")
        assert manager.get_user_bot_status(user.user_id).sender_id == "42"

    async def test_forced_refresh_ignores_expiry(self, manager, refresher, clock, user):
        user.token_expiry = clock() + timedelta(hours=3)

        assert await manager.ensure_user_token(user, force=True)

        refresher.refresh_token.assert_awaited_once_with("refresh-1001")
        assert user.access_token == "new-access"
        assert user.refresh_token == "new-refresh"

    async def test_token_refreshed_elsewhere_is_adopted(self, manager, refresher, clock, user):
        user.access_token = "already-new"
        user.refresh_token = "already-rotated"
        user.token_expiry = clock() + timedelta(hours=4)
        stale = make_user("1001", token_expiry=clock() - timedelta(minutes=5))

        assert await manager.ensure_user_token(stale, force=True)

        refresher.refresh_token.assert_not_called()
        assert stale.access_token == "already-new"
        assert stale.refresh_token == "already-rotated"


class TestEligibilityLifetime:
    async def test_failed_lookup_is_retried_on_reconnect(
        self, chat_client, users, bot_credentials, registry, refresher, clock, user
    ):
        now = [0.0]
        lister = MagicMock()
        lister.get_moderators = AsyncMock(
            side_effect=[
                ConnectionError("helix down"),
                (200, [{"user_id": "42", "user_login": "tallybot"}]),
            ]
        )
        resolver = BotEligibilityResolver(
            lister, MemoryBotEligibilityCache(timer=lambda: now[0]), "tallybot"
        )
        manager = ConnectionManager(
            chat_client, users, bot_credentials, registry, resolver, refresher, clock=clock
        )

        await manager.connect_user(user.user_id)
        assert manager.get_user_bot_status(user.user_id).use_bot is False

        await manager.disconnect_user(user.user_id)
        assert registry.try_get_state(user.user_id) == (False, None)

        now[0] += 3600
        await manager.connect_user(user.user_id)

        status = manager.get_user_bot_status(user.user_id)
        assert status.use_bot is True
        assert status.sender_id == "42"
        assert lister.get_moderators.await_count == 2


class TestMessaging:
    async def test_send_without_session_is_dropped(self, manager, chat_client):
        assert await manager.send_message("1001", "hello") is False
        chat_client.create_partialuser.assert_not_called()

    async def test_send_uses_session_identity(self, manager, chat_client, resolver, user):
        resolver.get_eligibility.return_value = BotEligibilityResult(True, "42", "Bot is a moderator")
        await manager.connect_user(user.user_id)

        assert await manager.send_message(user.user_id, "Death count: 1", reply_to="msg-1")

        chat_client.create_partialuser.assert_called_once_with(user_id=user.user_id)
        chat_client.partial.send_message.assert_awaited_once_with(
            message="Death count: 1", sender="42", token_for="42", reply_to_message_id="msg-1"
        )

    async def test_send_failure_returns_false(self, manager, chat_client, user):
        await manager.connect_user(user.user_id)
        chat_client.partial.send_message.side_effect = RuntimeError("rate limited")

        assert await manager.send_message(user.user_id, "hi") is False

    async def test_disconnect(self, manager, registry, user):
        await manager.connect_user(user.user_id)
        await manager.disconnect_user(user.user_id)
        await manager.disconnect_user(user.user_id)

        assert registry.try_get_state(user.user_id) == (False, None)
        status = manager.get_user_bot_status(user.user_id)
        assert status.connected is False
        assert status.reason == "Not connected"


class TestConnectAll:
    async def test_one_failure_does_not_stop_others(
        self, chat_client, bot_credentials, registry, resolver, refresher, clock
    ):
        users = InMemoryUsers(make_user("1"), make_user("2"), make_user("3", is_active=False))
        chat_client.add_token.side_effect = [RuntimeError("bad"), None]
        manager = ConnectionManager(
            chat_client, users, bot_credentials, registry, resolver, refresher, clock=clock
        )

        assert await manager.connect_all_users() == 1
        assert manager.is_connected("2")
        assert not manager.is_connected("3")
