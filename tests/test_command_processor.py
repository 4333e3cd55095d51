"""Tests for chat command processing."""

from unittest.mock import AsyncMock

import pytest

from shared.models import (
    ChatCommandConfiguration,
    ChatCommandContext,
    ChatCommandDefinition,
    CommandAction,
    Counter,
    PermissionLevel,
)
from twitch.services.command_processor import CommandProcessor, apply_action, merge_with_defaults


@pytest.fixture
def processor(counters, command_configs, users, milestones, clock) -> CommandProcessor:
    return CommandProcessor(counters, command_configs, users, milestones, clock=clock)


def chat(message: str, *, mod=False, broadcaster=False, name="viewer") -> ChatCommandContext:
    return ChatCommandContext(
        user_id="1001",
        message=message,
        is_moderator=mod,
        is_broadcaster=broadcaster,
        message_id="msg-1",
        chatter_name=name,
    )


class TestCounterCommands:
    async def test_moderator_increments_and_gets_one_reply(self, processor, counters, reply_sender):
        handled = await processor.process(chat("!death+", mod=True), reply_sender)

        assert handled is True
        assert counters.counters["1001"].deaths == 1
        reply_sender.assert_awaited_once()
        broadcaster_id, text = reply_sender.await_args.args
        assert broadcaster_id == "1001"
        assert "1" in text
        assert text == "Death count: 1"

    async def test_viewer_is_denied_silently(self, processor, counters, reply_sender):
        handled = await processor.process(chat("!death+"), reply_sender)

        assert handled is False
        assert "1001" not in counters.counters
        reply_sender.assert_not_called()

    async def test_short_alias_and_case(self, processor, counters, reply_sender):
        await processor.process(chat("!D+", mod=True), reply_sender)
        await processor.process(chat("!sw+", mod=True), reply_sender)

        counter = counters.counters["1001"]
        assert counter.deaths == 1
        assert counter.swears == 1

    async def test_decrement_floors_at_zero(self, processor, counters, reply_sender):
        counters.counters["1001"] = Counter(user_id="1001", deaths=1)

        await processor.process(chat("!death-", mod=True), reply_sender)
        await processor.process(chat("!death-", mod=True), reply_sender)

        assert counters.counters["1001"].deaths == 0
        assert reply_sender.await_args.args[1] == "Death count: 0"

    async def test_unknown_and_non_command_messages(self, processor, reply_sender):
        assert await processor.process(chat("!nothing"), reply_sender) is False
        assert await processor.process(chat("hello"), reply_sender) is False
        reply_sender.assert_not_called()

    async def test_broadcaster_counts_as_moderator(self, processor, counters, reply_sender):
        await processor.process(chat("!scream+", broadcaster=True), reply_sender)
        assert counters.counters["1001"].screams == 1

    async def test_scream_short_alias(self, processor, counters, reply_sender):
        await processor.process(chat("!sc+", mod=True), reply_sender)
        await processor.process(chat("!sc+", mod=True), reply_sender)
        await processor.process(chat("!sc-", mod=True), reply_sender)

        assert counters.counters["1001"].screams == 1

    async def test_reset_requires_moderator(self, processor, counters, reply_sender):
        counters.counters["1001"] = Counter(user_id="1001", deaths=4, swears=2, screams=1, bits=50)

        assert await processor.process(chat("!resetcounters"), reply_sender) is False
        assert counters.counters["1001"].deaths == 4

        assert await processor.process(chat("!resetcounters", mod=True), reply_sender)
        counter = counters.counters["1001"]
        assert (counter.deaths, counter.swears, counter.screams) == (0, 0, 0)
        assert counter.bits == 50
        assert reply_sender.await_args.args[1] == "Counters have been reset."

    async def test_broadcaster_can_reset(self, processor, counters, reply_sender):
        counters.counters["1001"] = Counter(user_id="1001", deaths=4)

        assert await processor.process(chat("!resetcounters", broadcaster=True), reply_sender)
        assert counters.counters["1001"].deaths == 0


class TestAmounts:
    async def test_explicit_amount_capped_by_default_max(self, processor, counters, reply_sender):
        await processor.process(chat("!death+ 5", mod=True), reply_sender)
        assert counters.counters["1001"].deaths == 1

    async def test_explicit_amount_within_configured_max(
        self, processor, counters, command_configs, reply_sender
    ):
        command_configs.configs["1001"] = ChatCommandConfiguration(max_increment_amount=5)

        await processor.process(chat("!death+ 3", mod=True), reply_sender)
        await processor.process(chat("!death+ 99", mod=True), reply_sender)

        assert counters.counters["1001"].deaths == 8

    async def test_typed_amount_does_not_weaken_configured_step(
        self, processor, counters, command_configs, reply_sender
    ):
        command_configs.configs["1001"] = ChatCommandConfiguration(
            commands={
                "!foo+": ChatCommandDefinition(
                    action=CommandAction.INCREMENT,
                    counter="deaths",
                    permission=PermissionLevel.MODERATOR,
                    increment_by=5,
                )
            }
        )

        await processor.process(chat("!foo+ 2", mod=True), reply_sender)

        assert counters.counters["1001"].deaths == 5

    async def test_decrement_by_configured_amount(
        self, processor, counters, command_configs, reply_sender
    ):
        command_configs.configs["1001"] = ChatCommandConfiguration(
            commands={
                "!oops": ChatCommandDefinition(
                    action=CommandAction.DECREMENT,
                    counter="deaths",
                    permission=PermissionLevel.MODERATOR,
                    increment_by=2,
                    decrement_by=5,
                    response="$(counter) now $(count) (-$(amount))",
                )
            }
        )
        counters.counters["1001"] = Counter(user_id="1001", deaths=12)

        await processor.process(chat("!oops", mod=True), reply_sender)

        assert counters.counters["1001"].deaths == 7
        assert reply_sender.await_args.args[1] == "deaths now 7 (-5)"


class TestCooldowns:
    async def test_second_use_within_window_is_dropped(self, processor, clock, reply_sender):
        assert await processor.process(chat("!deaths"), reply_sender)
        clock.advance(2)
        assert await processor.process(chat("!deaths"), reply_sender) is False
        assert reply_sender.await_count == 1

        clock.advance(3)
        assert await processor.process(chat("!deaths"), reply_sender)
        assert reply_sender.await_count == 2

    async def test_counter_command_mutates_once_per_window(
        self, processor, counters, command_configs, clock, reply_sender
    ):
        command_configs.configs["1001"] = ChatCommandConfiguration(
            commands={
                "!death+": ChatCommandDefinition(
                    action=CommandAction.INCREMENT,
                    counter="deaths",
                    permission=PermissionLevel.MODERATOR,
                    cooldown=10,
                    response="Death count: $(count)",
                )
            }
        )

        assert await processor.process(chat("!death+", mod=True), reply_sender)
        clock.advance(5)
        assert await processor.process(chat("!death+", mod=True), reply_sender) is False

        assert counters.counters["1001"].deaths == 1
        assert reply_sender.await_count == 1

        clock.advance(5)
        assert await processor.process(chat("!death+", mod=True), reply_sender)

        assert counters.counters["1001"].deaths == 2
        assert reply_sender.await_count == 2

    async def test_failed_execution_releases_cooldown(
        self, processor, counters, command_configs, reply_sender
    ):
        command_configs.configs["1001"] = ChatCommandConfiguration(
            commands={
                "!death+": ChatCommandDefinition(
                    action=CommandAction.INCREMENT,
                    counter="deaths",
                    permission=PermissionLevel.MODERATOR,
                    cooldown=30,
                    response="$(count)",
                )
            }
        )
        counters.save_counters = AsyncMock(side_effect=[ConnectionError("db down"), None])

        assert await processor.process(chat("!death+", mod=True), reply_sender) is False
        reply_sender.assert_not_called()

        assert await processor.process(chat("!death+", mod=True), reply_sender) is True


class TestConfiguration:
    async def test_stored_command_overrides_default(
        self, processor, command_configs, reply_sender
    ):
        command_configs.configs["1001"] = ChatCommandConfiguration(
            commands={
                "!deaths": ChatCommandDefinition(
                    action=CommandAction.REPLY, counter="deaths", response="$(user): $(count) deaths"
                )
            }
        )

        await processor.process(chat("!deaths", name="alice"), reply_sender)

        assert reply_sender.await_args.args[1] == "alice: 0 deaths"

    async def test_disabled_command_is_ignored(self, processor, command_configs, reply_sender):
        command_configs.configs["1001"] = ChatCommandConfiguration(
            commands={"!death+": ChatCommandDefinition(counter="deaths", enabled=False)}
        )

        assert await processor.process(chat("!death+", mod=True), reply_sender) is False

    async def test_config_load_failure_uses_defaults(
        self, processor, command_configs, counters, reply_sender
    ):
        command_configs.get_chat_commands = AsyncMock(side_effect=ConnectionError("db down"))

        assert await processor.process(chat("!death+", mod=True), reply_sender)
        assert counters.counters["1001"].deaths == 1

    async def test_reply_failure_still_counts(self, processor, counters):
        sender = AsyncMock(side_effect=RuntimeError("chat down"))

        assert await processor.process(chat("!death+", mod=True), sender)
        assert counters.counters["1001"].deaths == 1


class TestMilestoneHandoff:
    async def test_increment_hands_change_to_notifier(self, processor, milestones, user, reply_sender):
        await processor.process(chat("!death+", mod=True), reply_sender)

        milestones.check_and_send_milestone_notifications.assert_awaited_once_with(
            user, "deaths", 0, 1, thresholds=None
        )

    async def test_decrement_does_not_notify(self, processor, counters, milestones, reply_sender):
        counters.counters["1001"] = Counter(user_id="1001", deaths=3)

        await processor.process(chat("!death-", mod=True), reply_sender)

        milestones.check_and_send_milestone_notifications.assert_not_called()

    async def test_command_milestones_are_passed_through(
        self, processor, command_configs, milestones, reply_sender
    ):
        command_configs.configs["1001"] = ChatCommandConfiguration(
            commands={
                "!boss+": ChatCommandDefinition(
                    action=CommandAction.INCREMENT,
                    counter="boss",
                    permission=PermissionLevel.MODERATOR,
                    milestones=[1, 5],
                )
            }
        )

        await processor.process(chat("!boss+", mod=True), reply_sender)

        call = milestones.check_and_send_milestone_notifications.await_args
        assert call.args[1:] == ("boss", 0, 1)
        assert call.kwargs["thresholds"] == [1, 5]
        # no response configured, no reply
        reply_sender.assert_not_called()


class TestHelpers:
    def test_apply_action_multiple_targets(self):
        counter = Counter(user_id="1001", deaths=1)

        changes = apply_action(counter, CommandAction.INCREMENT, ["deaths", "screams"], 2)

        assert changes == {"deaths": (1, 3), "screams": (0, 2)}

    def test_reply_action_changes_nothing(self):
        counter = Counter(user_id="1001", deaths=1)
        assert apply_action(counter, CommandAction.REPLY, ["deaths"], 1) == {}
        assert counter.deaths == 1

    def test_merge_keeps_stored_max_increment(self):
        merged = merge_with_defaults(ChatCommandConfiguration(max_increment_amount=25))

        assert merged.effective_max_increment == 10
        assert merged.find("!d+") is not None

    def test_definition_from_stored_json(self):
        definition = ChatCommandDefinition.from_dict(
            {
                "action": "DECREMENT",
                "counter": "Deaths, swears",
                "permission": "mod",
                "decrementBy": "3",
                "milestones": [10, "x", 20],
            }
        )

        assert definition.action is CommandAction.DECREMENT
        assert definition.targets == ["deaths", "swears"]
        assert definition.permission is PermissionLevel.MODERATOR
        assert definition.decrement_by == 3
        assert definition.milestones == [10, 20]
        assert ChatCommandDefinition.from_dict({"action": "explode"}).action is CommandAction.REPLY

    def test_wrongly_typed_fields_fall_back(self):
        definition = ChatCommandDefinition.from_dict(
            {"action": "increment", "counter": 5, "milestones": 5, "response": ["x"], "enabled": "false"}
        )

        assert definition.milestones == []
        assert definition.counter is None
        assert definition.targets == []
        assert definition.response == ""
        assert definition.enabled is False
        assert ChatCommandDefinition.from_dict({"enabled": "maybe"}).enabled is True
        assert ChatCommandDefinition.from_dict({"enabled": 0}).enabled is False

    def test_malformed_command_does_not_drop_table(self):
        config = ChatCommandConfiguration.from_dict(
            {
                "commands": {
                    "!boss+": {"action": "increment", "counter": "boss", "milestones": 5},
                    "!broken": "not a command",
                    "!deaths": {"action": "reply", "counter": "deaths", "response": "$(count)"},
                }
            }
        )

        assert set(config.commands) == {"!boss+", "!deaths"}
        assert config.find("!boss+").milestones == []
