"""Chat command processing: counter commands, replies, milestone hand-off.

Flow per message:
    trigger lookup -> permission -> cooldown -> action -> persist
    -> milestones -> at most one reply
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from shared.cache import KeyedLock
from shared.logging_utils import sanitize
from shared.models import (
    DEFAULT_CHAT_COMMANDS,
    ChatCommandConfiguration,
    ChatCommandContext,
    ChatCommandDefinition,
    CommandAction,
    Counter,
)
from shared.models.counter import RESETTABLE_COUNTERS
from shared.protocols import ChatCommandConfigStore, CounterStore, ReplySender, UserStore
from twitch.core.guards import CooldownTracker, has_permission, resolve_magnitude
from twitch.services.milestones import MilestoneNotifier

LOGGER = logging.getLogger("CommandProcessor")

_VARIABLE_RE = re.compile(r"\$\((count|counter|amount|user)\)")


@dataclass
class CommandInvocation:
    """Everything one command execution needs, built per message."""

    context: ChatCommandContext
    trigger: str
    definition: ChatCommandDefinition
    amount: int
    reply_sender: ReplySender
    now: datetime
    # counter name -> (old, new) for counters that actually changed
    changes: dict[str, tuple[int, int]] = field(default_factory=dict)
    counter: Counter | None = None


def parse_requested_amount(parts: list[str]) -> int | None:
    """Second token as a positive amount (``!death+ 3``), else None."""
    if len(parts) < 2:
        return None
    try:
        value = int(parts[1])
    except ValueError:
        return None
    return value if value > 0 else None


def merge_with_defaults(config: ChatCommandConfiguration | None) -> ChatCommandConfiguration:
    """Stored commands layered over the default counter commands."""
    config = config or ChatCommandConfiguration()
    return ChatCommandConfiguration(
        commands={**DEFAULT_CHAT_COMMANDS, **config.commands},
        max_increment_amount=config.max_increment_amount,
    )


def apply_action(
    counter: Counter, action: CommandAction, targets: list[str], amount: int
) -> dict[str, tuple[int, int]]:
    """Mutate *counter* in place. Returns ``{name: (old, new)}`` for changed counters."""
    if action is CommandAction.RESET:
        targets = targets or list(RESETTABLE_COUNTERS)
    elif action not in (CommandAction.INCREMENT, CommandAction.DECREMENT):
        return {}

    changes: dict[str, tuple[int, int]] = {}
    for name in targets:
        old = counter.get(name)
        if action is CommandAction.RESET:
            new = 0
        elif action is CommandAction.DECREMENT:
            new = max(0, old - amount)
        else:
            new = old + amount
        if new != old:
            counter.set(name, new)
            changes[name] = (old, new)
    return changes


def render_response(invocation: CommandInvocation) -> str:
    definition = invocation.definition
    targets = definition.targets
    counter_name = targets[0] if targets else ""
    count = invocation.counter.get(counter_name) if invocation.counter and counter_name else 0

    values = {
        "count": str(count),
        "counter": counter_name,
        "amount": str(invocation.amount),
        "user": invocation.context.chatter_name or "",
    }
    return _VARIABLE_RE.sub(lambda m: values[m.group(1)], definition.response).strip()


class CommandProcessor:
    """Turn chat messages into counter updates and replies for one or many channels."""

    def __init__(
        self,
        counters: CounterStore,
        command_configs: ChatCommandConfigStore,
        users: UserStore,
        milestones: MilestoneNotifier,
        *,
        cooldowns: CooldownTracker | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if counters is None or command_configs is None or users is None or milestones is None:
            raise ValueError("counters, command_configs, users and milestones are required")
        self.counters = counters
        self.command_configs = command_configs
        self.users = users
        self.milestones = milestones
        self.cooldowns = cooldowns or CooldownTracker()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.counter_locks = KeyedLock()

    async def process(self, context: ChatCommandContext, reply_sender: ReplySender) -> bool:
        """Handle one chat message. Returns True when a command executed."""
        message = (context.message or "").strip()
        if not message.startswith("!") or not context.user_id:
            return False

        parts = message.split()
        trigger = parts[0].lower()

        try:
            stored = await self.command_configs.get_chat_commands(context.user_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            LOGGER.warning(
                f"Failed to load commands for {sanitize(context.user_id)}, using defaults: "
                f"{type(e).__name__}: {e}"
            )
            stored = None
        config = merge_with_defaults(stored)

        definition = config.find(trigger)
        if definition is None:
            return False

        if not has_permission(context, definition.permission):
            LOGGER.debug(f"{trigger} denied for {sanitize(context.chatter_name)} in {context.user_id}")
            return False

        now = self._clock()
        previous_use = self.cooldowns.last_used(context.user_id, trigger)
        if not self.cooldowns.try_acquire(context.user_id, trigger, definition.cooldown, now):
            LOGGER.debug(f"{trigger} on cooldown in {context.user_id}")
            return False

        invocation = CommandInvocation(
            context=context,
            trigger=trigger,
            definition=definition,
            amount=resolve_magnitude(
                definition,
                definition.action,
                parse_requested_amount(parts),
                config.effective_max_increment,
            ),
            reply_sender=reply_sender,
            now=now,
        )

        try:
            await self._execute(invocation)
        except asyncio.CancelledError:
            raise
        except Exception:
            # Failed runs must not burn the cooldown window
            self.cooldowns.release(context.user_id, trigger, previous_use)
            LOGGER.exception(f"Error processing {trigger} for {sanitize(context.user_id)}")
            return False

        await self._notify_milestones(invocation)
        await self._reply(invocation)
        return True

    async def _execute(self, invocation: CommandInvocation) -> None:
        user_id = invocation.context.user_id
        definition = invocation.definition

        async with self.counter_locks.hold(user_id):
            counter = await self.counters.get_counters(user_id) or Counter(user_id=user_id)
            invocation.counter = counter
            invocation.changes = apply_action(
                counter, definition.action, definition.targets, invocation.amount
            )
            if invocation.changes:
                counter.last_updated = invocation.now
                await self.counters.save_counters(counter)
                LOGGER.info(
                    f"{invocation.trigger} in {sanitize(user_id)}: "
                    + ", ".join(f"{k} {o}->{n}" for k, (o, n) in invocation.changes.items())
                )

    async def _notify_milestones(self, invocation: CommandInvocation) -> None:
        rising = {k: v for k, v in invocation.changes.items() if v[1] > v[0]}
        if not rising:
            return

        user_id = invocation.context.user_id
        try:
            user = await self.users.get_user(user_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception(f"Failed to load user {sanitize(user_id)} for milestone checks")
            return
        if user is None:
            return

        for name, (old, new) in rising.items():
            try:
                await self.milestones.check_and_send_milestone_notifications(
                    user,
                    name,
                    old,
                    new,
                    thresholds=invocation.definition.milestones or None,
                )
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception(f"Milestone check failed for {name} in {sanitize(user_id)}")

    async def _reply(self, invocation: CommandInvocation) -> None:
        if not invocation.definition.response:
            return
        text = render_response(invocation)
        if not text:
            return
        try:
            await invocation.reply_sender(invocation.context.user_id, text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            LOGGER.warning(
                f"Failed to send reply for {invocation.trigger} in "
                f"{sanitize(invocation.context.user_id)}: {type(e).__name__}: {e}"
            )
