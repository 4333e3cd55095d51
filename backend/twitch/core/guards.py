"""Shared command guards: permission ladder, cooldown tracking, amount rules."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone

from shared.models import ChatCommandContext, ChatCommandDefinition, CommandAction, PermissionLevel

LOGGER = logging.getLogger("CommandGuard")


def actor_level(context: ChatCommandContext) -> PermissionLevel:
    """Highest level the chatter holds. The broadcaster always counts as moderator and above."""
    if context.is_broadcaster:
        return PermissionLevel.BROADCASTER
    if context.is_moderator:
        return PermissionLevel.MODERATOR
    if context.is_subscriber:
        return PermissionLevel.SUBSCRIBER
    return PermissionLevel.EVERYONE


def has_permission(context: ChatCommandContext, required: PermissionLevel) -> bool:
    return actor_level(context) >= required


class CooldownTracker:
    """In-memory cooldown tracker (reset on bot restart).

    key: (broadcaster_id, command_name). A timestamp is only recorded when
    the invocation is allowed, so dropped attempts never extend the window.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last_used: dict[tuple[str, str], datetime] = {}

    def try_acquire(
        self,
        broadcaster_id: str,
        command_name: str,
        cooldown_seconds: int,
        now: datetime | None = None,
    ) -> bool:
        """Return True and record *now* if the command may run, else False."""
        now = now or datetime.now(timezone.utc)
        key = (broadcaster_id.lower(), command_name.lower())
        with self._lock:
            last = self._last_used.get(key)
            if (
                cooldown_seconds > 0
                and last is not None
                and (now - last).total_seconds() < cooldown_seconds
            ):
                return False
            self._last_used[key] = now
            return True

    def release(self, broadcaster_id: str, command_name: str, previous: datetime | None) -> None:
        """Undo a recorded use, restoring *previous* (or clearing the slot)."""
        key = (broadcaster_id.lower(), command_name.lower())
        with self._lock:
            if previous is None:
                self._last_used.pop(key, None)
            else:
                self._last_used[key] = previous

    def last_used(self, broadcaster_id: str, command_name: str) -> datetime | None:
        with self._lock:
            return self._last_used.get((broadcaster_id.lower(), command_name.lower()))

    def clear(self) -> None:
        with self._lock:
            self._last_used.clear()


def resolve_magnitude(
    definition: ChatCommandDefinition,
    action: CommandAction,
    requested: int | None = None,
    max_amount: int = 1,
) -> int:
    """Amount a counter command moves by.

    An explicit positive amount typed in chat wins, clamped to
    ``[1, max_amount]``, but only on channels that allow more than 1; a
    channel at the default max keeps the configured magnitude. Otherwise
    decrement uses ``decrement_by``, then ``increment_by``, then 1;
    increment uses ``increment_by``, then 1.
    """
    if requested is not None and requested > 0 and max_amount > 1:
        return min(requested, max_amount)

    if action is CommandAction.DECREMENT:
        if definition.decrement_by:
            return abs(definition.decrement_by)
        if definition.increment_by:
            return abs(definition.increment_by)
        return 1

    if definition.increment_by:
        return abs(definition.increment_by)
    return 1
