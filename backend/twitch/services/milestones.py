"""Milestone notifications for counter threshold crossings."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from shared.logging_utils import sanitize
from shared.models import User
from shared.protocols import NotificationChannel, OverlayNotifier, ReplySender

LOGGER = logging.getLogger("Milestones")

_EVENT_NAMES = {
    "deaths": "death_milestone",
    "swears": "swear_milestone",
    "screams": "scream_milestone",
}

_EMOJI = {
    "deaths": "💀",
    "swears": "🤬",
    "screams": "😱",
}


def crossed_thresholds(thresholds: Iterable[int], old_value: int, new_value: int) -> list[int]:
    """Thresholds with ``old < t <= new``, ascending, without duplicates."""
    return sorted({t for t in thresholds if old_value < t <= new_value})


def event_name_for(counter_name: str) -> str:
    counter_name = counter_name.lower()
    return _EVENT_NAMES.get(counter_name, f"{counter_name}_milestone")


def milestone_message(counter_name: str, milestone: int, new_value: int) -> str:
    emoji = _EMOJI.get(counter_name.lower(), "🎉")
    return (
        f"{emoji} MILESTONE REACHED! {milestone} {counter_name.upper()}! "
        f"Current count: {new_value} {emoji}"
    )


class MilestoneNotifier:
    """Fan a crossed threshold out to the webhook, chat and overlay.

    Each channel is attempted independently; one failing never stops the
    others or the next threshold.
    """

    def __init__(
        self,
        notification_channel: NotificationChannel,
        overlay: OverlayNotifier,
        chat_sender: ReplySender,
    ) -> None:
        if notification_channel is None or overlay is None or chat_sender is None:
            raise ValueError("notification_channel, overlay and chat_sender are required")
        self.notification_channel = notification_channel
        self.overlay = overlay
        self.chat_sender = chat_sender

    async def check_and_send_milestone_notifications(
        self,
        user: User,
        counter_name: str,
        old_value: int,
        new_value: int,
        *,
        thresholds: Iterable[int] | None = None,
    ) -> list[int]:
        """Notify for every threshold crossed by ``old_value -> new_value``.

        *thresholds* overrides the user's configured thresholds for this
        counter (commands may carry their own). Returns the fired thresholds.
        """
        settings = user.notification_settings
        if settings is None:
            return []
        if not settings.chat_enabled and not settings.external_enabled:
            return []

        counter_name = counter_name.lower()
        candidates = list(thresholds or [])
        if not candidates:
            candidates = settings.thresholds.get(counter_name, [])
        all_thresholds = sorted(set(candidates))
        fired = crossed_thresholds(all_thresholds, old_value, new_value)
        if not fired:
            return []

        remaining = _remaining_to_next(all_thresholds, new_value)

        for milestone in fired:
            previous = max((t for t in all_thresholds if t < milestone), default=0)
            LOGGER.info(
                f"Milestone reached: {counter_name} {milestone} for user {sanitize(user.username)}"
            )

            if settings.external_enabled:
                await self._guard(
                    "external",
                    user,
                    lambda: self.notification_channel.send_notification(
                        user,
                        event_name_for(counter_name),
                        {
                            "count": milestone,
                            "actualCount": new_value,
                            "previousMilestone": previous,
                        },
                    ),
                )

            if settings.chat_enabled:
                message = milestone_message(counter_name, milestone, new_value)
                await self._guard("chat", user, lambda: self.chat_sender(user.user_id, message))

            await self._guard(
                "overlay",
                user,
                lambda: self.overlay.notify_milestone_reached(
                    user.user_id, counter_name, milestone, new_value, remaining
                ),
            )

        return fired

    async def _guard(self, channel: str, user: User, send) -> None:
        try:
            await send()
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception(
                f"Failed to deliver {channel} milestone notification for {sanitize(user.username)}"
            )


def _remaining_to_next(thresholds: list[int], new_value: int) -> int | None:
    for threshold in thresholds:
        if threshold > new_value:
            return threshold - new_value
    return None
