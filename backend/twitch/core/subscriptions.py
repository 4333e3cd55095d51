"""EventSub subscriptions every monitored channel gets."""

from __future__ import annotations

from typing import Any

from twitchio import eventsub


def get_channel_subscriptions(
    broadcaster_user_id: str, reader_user_id: str | None = None, *, include_chat: bool = True
) -> list[eventsub.SubscriptionPayload]:
    """Generate standard EventSub subscriptions for a channel.

    Stream lifecycle comes first so a chat-scope failure never costs them.
    """
    subs: list[eventsub.SubscriptionPayload] = [
        eventsub.StreamOnlineSubscription(broadcaster_user_id=broadcaster_user_id),
        eventsub.StreamOfflineSubscription(broadcaster_user_id=broadcaster_user_id),
    ]
    if include_chat:
        subs.append(
            eventsub.ChatMessageSubscription(
                broadcaster_user_id=broadcaster_user_id,
                user_id=reader_user_id or broadcaster_user_id,
            )
        )
    return subs


def subscription_request(payload: eventsub.SubscriptionPayload) -> tuple[str, str, dict[str, Any]]:
    """``(type, version, condition)`` for the Helix create-subscription body."""
    sub_type = getattr(payload.type, "value", payload.type)
    return str(sub_type), str(payload.version), dict(payload.condition)
