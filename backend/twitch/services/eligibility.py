"""Decide whether the shared bot account may post in a broadcaster's chat.

The bot is eligible only when it appears in the channel's moderator list.
Decisions are cached: three hours when Twitch gave a definite answer,
thirty seconds when the lookup itself blew up.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from shared.logging_utils import sanitize
from shared.models import BotEligibilityResult
from shared.protocols import EligibilityCache, ModeratorLister

LOGGER = logging.getLogger("BotEligibility")

RESULT_TTL = timedelta(hours=3)
ERROR_TTL = timedelta(seconds=30)


def _find_moderator(moderators: list[dict[str, str]], bot_login_or_id: str) -> dict[str, str] | None:
    wanted = bot_login_or_id.strip().lower()
    for moderator in moderators:
        if (moderator.get("user_id") or "").lower() == wanted:
            return moderator
        if (moderator.get("user_login") or "").lower() == wanted:
            return moderator
    return None


class BotEligibilityResolver:
    """Resolve and cache bot eligibility per broadcaster. Never raises."""

    def __init__(
        self,
        moderators: ModeratorLister,
        cache: EligibilityCache,
        bot_username: str | None,
    ) -> None:
        if moderators is None or cache is None:
            raise ValueError("moderators and cache are required")
        self.moderators = moderators
        self.cache = cache
        self.bot_username = (bot_username or "").strip()

    async def get_eligibility(
        self, broadcaster_id: str | None, broadcaster_access_token: str | None
    ) -> BotEligibilityResult:
        if not broadcaster_id or not broadcaster_id.strip():
            return BotEligibilityResult(False, None, "Missing broadcaster user id")
        if not broadcaster_access_token or not broadcaster_access_token.strip():
            return BotEligibilityResult(False, None, "Missing broadcaster access token")
        if not self.bot_username:
            return BotEligibilityResult(False, None, "BotUsername is not configured")

        cached = await self.cache.try_get(broadcaster_id, self.bot_username)
        if cached is not None:
            return cached

        result, ttl = await self._check_moderators(broadcaster_id, broadcaster_access_token)
        await self.cache.set(broadcaster_id, self.bot_username, result, ttl)
        return result

    async def _check_moderators(
        self, broadcaster_id: str, access_token: str
    ) -> tuple[BotEligibilityResult, timedelta]:
        try:
            status, moderators = await self.moderators.get_moderators(broadcaster_id, access_token)
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception(
                f"Failed to determine bot eligibility for broadcaster {sanitize(broadcaster_id)}"
            )
            return BotEligibilityResult(False, None, "Error checking moderators"), ERROR_TTL

        if status == 401:
            return (
                BotEligibilityResult(
                    False, None, "Unauthorized: broadcaster token is invalid or expired"
                ),
                RESULT_TTL,
            )
        if status == 403:
            return (
                BotEligibilityResult(
                    False, None, "Broadcaster token lacks moderation:read (cannot check moderators)"
                ),
                RESULT_TTL,
            )
        if status != 200:
            return (
                BotEligibilityResult(False, None, f"Failed to check moderators ({status})"),
                RESULT_TTL,
            )

        moderator = _find_moderator(moderators, self.bot_username)
        if moderator is None:
            return (
                BotEligibilityResult(False, None, "Bot is not a moderator in this channel"),
                RESULT_TTL,
            )

        LOGGER.debug(f"Bot {self.bot_username} is a moderator for {sanitize(broadcaster_id)}")
        return (
            BotEligibilityResult(True, moderator.get("user_id"), "Bot is a moderator"),
            RESULT_TTL,
        )
