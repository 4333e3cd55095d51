"""Repository for the users table."""

from __future__ import annotations

import json
import logging
from typing import Any

import asyncpg

from shared.cache import AsyncTTLCache, cached
from shared.database import load_json, retry_on_db_error
from shared.models import NotificationSettings, User

logger = logging.getLogger(__name__)

# Short TTL: tokens are rewritten on refresh, and writes invalidate anyway
_user_cache = AsyncTTLCache(maxsize=256, ttl=300)

_USER_COLUMNS = (
    "user_id, username, display_name, access_token, refresh_token, token_expiry, "
    "is_active, notification_settings, webhook_url, created_at, updated_at"
)


def _parse_notification_settings(raw: Any) -> NotificationSettings | None:
    data = load_json(raw, None, column="notification_settings")
    if not isinstance(data, dict):
        return None

    thresholds: dict[str, list[int]] = {}
    raw_thresholds = data.get("thresholds")
    if isinstance(raw_thresholds, dict):
        for name, values in raw_thresholds.items():
            if not isinstance(values, list):
                continue
            parsed = []
            for value in values:
                try:
                    parsed.append(int(value))
                except (TypeError, ValueError):
                    continue
            thresholds[str(name).lower()] = parsed

    return NotificationSettings(
        chat_enabled=bool(data.get("chat_enabled", False)),
        external_enabled=bool(data.get("external_enabled", False)),
        thresholds=thresholds,
    )


def _dump_notification_settings(settings: NotificationSettings | None) -> str | None:
    if settings is None:
        return None
    return json.dumps(
        {
            "chat_enabled": settings.chat_enabled,
            "external_enabled": settings.external_enabled,
            "thresholds": settings.thresholds,
        }
    )


def _row_to_user(row: asyncpg.Record) -> User:
    data = dict(row)
    data["notification_settings"] = _parse_notification_settings(data.get("notification_settings"))
    return User(**data)


class UserRepository:
    """Pure SQL operations for users."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    @cached(cache=_user_cache, key_func=lambda self, user_id: f"user:{user_id}")
    async def get_user(self, user_id: str) -> User | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_USER_COLUMNS} FROM users WHERE user_id = $1",
                user_id,
            )
            if not row:
                return None
            return _row_to_user(row)

    async def list_active_users(self) -> list[User]:
        """Return every active user. Warms the per-user cache as a side effect."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_USER_COLUMNS} FROM users WHERE is_active = TRUE ORDER BY user_id"
            )
        users = [_row_to_user(r) for r in rows]
        for user in users:
            self.get_user.prime(user, self, user.user_id)
        return users

    async def save_user(self, user: User) -> None:
        """Insert or update a user row."""

        async def _do() -> None:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO users (user_id, username, display_name, access_token,
                                       refresh_token, token_expiry, is_active,
                                       notification_settings, webhook_url)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    ON CONFLICT (user_id) DO UPDATE SET
                        username              = EXCLUDED.username,
                        display_name          = EXCLUDED.display_name,
                        access_token          = EXCLUDED.access_token,
                        refresh_token         = EXCLUDED.refresh_token,
                        token_expiry          = EXCLUDED.token_expiry,
                        is_active             = EXCLUDED.is_active,
                        notification_settings = EXCLUDED.notification_settings,
                        webhook_url           = EXCLUDED.webhook_url,
                        updated_at            = NOW()
                    """,
                    user.user_id,
                    user.username,
                    user.display_name,
                    user.access_token,
                    user.refresh_token,
                    user.token_expiry,
                    user.is_active,
                    _dump_notification_settings(user.notification_settings),
                    user.webhook_url,
                )

        await retry_on_db_error(_do)
        self.get_user.invalidate(self, user.user_id)
