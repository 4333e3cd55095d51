"""Repository for chat_command_configs: one JSON command table per channel."""

from __future__ import annotations

import json
import logging

import asyncpg

from shared.cache import AsyncTTLCache, cached
from shared.database import load_json, retry_on_db_error
from shared.models import ChatCommandConfiguration

logger = logging.getLogger(__name__)

# In-process cache; writes through this repository invalidate immediately.
_cmd_cache = AsyncTTLCache(maxsize=256, ttl=600)


class ChatCommandConfigRepository:
    """Pure SQL operations for chat_command_configs."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    @cached(
        cache=_cmd_cache,
        key_func=lambda self, user_id: f"chat_commands:{user_id}",
    )
    async def get_chat_commands(self, user_id: str) -> ChatCommandConfiguration:
        """Stored commands for a channel. Missing or malformed rows give an empty table."""
        async with self.pool.acquire() as conn:
            raw = await conn.fetchval(
                "SELECT config FROM chat_command_configs WHERE user_id = $1",
                user_id,
            )
        data = load_json(raw, {}, column="chat_command_configs.config")
        if not isinstance(data, dict):
            return ChatCommandConfiguration()
        return ChatCommandConfiguration.from_dict(data)

    async def save_chat_commands(self, user_id: str, config: ChatCommandConfiguration) -> None:
        payload = json.dumps(config.to_dict())

        async def _do() -> None:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO chat_command_configs (user_id, config)
                    VALUES ($1, $2)
                    ON CONFLICT (user_id) DO UPDATE SET
                        config     = EXCLUDED.config,
                        updated_at = NOW()
                    """,
                    user_id,
                    payload,
                )

        await retry_on_db_error(_do)
        self.get_chat_commands.invalidate(self, user_id)
        logger.info(f"Saved {len(config.commands)} chat commands for {user_id}")
