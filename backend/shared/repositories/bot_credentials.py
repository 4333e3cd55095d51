"""Repository for the bot_credentials table (the shared bot account's tokens)."""

from __future__ import annotations

import logging

import asyncpg

from shared.database import retry_on_db_error
from shared.models import BotCredentials

logger = logging.getLogger(__name__)


class BotCredentialRepository:
    """Pure SQL operations for bot_credentials, scoped to one bot username."""

    def __init__(self, pool: asyncpg.Pool, bot_username: str) -> None:
        self.pool = pool
        self.bot_username = bot_username.strip().lower()

    async def get_bot_credentials(self) -> BotCredentials | None:
        if not self.bot_username:
            return None
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT username, user_id, access_token, refresh_token, token_expiry, updated_at "
                "FROM bot_credentials WHERE username = $1",
                self.bot_username,
            )
            if not row:
                return None
            return BotCredentials(**dict(row))

    async def save_bot_credentials(self, credentials: BotCredentials) -> None:
        async def _do() -> None:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO bot_credentials (username, user_id, access_token,
                                                 refresh_token, token_expiry)
                    VALUES ($1, $2, $3, $4, $5)
                    ON CONFLICT (username) DO UPDATE SET
                        user_id       = EXCLUDED.user_id,
                        access_token  = EXCLUDED.access_token,
                        refresh_token = EXCLUDED.refresh_token,
                        token_expiry  = EXCLUDED.token_expiry,
                        updated_at    = NOW()
                    """,
                    credentials.username.strip().lower(),
                    credentials.user_id,
                    credentials.access_token,
                    credentials.refresh_token,
                    credentials.token_expiry,
                )

        await retry_on_db_error(_do)
