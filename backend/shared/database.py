"""PostgreSQL pool lifecycle, write retries and JSON column decoding.

One pool per process. The bot keeps a couple of warm connections: counter
commands arrive in bursts during a stream and must not pay a connect each.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import asyncpg

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PoolConfig:
    """asyncpg pool sizing plus the startup retry policy."""

    min_size: int = 1
    max_size: int = 5
    timeout: float = 5.0
    command_timeout: float = 15.0
    max_inactive_connection_lifetime: float = 300.0
    connect_attempts: int = 3
    connect_backoff: float = 3.0
    # asyncpg ssl mode: 'disable' | 'prefer' | 'require' | ...
    ssl: str = "prefer"


async def retry_on_db_error(
    func: Callable[[], Awaitable[T]], max_retries: int = 2, backoff: float = 0.5
) -> T:
    """Run a write, retrying transient failures with linear backoff."""
    attempt = 1
    while True:
        try:
            return await func()
        except asyncio.CancelledError:
            raise
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            if attempt >= max_retries:
                logger.exception(f"DB write failed after {attempt} attempts")
                raise
            delay = backoff * attempt
            logger.warning(f"DB write attempt {attempt} failed ({type(e).__name__}), retry in {delay}s")
            await asyncio.sleep(delay)
            attempt += 1


class DatabaseManager:
    """Owns the asyncpg pool: open with backoff, health probe, close."""

    def __init__(self, database_url: str, config: PoolConfig | None = None):
        self.database_url = database_url
        self.config = config or PoolConfig()
        self._pool: asyncpg.Pool | None = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("DatabaseManager.connect() has not completed")
        return self._pool

    async def _open_verified_pool(self) -> asyncpg.Pool:
        cfg = self.config
        pool = await asyncpg.create_pool(
            dsn=self.database_url,
            min_size=cfg.min_size,
            max_size=cfg.max_size,
            timeout=cfg.timeout,
            command_timeout=cfg.command_timeout,
            max_inactive_connection_lifetime=cfg.max_inactive_connection_lifetime,
            ssl=cfg.ssl,
        )
        try:
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
        except BaseException:
            await pool.close()
            raise
        return pool

    async def connect(self) -> None:
        """Open the pool, backing off exponentially. Raises after the last attempt."""
        if self._pool is not None:
            return

        cfg = self.config
        for attempt in range(1, cfg.connect_attempts + 1):
            try:
                self._pool = await self._open_verified_pool()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if attempt == cfg.connect_attempts:
                    logger.exception(f"Could not reach PostgreSQL after {attempt} attempts")
                    raise
                delay = cfg.connect_backoff * 2 ** (attempt - 1)
                logger.warning(
                    f"PostgreSQL not reachable ({type(e).__name__}: {e or repr(e)}), "
                    f"attempt {attempt}/{cfg.connect_attempts}, retry in {delay}s"
                )
                await asyncio.sleep(delay)
            else:
                logger.info(f"Database pool ready ({cfg.min_size}-{cfg.max_size} connections)")
                return

    async def disconnect(self) -> None:
        pool, self._pool = self._pool, None
        if pool is None:
            return
        try:
            await pool.close()
        except Exception as e:
            logger.warning(f"Error closing database pool: {type(e).__name__}: {e}")
        else:
            logger.info("Database pool closed")

    async def check_health(self) -> bool:
        if self._pool is None:
            return False
        try:
            async with self._pool.acquire(timeout=2.0) as conn:
                return await conn.fetchval("SELECT 1") == 1
        except Exception:
            return False


def load_json(raw: Any, default: T, *, column: str = "json") -> Any | T:
    """Decode a TEXT/JSONB column. Malformed or empty values yield *default*."""
    if raw is None or raw == "":
        return default
    if isinstance(raw, (dict, list)):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"Malformed {column} column, using defaults")
        return default
