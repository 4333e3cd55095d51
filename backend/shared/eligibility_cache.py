"""Bot eligibility cache: Redis when configured, in-process otherwise.

Both implementations fail open. A broken or missing Redis only costs an
extra moderator-list call, so every error is logged and turned into a miss.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from datetime import timedelta
from typing import Any

import redis.asyncio as redis
from cachetools import TLRUCache  # type: ignore[import-untyped]

from shared.logging_utils import sanitize
from shared.models import BotEligibilityResult

logger = logging.getLogger(__name__)

KEY_PREFIX = "botEligibility:v1"
DEFAULT_NAMESPACE = "default"


def build_key(namespace: str | None, broadcaster_id: str | None, bot_login_or_id: str | None) -> str:
    """Return ``botEligibility:v1:<ns>:<broadcaster>:<bot>``, every part trimmed and lower-cased."""
    ns = (namespace or "").strip().lower() or DEFAULT_NAMESPACE
    broadcaster = (broadcaster_id or "").strip().lower()
    bot = (bot_login_or_id or "").strip().lower()
    return f"{KEY_PREFIX}:{ns}:{broadcaster}:{bot}"


def _encode(result: BotEligibilityResult) -> str:
    return json.dumps(
        {"UseBot": result.use_bot, "BotUserId": result.bot_user_id, "Reason": result.reason}
    )


def _decode(raw: Any) -> BotEligibilityResult | None:
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    return BotEligibilityResult(
        use_bot=bool(data.get("UseBot", False)),
        bot_user_id=data.get("BotUserId") or None,
        reason=str(data.get("Reason") or ""),
    )


class RedisBotEligibilityCache:
    """Redis-backed eligibility cache.

    Connects lazily on first use and pings once. If the host is unset or the
    first connect fails, the cache stays disabled for the process lifetime.
    """

    def __init__(
        self,
        host: str | None,
        namespace: str | None = None,
        *,
        client_factory: Callable[[], Any] | None = None,
    ) -> None:
        self.host = (host or "").strip()
        self.namespace = namespace
        self._client_factory = client_factory
        self._client: Any = None
        self._connect_attempted = False
        self._connect_lock = asyncio.Lock()

    def key(self, broadcaster_id: str, bot_username: str) -> str:
        return build_key(self.namespace, broadcaster_id, bot_username)

    async def _get_client(self) -> Any:
        if not self.host and self._client_factory is None:
            return None
        if self._connect_attempted:
            return self._client

        async with self._connect_lock:
            if self._connect_attempted:
                return self._client
            self._connect_attempted = True
            self._client = await self._connect()
            return self._client

    async def _connect(self) -> Any:
        try:
            if self._client_factory is not None:
                client = self._client_factory()
            else:
                url = self.host if "://" in self.host else f"redis://{self.host}"
                client = redis.Redis.from_url(url, socket_timeout=2.0, socket_connect_timeout=2.0)
        except Exception as e:
            logger.warning(f"Failed to create Redis client host={sanitize(self.host)}: {e}")
            return None

        try:
            await client.ping()
        except Exception as e:
            logger.warning(
                f"Redis connected but not ready, disabling cache host={sanitize(self.host)}: {e}"
            )
            try:
                await client.aclose()
            except Exception:
                logger.debug("Ignoring error while closing unusable Redis client", exc_info=True)
            return None

        logger.info(f"Connected to Redis for eligibility caching host={sanitize(self.host)}")
        return client

    async def try_get(self, broadcaster_id: str, bot_username: str) -> BotEligibilityResult | None:
        try:
            client = await self._get_client()
            if client is None:
                return None
            raw = await client.get(self.key(broadcaster_id, bot_username))
            return _decode(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                f"Redis read failed for broadcaster {sanitize(broadcaster_id)}: "
                f"{type(e).__name__}: {e}"
            )
            return None

    async def set(
        self,
        broadcaster_id: str,
        bot_username: str,
        result: BotEligibilityResult,
        ttl: timedelta,
    ) -> None:
        try:
            client = await self._get_client()
            if client is None:
                return
            seconds = max(1, int(ttl.total_seconds()))
            await client.set(self.key(broadcaster_id, bot_username), _encode(result), ex=seconds)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                f"Redis write failed for broadcaster {sanitize(broadcaster_id)}: "
                f"{type(e).__name__}: {e}"
            )

    async def close(self) -> None:
        if self._client is not None and self._client_factory is None:
            await self._client.aclose()
        self._client = None


class MemoryBotEligibilityCache:
    """In-process eligibility cache with per-entry expiry."""

    def __init__(
        self,
        namespace: str | None = None,
        maxsize: int = 1024,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.namespace = namespace
        self._cache: TLRUCache = TLRUCache(
            maxsize=maxsize,
            ttu=lambda _key, value, now: now + value[1],
            timer=timer,
        )

    async def try_get(self, broadcaster_id: str, bot_username: str) -> BotEligibilityResult | None:
        entry = self._cache.get(build_key(self.namespace, broadcaster_id, bot_username))
        return entry[0] if entry is not None else None

    async def set(
        self,
        broadcaster_id: str,
        bot_username: str,
        result: BotEligibilityResult,
        ttl: timedelta,
    ) -> None:
        key = build_key(self.namespace, broadcaster_id, bot_username)
        self._cache[key] = (result, ttl.total_seconds())
