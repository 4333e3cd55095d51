"""In-process caching and per-key locking for Tallybot services.

``AsyncTTLCache`` keeps a fresh tier (cachetools.TTLCache) and a stale
last-known-good tier, so reads keep working while the database is down.
``KeyedLock`` hands out one asyncio.Lock per key and is shared by the cache
and by counter updates that must not interleave for the same broadcaster.
"""

import asyncio
import contextlib
import functools
import logging
from collections import OrderedDict
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, TypeVar

from cachetools import TTLCache  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)

# Distinguishes "not cached" from a cached None (e.g. unknown user)
_MISSING = object()

F = TypeVar("F", bound=Callable[..., Any])


class KeyedLock:
    """One asyncio.Lock per key, pruned once idle locks pile up.

    A lock counts as in use from the moment ``hold`` starts waiting on it
    until it is released, so a woken waiter never loses its lock to pruning.
    """

    def __init__(self, max_idle: int = 256) -> None:
        self._max_idle = max_idle
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            if len(self._locks) >= self._max_idle:
                self._prune()
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _prune(self) -> None:
        idle = [
            k for k, lock in self._locks.items() if not lock.locked() and not self._holders.get(k)
        ]
        for k in idle:
            del self._locks[k]

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self.get(key)
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._holders[key] - 1
            if remaining:
                self._holders[key] = remaining
            else:
                del self._holders[key]

    def __len__(self) -> int:
        return len(self._locks)


class AsyncTTLCache:
    """TTL cache whose expired entries stay readable as a fallback.

    ``lookup`` only sees fresh entries. ``fallback`` also sees entries the
    TTL has dropped, bounded LRU-style by *maxsize*.
    """

    def __init__(self, maxsize: int = 128, ttl: float = 60.0):
        self._maxsize = maxsize
        self._fresh: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._known: OrderedDict[str, Any] = OrderedDict()
        self.locks = KeyedLock(max_idle=maxsize * 2)

    def lookup(self, key: str) -> Any:
        return self._fresh.get(key, _MISSING)

    def fallback(self, key: str) -> Any:
        if key not in self._known:
            return _MISSING
        self._known.move_to_end(key)
        return self._known[key]

    def store(self, key: str, value: Any) -> None:
        self._fresh[key] = value
        self._known[key] = value
        self._known.move_to_end(key)
        if len(self._known) > self._maxsize:
            self._known.popitem(last=False)

    def invalidate(self, key: str) -> None:
        """Force the next read to hit the loader. The fallback copy is kept."""
        self._fresh.pop(key, None)


async def _load_with_retry(
    load: Callable[[], Awaitable[Any]], key: str, retry: int, retry_delay: float
) -> Any:
    for attempt in range(1, retry + 1):
        try:
            return await load()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if attempt == retry:
                raise
            delay = retry_delay * attempt
            logger.warning(
                "Load attempt %d/%d for %s failed: %s, retrying in %.1fs",
                attempt,
                retry,
                key,
                type(exc).__name__,
                delay,
            )
            await asyncio.sleep(delay)
    raise RuntimeError("retry must be at least 1")


def cached(
    cache: AsyncTTLCache,
    key_func: Callable[..., str],
    *,
    retry: int = 3,
    retry_delay: float = 1.0,
):
    """Cache an async loader's results, surviving database outages.

    *key_func* receives the loader's arguments. Concurrent misses for one
    key share a single load. When every attempt fails the last known value
    is served with a warning; without one the error propagates.

    The wrapper gains ``invalidate(*args)`` and ``prime(value, *args)``
    bound to the same key function.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            key = key_func(*args, **kwargs)

            value = cache.lookup(key)
            if value is not _MISSING:
                return value

            async with cache.locks.hold(key):
                value = cache.lookup(key)
                if value is not _MISSING:
                    return value
                try:
                    value = await _load_with_retry(
                        lambda: func(*args, **kwargs), key, retry, retry_delay
                    )
                except Exception as exc:
                    value = cache.fallback(key)
                    if value is _MISSING:
                        raise
                    logger.warning("Serving last known value for %s (%s)", key, type(exc).__name__)
                    return value

                cache.store(key, value)
                return value

        wrapper.invalidate = lambda *a, **kw: cache.invalidate(key_func(*a, **kw))  # type: ignore[attr-defined]
        wrapper.prime = lambda value, *a, **kw: cache.store(key_func(*a, **kw), value)  # type: ignore[attr-defined]
        return wrapper  # type: ignore[return-value]

    return decorator
