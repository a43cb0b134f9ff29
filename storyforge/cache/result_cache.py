"""
Result cache for expensive, deterministic sub-results.

Keyed by content fingerprint, every entry carries its own TTL. Two backends:
- In-memory OrderedDict with LRU eviction (default, for dev/testing)
- Redis (shared across workers and restarts)

Full generation outputs are never cached; each request must produce its own
content so it can be reviewed on its own.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Callable

import redis.asyncio as aioredis

from storyforge.observability.metrics import cache_lookups

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 86400


class ResultCache(ABC):
    namespace: str = "storyforge"

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def put(self, key: str, value: str, ttl_seconds: float | None = None) -> None: ...

    @abstractmethod
    async def invalidate(self, key: str) -> None: ...

    async def close(self) -> None:
        pass


class InMemoryResultCache(ResultCache):

    def __init__(
        self,
        capacity: int = 1024,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        namespace: str = "storyforge",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("cache capacity must be >= 1")
        self._capacity = capacity
        self._default_ttl = default_ttl
        self.namespace = namespace
        self._clock = clock
        self._entries: OrderedDict[str, tuple[str, float]] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> str | None:
        full_key = self._key(key)
        with self._lock:
            entry = self._entries.get(full_key)
            if entry is None:
                cache_lookups.labels(result="miss").inc()
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[full_key]
                cache_lookups.labels(result="expired").inc()
                return None
            self._entries.move_to_end(full_key)
        cache_lookups.labels(result="hit").inc()
        return value

    async def put(self, key: str, value: str, ttl_seconds: float | None = None) -> None:
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        full_key = self._key(key)
        with self._lock:
            self._entries[full_key] = (value, self._clock() + ttl)
            self._entries.move_to_end(full_key)
            while len(self._entries) > self._capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Cache evicted %s", evicted[:48])

    async def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(self._key(key), None)


class RedisResultCache(ResultCache):

    def __init__(
        self,
        redis_url: str,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        namespace: str = "storyforge",
    ) -> None:
        self._redis = aioredis.from_url(redis_url, decode_responses=True)
        self._default_ttl = default_ttl
        self.namespace = namespace

    async def get(self, key: str) -> str | None:
        value = await self._redis.get(self._key(key))
        cache_lookups.labels(result="hit" if value is not None else "miss").inc()
        return value

    async def put(self, key: str, value: str, ttl_seconds: float | None = None) -> None:
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        await self._redis.set(self._key(key), value, ex=max(1, int(ttl)))

    async def invalidate(self, key: str) -> None:
        await self._redis.delete(self._key(key))

    async def close(self) -> None:
        await self._redis.aclose()


def build_cache(
    redis_url: str | None = None,
    capacity: int = 1024,
    default_ttl: float = DEFAULT_TTL_SECONDS,
) -> ResultCache:
    if redis_url:
        logger.info("Using Redis result cache")
        return RedisResultCache(redis_url, default_ttl=default_ttl)
    return InMemoryResultCache(capacity=capacity, default_ttl=default_ttl)
