"""
Upstream result cache keyed by (feed, entity) with a feed-specific TTL.

Backed by Redis when a RedisManager is supplied, otherwise by an in-process
map with the same expiry semantics. A TTL of 0 means "never cache".
"""
from __future__ import annotations

import json
import time
from typing import Any, Callable, Optional

from shared.config import Settings, get_settings
from shared.utils.logging import get_logger
from shared.utils.metrics import CACHE_LOOKUPS
from shared.utils.redis_manager import RedisManager, feed_cache_key

logger = get_logger(__name__)


class ResultCache:
    def __init__(
        self,
        redis: RedisManager | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._redis = redis
        self._settings = settings or get_settings()
        self._clock = clock
        self._local: dict[str, tuple[float, str]] = {}

    @property
    def backend(self) -> str:
        return "redis" if self._redis is not None else "memory"

    def ttl_for(self, feed: str) -> int:
        return self._settings.cache_ttl_for(feed)

    async def get(self, feed: str, entity: str) -> Optional[Any]:
        """Return the cached value, or None on miss/expiry/uncached feed."""
        if self.ttl_for(feed) <= 0:
            return None
        key = feed_cache_key(feed, entity)
        if self._redis is not None:
            raw = await self._redis.get_snapshot(key)
        else:
            raw = self._get_local(key)
        if raw is None:
            CACHE_LOOKUPS.labels(feed=feed, result="miss").inc()
            return None
        CACHE_LOOKUPS.labels(feed=feed, result="hit").inc()
        return json.loads(raw)

    async def set(self, feed: str, entity: str, value: Any) -> bool:
        """Store a JSON-serialisable value. Returns False when the feed is not cached."""
        ttl = self.ttl_for(feed)
        if ttl <= 0:
            return False
        key = feed_cache_key(feed, entity)
        data = json.dumps(value)
        if self._redis is not None:
            await self._redis.set_snapshot(key, data, ttl_s=ttl)
        else:
            self._sweep_local()
            self._local[key] = (self._clock() + ttl, data)
        return True

    def _sweep_local(self) -> None:
        """Drop expired entries, including keys that are never read again."""
        now = self._clock()
        for key in [k for k, (expires_at, _) in self._local.items() if now >= expires_at]:
            del self._local[key]

    def _get_local(self, key: str) -> Optional[str]:
        entry = self._local.get(key)
        if entry is None:
            return None
        expires_at, data = entry
        if self._clock() >= expires_at:
            del self._local[key]
            return None
        return data
