"""
Cache-checked upstream fetch.

``FeedFetcher.fetch`` answers from the result cache when a fresh entry exists,
otherwise performs the paced HTTP call and stores the decoded body with the
feed's TTL. Upstream failures always propagate: a stale entry is never served
in place of a failed call.
"""
from __future__ import annotations

from typing import Any

from shared.models.enums import FeedType
from shared.utils.cache import ResultCache
from shared.utils.http_client import FeedHTTPClient
from shared.utils.logging import get_logger

logger = get_logger(__name__)


class FeedFetcher:
    def __init__(self, client: FeedHTTPClient, cache: ResultCache) -> None:
        self._client = client
        self._cache = cache

    @property
    def client(self) -> FeedHTTPClient:
        return self._client

    async def fetch(
        self,
        feed_type: FeedType,
        entity_key: str,
        url: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        feed = feed_type.value
        cached = await self._cache.get(feed, entity_key)
        if cached is not None:
            logger.debug("fetch_cache_hit", feed=feed, entity=entity_key)
            return cached

        payload = await self._client.get_json(url, params=params)
        await self._cache.set(feed, entity_key, payload)
        return payload
