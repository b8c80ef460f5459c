"""
Abstract base class for feed adapters.
Defines the normalize/apply contract every feed implements and the per-run
result container reported back to the job queue.
"""
from __future__ import annotations

import abc
from typing import Any, Generic, Optional, Sequence, TypeVar

from shared.config import Settings, get_settings
from shared.models.enums import FeedType
from shared.utils.logging import get_logger
from shared.utils.metrics import ENTITIES_APPLIED

from ingest.fetcher import FeedFetcher
from store.gateway import StoreGateway

logger = get_logger(__name__)

EntityT = TypeVar("EntityT")


class FeedResult:
    """Container for one adapter run with mapped/failed/skipped counts."""

    def __init__(self, feed: FeedType) -> None:
        self.feed = feed
        self.mapped = 0
        self.failed = 0
        self.skipped = 0
        self.detail: dict[str, Any] = {}

    def record(self, result: str, count: int = 1) -> None:
        setattr(self, result, getattr(self, result) + count)
        ENTITIES_APPLIED.labels(feed=self.feed.value, result=result).inc(count)

    def to_dict(self) -> dict[str, Any]:
        return {
            "feed": self.feed.value,
            "mapped": self.mapped,
            "failed": self.failed,
            "skipped": self.skipped,
            **self.detail,
        }


class BaseFeedAdapter(abc.ABC, Generic[EntityT]):
    """
    Abstract base class for feed adapters.

    Subclasses translate one upstream schema into canonical entities
    (``normalize``) and push those entities through the store gateway
    (``apply``). ``run`` is the job processor entrypoint.
    """

    feed_type: FeedType

    def __init__(
        self,
        gateway: StoreGateway,
        fetcher: Optional[FeedFetcher] = None,
        settings: Settings | None = None,
    ) -> None:
        self._gateway = gateway
        self._fetcher = fetcher
        self._settings = settings or get_settings()

    @property
    def fetcher(self) -> FeedFetcher:
        if self._fetcher is None:
            raise RuntimeError(f"{self.feed_type.value} adapter has no fetcher configured")
        return self._fetcher

    async def start(self) -> None:
        if self._fetcher is not None:
            await self._fetcher.client.start()

    async def close(self) -> None:
        if self._fetcher is not None:
            await self._fetcher.client.close()

    @abc.abstractmethod
    def normalize(self, raw: Any) -> Sequence[EntityT]:
        """Map raw upstream JSON onto canonical entities."""

    @abc.abstractmethod
    async def apply(self, entities: Sequence[EntityT], result: FeedResult) -> None:
        """Write canonical entities through the store gateway."""

    @abc.abstractmethod
    async def run(self, payload: dict[str, Any]) -> FeedResult:
        """Execute one job: fetch, normalize and apply."""

    def _new_result(self) -> FeedResult:
        return FeedResult(self.feed_type)

    def _log_result(self, result: FeedResult) -> FeedResult:
        logger.info(f"{self.feed_type.value}_feed_applied", **result.to_dict())
        return result
