"""
Composition root for the sync engine.

Builds every component once, registers one processor per queue and the
default job table, and exposes the operator surfaces (trigger, status, logs)
plus the leaderboard read queries.
"""
from __future__ import annotations

import asyncio
import signal
from collections import deque
from typing import Any, Optional

import httpx

from shared.config import Settings, get_settings
from shared.models.domain import JobRecord, LeaderboardEntry, SubjectStats
from shared.models.enums import FeedType, QueueName
from shared.utils.cache import ResultCache
from shared.utils.database import DatabaseManager
from shared.utils.http_client import FeedHTTPClient
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server
from shared.utils.rate_limiter import HostPacer
from shared.utils.redis_manager import RedisManager
from shared.utils.timeutil import utcnow

from ingest.feeds.base import BaseFeedAdapter
from ingest.feeds.game_status import GameStatusFeed
from ingest.feeds.injuries import InjuryFeed
from ingest.feeds.odds import OddsFeed
from ingest.feeds.records import RecordsFeed
from ingest.feeds.weather import WeatherFeed
from ingest.fetcher import FeedFetcher
from scheduler.queue import Job, JobQueue
from scheduler.service import Scheduler
from scoring.engine import ScoringEngine
from settlement.gate import SettlementGate
from settlement.leaderboard import LeaderboardAggregator
from store.gateway import StoreGateway

logger = get_logger(__name__)

# (job name, cron expression, queue)
JOB_TABLE: list[tuple[str, str, QueueName]] = [
    ("injury-updates", "0 8,18 * * *", QueueName.INJURIES),
    ("odds-updates", "0 9,19 * * *", QueueName.ODDS),
    ("records-updates", "0 7 * * *", QueueName.RECORDS),
    ("weather-updates", "0 10,20 * * *", QueueName.WEATHER),
    ("game-status", "*/30 * * * *", QueueName.GAME_STATUS),
    ("fixture-locks", "*/15 * * * *", QueueName.GAME_STATUS),
    ("leaderboard-settlement", "0 6 * * 2", QueueName.SETTLEMENT),
]

FIXTURE_LOCKS_JOB = "fixture-locks"
RECENT_OUTCOMES_IN_STATUS = 10


class SyncRuntime:
    def __init__(
        self,
        settings: Settings | None = None,
        db: DatabaseManager | None = None,
        redis: RedisManager | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.db = db or DatabaseManager(self._settings)
        if redis is None and self._settings.redis_url:
            redis = RedisManager(self._settings)
        self.redis = redis
        self.gateway = StoreGateway(self.db)
        self.cache = ResultCache(self.redis, self._settings)
        self._pacer = HostPacer(self._settings.inter_request_delay_s)

        def fetcher(feed: FeedType) -> FeedFetcher:
            client = FeedHTTPClient(
                feed.value,
                pacer=self._pacer,
                transport=transport,
                settings=self._settings,
                headers={"Accept": "application/json"},
            )
            return FeedFetcher(client, self.cache)

        self.scoring = ScoringEngine(self.gateway, self._settings)
        self.gate = SettlementGate(self.gateway, self._settings)
        self.aggregator = LeaderboardAggregator(self.gateway, self.gate)
        self.game_status = GameStatusFeed(
            self.gateway, fetcher(FeedType.GAME_STATUS), self.scoring, self._settings, gate=self.gate
        )
        self.feeds: dict[FeedType, BaseFeedAdapter[Any]] = {
            FeedType.INJURIES: InjuryFeed(self.gateway, fetcher(FeedType.INJURIES), self._settings),
            FeedType.ODDS: OddsFeed(self.gateway, fetcher(FeedType.ODDS), self._settings),
            FeedType.WEATHER: WeatherFeed(self.gateway, fetcher(FeedType.WEATHER), self._settings),
            FeedType.RECORDS: RecordsFeed(self.gateway, None, self._settings),
            FeedType.GAME_STATUS: self.game_status,
        }

        self.queue = JobQueue(self._settings, on_finished=self._record_outcome, store=self.gateway)
        self.scheduler = Scheduler(self.queue, self._settings)
        self._recent: deque[JobRecord] = deque(maxlen=self._settings.recent_log_size)
        self._scheduler_task: Optional[asyncio.Task[None]] = None
        self._started = False

        self._register_processors()

    # ── Wiring ──────────────────────────────────────────────────────────

    def _register_processors(self) -> None:
        for feed_type in (FeedType.INJURIES, FeedType.ODDS, FeedType.WEATHER, FeedType.RECORDS):
            self.queue.register(feed_type.value, self._feed_processor(feed_type))
        self.queue.register(QueueName.GAME_STATUS.value, self._process_game_status)
        self.queue.register(QueueName.SETTLEMENT.value, self._process_settlement)

    def register_default_jobs(self) -> None:
        overrides = self._settings.schedule_overrides
        for name, schedule, queue in JOB_TABLE:
            self.scheduler.register(
                name, overrides.get(name, schedule), self._settings.scheduler_timezone, queue.value
            )

    def _feed_processor(self, feed_type: FeedType):
        feed = self.feeds[feed_type]

        async def process(job: Job) -> dict[str, Any]:
            result = await feed.run(job.payload)
            return result.to_dict()

        return process

    async def _process_game_status(self, job: Job) -> dict[str, Any]:
        if job.name == FIXTURE_LOCKS_JOB:
            result = await self.game_status.lock_started(job.payload)
        else:
            result = await self.game_status.run(job.payload)
        return result.to_dict()

    async def _process_settlement(self, job: Job) -> dict[str, Any]:
        """Full rescore, then settlement evaluation, then the run marker."""
        changed = await self.scoring.recompute()
        newly_settled = await self.gate.evaluate()
        settled_total = len(await self.gateway.settled_periods())
        await self.gateway.record_leaderboard_run(utcnow(), settled_total, changed)
        return {"predictions_changed": changed, "newly_settled": newly_settled, "settled_periods": settled_total}

    async def _record_outcome(self, job: Job, record: JobRecord) -> None:
        self._recent.appendleft(record)
        await self.gateway.append_job_record(record)

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def start(self, run_scheduler: bool = True) -> None:
        await self.db.connect()
        if self._settings.is_sqlite:
            await self.db.create_schema()
        if self.redis is not None:
            await self.redis.connect()
        for feed in self.feeds.values():
            await feed.start()
        if not self.scheduler.job_names:
            self.register_default_jobs()
        await self.queue.start()
        if run_scheduler:
            self._scheduler_task = asyncio.create_task(self.scheduler.run(), name="scheduler")
        self._started = True
        logger.info("sync_runtime_started", jobs=self.scheduler.job_names, cache=self.cache.backend)

    async def stop(self) -> None:
        self.scheduler.request_shutdown()
        if self._scheduler_task is not None:
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                pass
        await self.queue.stop()
        for feed in self.feeds.values():
            await feed.close()
        if self.redis is not None:
            await self.redis.disconnect()
        await self.db.disconnect()
        self._started = False
        logger.info("sync_runtime_stopped")

    # ── Operator surfaces ───────────────────────────────────────────────

    def trigger(self, name: str) -> dict[str, Any]:
        """Enqueue a registered job now. Raises KeyError for unknown names."""
        return self.scheduler.trigger(name).to_dict()

    async def status(self) -> dict[str, Any]:
        return {
            "running": self._started and self.scheduler.is_running,
            "jobs": self.scheduler.job_names,
            "schedules": self.scheduler.describe(),
            "recent_outcomes": [
                r.model_dump(mode="json") for r in list(self._recent)[:RECENT_OUTCOMES_IN_STATUS]
            ],
            "queues": self.queue.stats(),
            "failed_jobs": [job.to_dict() for job in self.queue.failed_jobs()],
            "last_leaderboard_run": await self.gateway.last_leaderboard_run(),
        }

    async def logs(self, limit: int = 50) -> list[JobRecord]:
        return await self.gateway.recent_job_records(limit)

    # ── Read queries ────────────────────────────────────────────────────

    async def weekly_leaderboard(self, period: str) -> list[LeaderboardEntry]:
        return await self.aggregator.weekly_leaderboard(period)

    async def season_leaderboard(self) -> list[LeaderboardEntry]:
        return await self.aggregator.season_leaderboard()

    async def subject_stats(self, subject_id: str) -> SubjectStats:
        return await self.aggregator.subject_stats(subject_id)


async def main() -> None:
    """Sync engine entrypoint (scheduler + workers, no HTTP surface)."""
    settings = get_settings()
    setup_logging("sync-engine", settings=settings)
    start_metrics_server(settings=settings)

    runtime = SyncRuntime(settings)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await runtime.start()
    try:
        await stop_event.wait()
    finally:
        await runtime.stop()


if __name__ == "__main__":
    asyncio.run(main())
