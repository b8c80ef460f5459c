"""
Scheduler service for the sync engine.
Turns a table of {job name, cron expression, timezone} into queue enqueues.

The scheduler does no work itself: every due entry produces exactly one
enqueue per tick, and concurrency policy stays with the job queue. A tick that
fires while an earlier run of the same job is unfinished still enqueues, and
records a still-running observation.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger

from shared.config import Settings, get_settings
from shared.errors import InvalidSchedule
from shared.utils.logging import get_logger
from shared.utils.metrics import SCHEDULER_ENQUEUES, SCHEDULER_STILL_RUNNING
from shared.utils.timeutil import ensure_utc, utcnow

from scheduler.queue import Job, JobOptions, JobQueue

logger = get_logger(__name__)


@dataclass
class ScheduledJob:
    name: str
    schedule: str
    timezone: str
    queue: str
    trigger: CronTrigger
    payload: dict[str, Any] = field(default_factory=dict)
    options: Optional[JobOptions] = None
    next_run_at: Optional[datetime] = None
    last_enqueued_at: Optional[datetime] = None
    still_running_count: int = 0

    def compute_next(self, after: datetime) -> Optional[datetime]:
        """First fire time strictly after ``after``."""
        fire = self.trigger.get_next_fire_time(None, after + timedelta(seconds=1))
        return ensure_utc(fire) if fire else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "schedule": self.schedule,
            "timezone": self.timezone,
            "queue": self.queue,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "last_enqueued_at": self.last_enqueued_at.isoformat() if self.last_enqueued_at else None,
            "still_running_count": self.still_running_count,
        }


class Scheduler:
    """Explicit registry of scheduled jobs, owned by the runtime."""

    def __init__(self, queue: JobQueue, settings: Settings | None = None) -> None:
        self._queue = queue
        self._settings = settings or get_settings()
        self._entries: dict[str, ScheduledJob] = {}
        self._shutdown = asyncio.Event()

    @property
    def job_names(self) -> list[str]:
        return list(self._entries)

    def get(self, name: str) -> ScheduledJob:
        return self._entries[name]

    def register(
        self,
        name: str,
        schedule: str,
        tz: str,
        queue: str,
        payload: dict[str, Any] | None = None,
        options: JobOptions | None = None,
        now: datetime | None = None,
    ) -> ScheduledJob:
        """
        Validate and add a schedule entry.

        Raises:
            InvalidSchedule: malformed cron expression or unknown timezone.
        """
        try:
            zone = ZoneInfo(tz)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise InvalidSchedule(f"{name}: unknown timezone {tz!r}") from exc
        try:
            trigger = CronTrigger.from_crontab(schedule, timezone=zone)
        except ValueError as exc:
            raise InvalidSchedule(f"{name}: invalid schedule {schedule!r}: {exc}") from exc

        if name in self._entries:
            logger.info("schedule_replaced", job=name)
        entry = ScheduledJob(
            name=name,
            schedule=schedule,
            timezone=tz,
            queue=queue,
            trigger=trigger,
            payload=dict(payload or {}),
            options=options,
        )
        entry.next_run_at = entry.compute_next(ensure_utc(now) if now else utcnow())
        self._entries[name] = entry
        logger.info("schedule_registered", job=name, schedule=schedule, tz=tz, queue=queue,
                    next_run_at=str(entry.next_run_at))
        return entry

    def _enqueue(self, entry: ScheduledJob, now: datetime, source: str) -> Job:
        if self._queue.is_running(entry.name):
            entry.still_running_count += 1
            SCHEDULER_STILL_RUNNING.labels(job=entry.name).inc()
            logger.warning("job_still_running", job=entry.name, source=source)
        job = self._queue.enqueue(entry.queue, entry.name, {**entry.payload, "source": source}, entry.options)
        entry.last_enqueued_at = now
        SCHEDULER_ENQUEUES.labels(job=entry.name, source=source).inc()
        return job

    def tick(self, now: datetime | None = None) -> list[Job]:
        """Enqueue one job for every entry that is due at ``now``."""
        now = ensure_utc(now) if now else utcnow()
        enqueued = []
        for entry in self._entries.values():
            if entry.next_run_at is None or now < entry.next_run_at:
                continue
            enqueued.append(self._enqueue(entry, now, "schedule"))
            entry.next_run_at = entry.compute_next(now)
        return enqueued

    def trigger(self, name: str) -> Job:
        """Operator-invoked run, outside the schedule."""
        entry = self._entries.get(name)
        if entry is None:
            raise KeyError(name)
        logger.info("job_triggered", job=name)
        return self._enqueue(entry, utcnow(), "manual")

    def describe(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self._entries.values()]

    # ── Main loop ───────────────────────────────────────────────────────

    async def run(self) -> None:
        """Tick until shutdown; also prunes finished jobs past their grace periods."""
        while not self._shutdown.is_set():
            try:
                self.tick()
                self._queue.prune()
                await asyncio.sleep(self._settings.scheduler_tick_interval_s)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("scheduler_loop_error", error=str(exc), exc_info=True)
                await asyncio.sleep(2.0)

    def request_shutdown(self) -> None:
        self._shutdown.set()

    @property
    def is_running(self) -> bool:
        return not self._shutdown.is_set()
