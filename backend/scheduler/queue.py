"""
Job queue with per-queue workers, retry with exponential backoff,
and retention of finished jobs for inspection.

Each named queue gets ``queue_concurrency[queue]`` worker tasks, so different
feed types run in parallel while each feed stays within its upstream budget.
Failed jobs stay listable until the failed-job grace period passes. Exactly
one JobRecord is emitted per job, when it reaches a terminal outcome.

With a store attached, every state change is journaled in order by one writer
task. On start the journal is read back: waiting and interrupted jobs are
queued again, delayed retries resume with their remaining delay, and failed
jobs are listed again until their grace period passes.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from shared.config import Settings, get_settings
from shared.errors import ConfigurationError, StoreWriteFailure
from shared.models.domain import JobRecord, QueuedJob
from shared.models.enums import JobOutcome, JobState
from shared.utils.logging import get_logger
from shared.utils.metrics import JOB_DURATION, JOB_RETRIES, JOBS_FINISHED, QUEUE_JOBS
from shared.utils.timeutil import utcnow

if TYPE_CHECKING:
    from store.gateway import StoreGateway

logger = get_logger(__name__)


@dataclass(frozen=True)
class JobOptions:
    attempts: int = 3
    backoff_s: float = 2.0
    timeout_s: Optional[float] = 600.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "JobOptions":
        return cls(
            attempts=settings.job_default_attempts,
            backoff_s=settings.job_backoff_base_s,
            timeout_s=settings.job_timeout_s,
        )

    def backoff_for(self, attempt: int) -> float:
        """Delay before the retry that follows failed attempt number ``attempt``."""
        return self.backoff_s * (2 ** (attempt - 1))


@dataclass(eq=False)
class Job:
    name: str
    queue: str
    payload: dict[str, Any]
    options: JobOptions
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    outcome: Optional[JobOutcome] = None
    result: Any = None
    error: Optional[str] = None
    enqueued_at: float = 0.0
    finished_at: Optional[float] = None
    created_at: datetime = field(default_factory=utcnow)
    retry_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    async def wait(self) -> "Job":
        await self._done.wait()
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "queue": self.queue,
            "state": self.state.value,
            "attempts_made": self.attempts_made,
            "outcome": self.outcome.value if self.outcome else None,
            "error": self.error,
        }

    def snapshot(self) -> QueuedJob:
        return QueuedJob(
            id=self.id,
            name=self.name,
            queue=self.queue,
            payload=self.payload,
            state=self.state,
            attempts_made=self.attempts_made,
            max_attempts=self.options.attempts,
            backoff_s=self.options.backoff_s,
            timeout_s=self.options.timeout_s,
            error=self.error,
            created_at=self.created_at,
            retry_at=self.retry_at,
            failed_at=self.failed_at,
        )

    @classmethod
    def from_saved(cls, saved: QueuedJob, enqueued_at: float) -> "Job":
        return cls(
            name=saved.name,
            queue=saved.queue,
            payload=dict(saved.payload),
            options=JobOptions(attempts=saved.max_attempts, backoff_s=saved.backoff_s, timeout_s=saved.timeout_s),
            id=saved.id,
            state=saved.state,
            attempts_made=saved.attempts_made,
            error=saved.error,
            enqueued_at=enqueued_at,
            created_at=saved.created_at,
            retry_at=saved.retry_at,
            failed_at=saved.failed_at,
        )


Processor = Callable[[Job], Awaitable[Any]]
FinishedHook = Callable[[Job, JobRecord], Awaitable[None]]


class JobQueue:
    def __init__(
        self,
        settings: Settings | None = None,
        on_finished: FinishedHook | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        store: Optional["StoreGateway"] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._on_finished = on_finished
        self._sleep = sleep
        self._clock = clock
        self._processors: dict[str, Processor] = {}
        self._pending: dict[str, asyncio.Queue[Job]] = {}
        self._jobs: dict[str, list[Job]] = {}
        self._workers: list[asyncio.Task[None]] = []
        self._delayed: set[asyncio.Task[None]] = set()
        self._journal: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        self._journal_task: Optional[asyncio.Task[None]] = None
        self._running = False

    @property
    def queues(self) -> list[str]:
        return list(self._processors)

    def register(self, queue: str, processor: Processor) -> None:
        if queue in self._processors:
            raise ValueError(f"queue {queue!r} already has a processor")
        self._processors[queue] = processor
        self._pending[queue] = asyncio.Queue()
        self._jobs[queue] = []
        if self._running:
            self._spawn_workers(queue)

    def default_options(self) -> JobOptions:
        return JobOptions.from_settings(self._settings)

    def enqueue(
        self,
        queue: str,
        name: str,
        payload: dict[str, Any] | None = None,
        options: JobOptions | None = None,
    ) -> Job:
        """Add a job and return its handle; execution happens on the queue's workers."""
        if queue not in self._processors:
            raise KeyError(f"no processor registered for queue {queue!r}")
        job = Job(
            name=name,
            queue=queue,
            payload=dict(payload or {}),
            options=options or self.default_options(),
            enqueued_at=self._clock(),
        )
        self._jobs[queue].append(job)
        self._pending[queue].put_nowait(job)
        self._refresh_gauges(queue)
        self._persist(job)
        logger.debug("job_enqueued", job=name, queue=queue, job_id=job.id)
        return job

    # ── Workers ─────────────────────────────────────────────────────────

    def _spawn_workers(self, queue: str) -> None:
        concurrency = max(1, self._settings.queue_concurrency.get(queue, 1))
        for index in range(concurrency):
            task = asyncio.create_task(self._worker(queue), name=f"worker:{queue}:{index}")
            self._workers.append(task)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        if self._store is not None:
            self._journal_task = asyncio.create_task(self._write_journal(), name="queue-journal")
            await self._restore()
        for queue in self._processors:
            self._spawn_workers(queue)
        logger.info("job_queue_started", queues=self.queues)

    async def stop(self) -> None:
        self._running = False
        tasks = [*self._workers, *self._delayed]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._delayed.clear()
        if self._journal_task is not None:
            await self._journal.join()
            self._journal_task.cancel()
            await asyncio.gather(self._journal_task, return_exceptions=True)
            self._journal_task = None
        logger.info("job_queue_stopped")

    # ── Journal ─────────────────────────────────────────────────────────

    def _persist(self, job: Job) -> None:
        if self._store is not None:
            self._journal.put_nowait(("save", job.snapshot()))

    def _forget(self, job: Job) -> None:
        if self._store is not None:
            self._journal.put_nowait(("delete", job.id))

    async def _write_journal(self) -> None:
        while True:
            op, item = await self._journal.get()
            try:
                if op == "save":
                    await self._store.save_queued_job(item)
                else:
                    await self._store.delete_queued_job(item)
            except StoreWriteFailure as exc:
                logger.error("job_journal_write_failed", op=op, error=str(exc))
            finally:
                self._journal.task_done()

    async def _restore(self) -> None:
        now = utcnow()
        restored = 0
        for saved in await self._store.load_queued_jobs():
            if saved.queue not in self._processors:
                logger.warning("job_restore_skipped", job=saved.name, queue=saved.queue, job_id=saved.id)
                continue
            job = Job.from_saved(saved, enqueued_at=self._clock())
            self._jobs[job.queue].append(job)
            if saved.state == JobState.FAILED:
                job.outcome = JobOutcome.ERROR
                failed_at = saved.failed_at or now
                job.finished_at = self._clock() - (now - failed_at).total_seconds()
                job._done.set()
            elif saved.state == JobState.DELAYED and saved.retry_at is not None:
                self._schedule_retry(job, max(0.0, (saved.retry_at - now).total_seconds()))
            else:
                # An ACTIVE row was interrupted mid-attempt; run it again.
                job.state = JobState.WAITING
                self._pending[job.queue].put_nowait(job)
            restored += 1
        for queue in self._jobs:
            self._refresh_gauges(queue)
        if restored:
            logger.info("jobs_restored", count=restored)

    async def _worker(self, queue: str) -> None:
        pending = self._pending[queue]
        while True:
            job = await pending.get()
            try:
                await self._execute(job)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("job_worker_error", queue=queue, job=job.name, error=str(exc), exc_info=True)
            finally:
                pending.task_done()

    async def _execute(self, job: Job) -> None:
        processor = self._processors[job.queue]
        job.state = JobState.ACTIVE
        job.attempts_made += 1
        self._refresh_gauges(job.queue)
        self._persist(job)
        started = time.perf_counter()
        try:
            if job.options.timeout_s:
                job.result = await asyncio.wait_for(processor(job), timeout=job.options.timeout_s)
            else:
                job.result = await processor(job)
        except ConfigurationError as exc:
            logger.warning("job_skipped", job=job.name, queue=job.queue, reason=str(exc))
            job.error = str(exc)
            await self._finish(job, JobState.COMPLETED, JobOutcome.SKIPPED)
        except Exception as exc:
            job.error = str(exc) or type(exc).__name__
            retryable = getattr(exc, "retryable", True)
            if retryable and job.attempts_made < job.options.attempts:
                delay = job.options.backoff_for(job.attempts_made)
                logger.warning(
                    "job_retry_scheduled",
                    job=job.name,
                    queue=job.queue,
                    attempt=job.attempts_made,
                    max_attempts=job.options.attempts,
                    delay_s=delay,
                    error=job.error,
                )
                JOB_RETRIES.labels(queue=job.queue).inc()
                self._schedule_retry(job, delay)
            else:
                logger.error(
                    "job_failed",
                    job=job.name,
                    queue=job.queue,
                    attempts=job.attempts_made,
                    retryable=retryable,
                    error=job.error,
                )
                await self._finish(job, JobState.FAILED, JobOutcome.ERROR)
        else:
            job.error = None
            await self._finish(job, JobState.COMPLETED, JobOutcome.SUCCESS)
        finally:
            JOB_DURATION.labels(queue=job.queue).observe(time.perf_counter() - started)

    def _schedule_retry(self, job: Job, delay: float) -> None:
        job.state = JobState.DELAYED
        job.retry_at = utcnow() + timedelta(seconds=delay)
        self._persist(job)
        self._refresh_gauges(job.queue)

        async def requeue() -> None:
            await self._sleep(delay)
            job.state = JobState.WAITING
            job.retry_at = None
            self._pending[job.queue].put_nowait(job)
            self._refresh_gauges(job.queue)
            self._persist(job)

        task = asyncio.create_task(requeue(), name=f"retry:{job.queue}:{job.id}")
        self._delayed.add(task)
        task.add_done_callback(self._delayed.discard)

    async def _finish(self, job: Job, state: JobState, outcome: JobOutcome) -> None:
        job.state = state
        job.outcome = outcome
        job.finished_at = self._clock()
        if state == JobState.FAILED:
            job.failed_at = utcnow()
            self._persist(job)
        else:
            self._forget(job)
        JOBS_FINISHED.labels(queue=job.queue, outcome=outcome.value).inc()
        self._refresh_gauges(job.queue)
        logger.info(
            "job_finished",
            job=job.name,
            queue=job.queue,
            outcome=outcome.value,
            attempts=job.attempts_made,
        )
        record = JobRecord(
            job_name=job.name,
            queue=job.queue,
            outcome=outcome,
            error_message=job.error if outcome != JobOutcome.SUCCESS else None,
            attempts=job.attempts_made,
            detail=job.result if isinstance(job.result, dict) else {},
        )
        try:
            if self._on_finished is not None:
                await self._on_finished(job, record)
        except Exception as exc:
            logger.error("job_record_failed", job=job.name, error=str(exc))
        finally:
            job._done.set()

    # ── Inspection ──────────────────────────────────────────────────────

    def jobs(self, queue: str | None = None) -> list[Job]:
        if queue is not None:
            return list(self._jobs.get(queue, []))
        return [job for jobs in self._jobs.values() for job in jobs]

    def is_running(self, name: str) -> bool:
        """True while any job with this name has not reached a terminal state."""
        return any(job.name == name and not job.state.is_terminal for job in self.jobs())

    def failed_jobs(self, queue: str | None = None) -> list[Job]:
        return [job for job in self.jobs(queue) if job.state == JobState.FAILED]

    def stats(self) -> dict[str, dict[str, int]]:
        out: dict[str, dict[str, int]] = {}
        for queue, jobs in self._jobs.items():
            counts = {state.value: 0 for state in JobState}
            for job in jobs:
                counts[job.state.value] += 1
            out[queue] = counts
        return out

    async def drain(self) -> None:
        """Wait until every job enqueued so far (and any retries) is terminal."""
        while True:
            unfinished = [job for job in self.jobs() if not job.done]
            if not unfinished:
                break
            await asyncio.gather(*(job.wait() for job in unfinished))
        if self._journal_task is not None:
            await self._journal.join()

    def prune(self, now: float | None = None) -> int:
        """Drop completed jobs past the completed grace and failed jobs past the failed grace."""
        now = self._clock() if now is None else now
        removed = 0
        for queue, jobs in self._jobs.items():
            kept = []
            for job in jobs:
                grace = None
                if job.state == JobState.COMPLETED:
                    grace = self._settings.completed_job_grace_s
                elif job.state == JobState.FAILED:
                    grace = self._settings.failed_job_grace_s
                if grace is not None and job.finished_at is not None and now - job.finished_at >= grace:
                    removed += 1
                    if job.state == JobState.FAILED:
                        self._forget(job)
                    continue
                kept.append(job)
            self._jobs[queue] = kept
            self._refresh_gauges(queue)
        if removed:
            logger.debug("jobs_pruned", removed=removed)
        return removed

    def _refresh_gauges(self, queue: str) -> None:
        counts = {state: 0 for state in JobState}
        for job in self._jobs.get(queue, []):
            counts[job.state] += 1
        for state, count in counts.items():
            QUEUE_JOBS.labels(queue=queue, state=state.value).set(count)
