"""
Tests for the job queue: retries, terminal outcomes, retention, restart recovery.

Run: pytest backend/tests/test_queue.py -v
"""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from shared.config import Settings
from shared.errors import ConfigurationError, SchemaMismatch, UpstreamUnavailable
from shared.models.enums import JobOutcome, JobState
from scheduler.queue import Job, JobOptions, JobQueue
from store.gateway import StoreGateway


class Flaky:
    """Processor that fails a fixed number of times before succeeding."""

    def __init__(self, failures: int, exc: Exception | None = None) -> None:
        self.failures = failures
        self.exc = exc or UpstreamUnavailable("odds", "https://odds.example", status=503)
        self.calls = 0

    async def __call__(self, job: Job) -> dict:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return {"mapped": 1}


async def _run(queue: JobQueue) -> None:
    await queue.start()
    try:
        await asyncio.wait_for(queue.drain(), timeout=5)
    finally:
        await queue.stop()


def test_backoff_doubles_per_attempt() -> None:
    options = JobOptions(attempts=3, backoff_s=2.0)
    assert [options.backoff_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]


@pytest.mark.asyncio
async def test_transient_failures_retry_then_succeed_with_one_record(settings: Settings) -> None:
    on_finished = AsyncMock()
    sleep = AsyncMock()
    queue = JobQueue(settings, on_finished=on_finished, sleep=sleep)
    processor = Flaky(failures=2)
    queue.register("odds", processor)

    job = queue.enqueue("odds", "odds-sync", options=JobOptions(attempts=3, backoff_s=2.0))
    await _run(queue)

    assert processor.calls == 3
    assert job.state == JobState.COMPLETED
    assert job.outcome == JobOutcome.SUCCESS
    assert [c.args[0] for c in sleep.await_args_list] == [2.0, 4.0]
    on_finished.assert_awaited_once()
    record = on_finished.await_args.args[1]
    assert record.outcome == JobOutcome.SUCCESS
    assert record.attempts == 3
    assert record.error_message is None
    assert record.detail == {"mapped": 1}


@pytest.mark.asyncio
async def test_exhausted_retries_fail_and_are_retained(settings: Settings) -> None:
    on_finished = AsyncMock()
    queue = JobQueue(settings, on_finished=on_finished)
    processor = Flaky(failures=10)
    queue.register("odds", processor)

    job = queue.enqueue("odds", "odds-sync", options=JobOptions(attempts=3, backoff_s=0))
    await _run(queue)

    assert processor.calls == 3
    assert job.state == JobState.FAILED
    assert queue.failed_jobs() == [job]
    record = on_finished.await_args.args[1]
    assert record.outcome == JobOutcome.ERROR
    assert "HTTP 503" in record.error_message
    on_finished.assert_awaited_once()


@pytest.mark.asyncio
async def test_configuration_error_is_skipped_without_retry(settings: Settings) -> None:
    on_finished = AsyncMock()
    queue = JobQueue(settings, on_finished=on_finished)
    processor = Flaky(failures=10, exc=ConfigurationError("odds API key missing"))
    queue.register("odds", processor)

    job = queue.enqueue("odds", "odds-sync")
    await _run(queue)

    assert processor.calls == 1
    assert job.state == JobState.COMPLETED
    assert job.outcome == JobOutcome.SKIPPED
    assert on_finished.await_args.args[1].outcome == JobOutcome.SKIPPED
    assert queue.failed_jobs() == []


@pytest.mark.asyncio
async def test_non_retryable_error_fails_after_one_attempt(settings: Settings) -> None:
    queue = JobQueue(settings)
    processor = Flaky(failures=10, exc=SchemaMismatch("injuries", "athlete.id"))
    queue.register("injuries", processor)

    job = queue.enqueue("injuries", "injuries-sync", options=JobOptions(attempts=5, backoff_s=0))
    await _run(queue)

    assert processor.calls == 1
    assert job.outcome == JobOutcome.ERROR


@pytest.mark.asyncio
async def test_timeout_counts_as_retryable_failure(settings: Settings) -> None:
    calls = 0

    async def slow(job: Job) -> None:
        nonlocal calls
        calls += 1
        if calls == 1:
            await asyncio.sleep(1)

    queue = JobQueue(settings)
    queue.register("weather", slow)
    job = queue.enqueue("weather", "weather-sync", options=JobOptions(attempts=2, backoff_s=0, timeout_s=0.05))
    await _run(queue)

    assert calls == 2
    assert job.outcome == JobOutcome.SUCCESS


@pytest.mark.asyncio
async def test_hook_failure_does_not_block_completion(settings: Settings) -> None:
    queue = JobQueue(settings, on_finished=AsyncMock(side_effect=RuntimeError("db down")))
    queue.register("odds", Flaky(failures=0))
    job = queue.enqueue("odds", "odds-sync")
    await _run(queue)
    assert job.done
    assert job.outcome == JobOutcome.SUCCESS


@pytest.mark.asyncio
async def test_queues_run_in_parallel(settings: Settings) -> None:
    release = asyncio.Event()
    seen: list[str] = []

    async def blocking(job: Job) -> None:
        seen.append(job.name)
        await release.wait()

    async def releasing(job: Job) -> None:
        seen.append(job.name)
        release.set()

    queue = JobQueue(settings)
    queue.register("injuries", blocking)
    queue.register("odds", releasing)
    first = queue.enqueue("injuries", "injuries-sync")
    second = queue.enqueue("odds", "odds-sync")
    await _run(queue)

    assert sorted(seen) == ["injuries-sync", "odds-sync"]
    assert first.outcome == second.outcome == JobOutcome.SUCCESS


@pytest.mark.asyncio
async def test_is_running_until_terminal(settings: Settings) -> None:
    queue = JobQueue(settings)
    queue.register("odds", Flaky(failures=0))
    queue.enqueue("odds", "odds-sync")
    assert queue.is_running("odds-sync")
    await _run(queue)
    assert not queue.is_running("odds-sync")


def test_enqueue_unknown_queue_raises(settings: Settings) -> None:
    queue = JobQueue(settings)
    with pytest.raises(KeyError):
        queue.enqueue("nope", "x")


@pytest.mark.asyncio
async def test_prune_honours_grace_periods(settings: Settings) -> None:
    settings = settings.model_copy(update={"completed_job_grace_s": 10.0, "failed_job_grace_s": 100.0})
    now = [1000.0]
    queue = JobQueue(settings, clock=lambda: now[0])
    queue.register("ok", Flaky(failures=0))
    queue.register("bad", Flaky(failures=10, exc=SchemaMismatch("odds", "price")))
    queue.enqueue("ok", "ok-job")
    bad = queue.enqueue("bad", "bad-job")
    await _run(queue)

    assert queue.stats()["ok"]["completed"] == 1
    assert queue.stats()["bad"]["failed"] == 1

    assert queue.prune(now=1005.0) == 0
    assert queue.prune(now=1010.0) == 1
    assert queue.jobs("ok") == []
    assert queue.failed_jobs() == [bad]

    assert queue.prune(now=1100.0) == 1
    assert queue.failed_jobs() == []


# ── Restart recovery ────────────────────────────────────────────────────

class Blocked:
    """Processor that never returns until cancelled."""

    async def __call__(self, job: Job) -> dict:
        await asyncio.Event().wait()
        return {}


async def _until(condition) -> None:
    async def poll() -> None:
        while not condition():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=5)


@pytest.mark.asyncio
async def test_restart_recovers_waiting_delayed_and_failed_jobs(settings: Settings, gateway: StoreGateway) -> None:
    settings = settings.model_copy(update={"job_backoff_base_s": 3600.0})
    first = JobQueue(settings, store=gateway)
    first.register("odds", Flaky(failures=10))
    first.register("records", Flaky(failures=10, exc=SchemaMismatch("records", "fixtures")))
    first.register("weather", Blocked())
    await first.start()

    retrying = first.enqueue("odds", "odds-updates")
    broken = first.enqueue("records", "records-updates")
    running = first.enqueue("weather", "weather-updates")
    waiting = first.enqueue("weather", "weather-updates")
    await _until(lambda: retrying.state == JobState.DELAYED and broken.done and running.state == JobState.ACTIVE)
    await first.stop()

    saved = {job.id: job.state for job in await gateway.load_queued_jobs()}
    assert saved == {
        retrying.id: JobState.DELAYED,
        broken.id: JobState.FAILED,
        running.id: JobState.ACTIVE,
        waiting.id: JobState.WAITING,
    }

    on_finished = AsyncMock()
    sleep = AsyncMock()
    second = JobQueue(settings, on_finished=on_finished, sleep=sleep, store=gateway)
    second.register("odds", Flaky(failures=0))
    second.register("records", Flaky(failures=0))
    second.register("weather", Flaky(failures=0))
    await _run(second)

    # The pending retry resumes with what was left of its backoff.
    (delay,) = [c.args[0] for c in sleep.await_args_list]
    assert 3500 < delay <= 3600
    finished = {c.args[0].id: c.args[1] for c in on_finished.await_args_list}
    assert set(finished) == {retrying.id, running.id, waiting.id}
    assert all(r.outcome == JobOutcome.SUCCESS for r in finished.values())
    assert finished[retrying.id].attempts == 2

    (failed,) = second.failed_jobs()
    assert failed.id == broken.id
    assert failed.attempts_made == 1
    assert "fixtures" in failed.error
    assert [job.id for job in await gateway.load_queued_jobs()] == [broken.id]


@pytest.mark.asyncio
async def test_pruned_failed_job_leaves_the_journal(settings: Settings, gateway: StoreGateway) -> None:
    now = [1000.0]
    queue = JobQueue(settings, clock=lambda: now[0], store=gateway)
    queue.register("bad", Flaky(failures=10, exc=SchemaMismatch("odds", "price")))
    queue.enqueue("bad", "bad-job")
    await queue.start()
    try:
        await asyncio.wait_for(queue.drain(), timeout=5)
        assert len(await gateway.load_queued_jobs()) == 1

        assert queue.prune(now=1000.0 + settings.failed_job_grace_s) == 1
        await asyncio.wait_for(queue.drain(), timeout=5)
        assert await gateway.load_queued_jobs() == []
    finally:
        await queue.stop()
