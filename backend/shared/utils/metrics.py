"""
Metrics for the sync engine.
Wraps prometheus_client with async-safe patterns.
"""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from shared.config import Settings, get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Counters ────────────────────────────────────────────────────────────
FEED_REQUESTS = Counter(
    "pk_feed_requests_total",
    "Total upstream feed HTTP requests",
    ["feed", "status"],
)
CACHE_LOOKUPS = Counter(
    "pk_cache_lookups_total",
    "Result cache lookups",
    ["feed", "result"],
)
JOBS_FINISHED = Counter(
    "pk_jobs_finished_total",
    "Jobs reaching a terminal outcome",
    ["queue", "outcome"],
)
JOB_RETRIES = Counter(
    "pk_job_retries_total",
    "Job attempts scheduled for retry after a failure",
    ["queue"],
)
SCHEDULER_ENQUEUES = Counter(
    "pk_scheduler_enqueues_total",
    "Scheduler enqueues per job name",
    ["job", "source"],
)
SCHEDULER_STILL_RUNNING = Counter(
    "pk_scheduler_still_running_total",
    "Ticks that fired while a prior run of the same job was still running",
    ["job"],
)
ENTITIES_APPLIED = Counter(
    "pk_feed_entities_total",
    "Canonical entities processed by feed adapters",
    ["feed", "result"],
)
PREDICTIONS_SCORED = Counter(
    "pk_predictions_scored_total",
    "Prediction rows written by the scoring engine",
)
PERIODS_SETTLED = Counter(
    "pk_periods_settled_total",
    "Scoring periods that became settled",
)

# ── Histograms ──────────────────────────────────────────────────────────
FEED_LATENCY = Histogram(
    "pk_feed_latency_seconds",
    "Upstream request latency in seconds",
    ["feed"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)
JOB_DURATION = Histogram(
    "pk_job_duration_seconds",
    "Time to execute a single job attempt",
    ["queue"],
    buckets=(0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0),
)

# ── Gauges ──────────────────────────────────────────────────────────────
QUEUE_JOBS = Gauge(
    "pk_queue_jobs",
    "Jobs currently held by a queue, by state",
    ["queue", "state"],
)


@asynccontextmanager
async def atrack_latency(histogram: Histogram, **labels: str) -> AsyncIterator[None]:
    """Async context manager to track operation latency."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        histogram.labels(**labels).observe(elapsed)


def start_metrics_server(port: int | None = None, settings: Settings | None = None) -> None:
    """Start the Prometheus metrics HTTP server."""
    settings = settings or get_settings()
    if not settings.metrics_enabled:
        return
    metrics_port = port or settings.metrics_port
    try:
        start_http_server(metrics_port)
        logger.info("metrics_server_started", port=metrics_port)
    except OSError as exc:
        logger.warning("metrics_server_failed", error=str(exc), port=metrics_port)
