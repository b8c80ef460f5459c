"""
Typed failures raised by feed adapters, the store gateway and the scheduler.

The job queue only looks at ``retryable``: retryable failures are retried with
exponential backoff, everything else ends the job on the first attempt.
"""
from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for sync-engine failures."""

    retryable: bool = True


class UpstreamUnavailable(SyncError):
    """Timeout, transport error or non-2xx response from an upstream feed."""

    retryable = True

    def __init__(self, feed: str, url: str, status: Optional[int] = None, detail: str = "") -> None:
        self.feed = feed
        self.url = url
        self.status = status
        self.detail = detail
        reason = f"HTTP {status}" if status is not None else (detail or "unavailable")
        super().__init__(f"{feed} upstream unavailable ({reason}): {url}")


class SchemaMismatch(SyncError):
    """An upstream record is missing a field required to identify it."""

    retryable = False

    def __init__(self, feed: str, field: str, detail: str = "") -> None:
        self.feed = feed
        self.field = field
        super().__init__(f"{feed} record missing '{field}'" + (f": {detail}" if detail else ""))


class MappingFailure(SyncError):
    """No internal fixture or participant matches an upstream entity."""

    retryable = False

    def __init__(self, feed: str, key: str) -> None:
        self.feed = feed
        self.key = key
        super().__init__(f"{feed}: no internal match for {key}")


class ConfigurationError(SyncError):
    """A required credential or setting is missing; the job is skipped."""

    retryable = False


class StoreWriteFailure(SyncError):
    """A persisted-store write failed; writes are idempotent so it is retried."""

    retryable = True


class InvalidSchedule(ValueError):
    """A schedule expression or timezone failed validation at registration."""
