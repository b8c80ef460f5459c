"""
Per-host request pacing.
Enforces a minimum interval between successive requests to the same upstream host.
"""
from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from typing import Awaitable, Callable
from urllib.parse import urlparse

from shared.utils.logging import get_logger

logger = get_logger(__name__)


class HostPacer:
    """
    Serializes requests per host and spaces them by ``min_interval_s``.
    Different hosts never wait on each other.
    """

    def __init__(
        self,
        min_interval_s: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._interval = max(0.0, min_interval_s)
        self._clock = clock
        self._sleep = sleep
        self._last_request: dict[str, float] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @staticmethod
    def host_of(url: str) -> str:
        return urlparse(url).netloc or "unknown"

    async def wait_for_slot(self, url: str) -> float:
        """Block until a request to url's host is allowed. Returns seconds waited."""
        host = self.host_of(url)
        async with self._locks[host]:
            waited = 0.0
            last = self._last_request.get(host)
            if last is not None and self._interval > 0:
                remaining = self._interval - (self._clock() - last)
                if remaining > 0:
                    await self._sleep(remaining)
                    waited = remaining
            self._last_request[host] = self._clock()
        if waited:
            logger.debug("host_paced", host=host, waited_s=round(waited, 3))
        return waited
