"""
Async HTTP client wrapper for upstream feed requests.
Includes timeout management, per-host pacing, and metrics collection.
Retries are left to the job queue, so every failure surfaces immediately.
"""
from __future__ import annotations

import time
from typing import Any, Optional

import httpx

from shared.config import Settings, get_settings
from shared.errors import UpstreamUnavailable
from shared.utils.logging import get_logger
from shared.utils.metrics import FEED_LATENCY, FEED_REQUESTS
from shared.utils.rate_limiter import HostPacer

logger = get_logger(__name__)


class FeedHTTPClient:
    """
    Async HTTP client tailored for sports data feed APIs.
    Handles timeouts and pacing, and records metrics per request.
    """

    def __init__(
        self,
        feed_name: str,
        base_url: str = "",
        headers: dict[str, str] | None = None,
        timeout_s: float | None = None,
        pacer: HostPacer | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._feed = feed_name
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_s or settings.request_timeout_s
        self._default_headers = headers or {}
        self._pacer = pacer or HostPacer(settings.inter_request_delay_s)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def feed(self) -> str:
        return self._feed

    async def start(self) -> None:
        """Initialize the underlying httpx client."""
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._default_headers,
            timeout=httpx.Timeout(self._timeout, connect=5.0),
            follow_redirects=True,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            transport=self._transport,
        )

    async def close(self) -> None:
        """Close the underlying httpx client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "FeedHTTPClient":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def _absolute(self, url: str) -> str:
        if url.startswith("http://") or url.startswith("https://"):
            return url
        return f"{self._base_url}/{url.lstrip('/')}"

    async def get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        """
        Perform a paced GET and decode the JSON body.

        Args:
            url: Absolute URL or path relative to base_url.
            params: Query parameters.

        Returns:
            The decoded JSON document.

        Raises:
            UpstreamUnavailable: On timeout, transport error, non-2xx status
                or an undecodable body.
        """
        if not self._client:
            raise RuntimeError("FeedHTTPClient not started. Call start() first.")

        full_url = self._absolute(url)
        await self._pacer.wait_for_slot(full_url)

        start_time = time.perf_counter()
        status = "unknown"
        try:
            resp = await self._client.get(full_url, params=params)
            status = str(resp.status_code)
            if resp.status_code < 200 or resp.status_code >= 300:
                logger.warning(
                    "feed_http_error",
                    feed=self._feed,
                    url=full_url,
                    status=resp.status_code,
                )
                raise UpstreamUnavailable(self._feed, full_url, status=resp.status_code)
            try:
                payload = resp.json()
            except ValueError as exc:
                status = "bad_body"
                raise UpstreamUnavailable(self._feed, full_url, detail="invalid JSON body") from exc
            logger.debug(
                "feed_request_success",
                feed=self._feed,
                url=full_url,
                latency_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
            return payload

        except httpx.TimeoutException as exc:
            status = "timeout"
            logger.warning("feed_timeout", feed=self._feed, url=full_url)
            raise UpstreamUnavailable(self._feed, full_url, detail="timeout") from exc

        except httpx.TransportError as exc:
            status = "error"
            logger.warning("feed_transport_error", feed=self._feed, url=full_url, error=str(exc))
            raise UpstreamUnavailable(self._feed, full_url, detail=str(exc) or "transport error") from exc

        finally:
            FEED_REQUESTS.labels(feed=self._feed, status=status).inc()
            FEED_LATENCY.labels(feed=self._feed).observe(time.perf_counter() - start_time)
