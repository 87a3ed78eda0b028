"""Shared aiohttp plumbing for upstream JSON APIs.

Transport failures are classified here so that callers only ever see
``TransientError`` or ``FatalError``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

import aiohttp

from krc20_mirror.ingestor.retry import FatalError, TransientError, is_retryable_status

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
MAX_REQUESTS_PER_SECOND = 5.0


class RateLimiter:
    """Minimum-interval rate limiter for API requests."""

    def __init__(self, max_requests_per_second: float = MAX_REQUESTS_PER_SECOND) -> None:
        """Initialize the rate limiter.

        Args:
            max_requests_per_second: Maximum requests allowed per second.
        """
        self._min_interval = 1.0 / max_requests_per_second
        self._last_request_time: float = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a request slot is available."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_request_time
            if elapsed < self._min_interval:
                await asyncio.sleep(self._min_interval - elapsed)
            self._last_request_time = time.monotonic()


class JsonHttpClient:
    """GET-only JSON client with a lazily created aiohttp session."""

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        requests_per_second: float = MAX_REQUESTS_PER_SECOND,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._rate_limiter = RateLimiter(requests_per_second)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def get_json(self, url: str, params: dict[str, str] | None = None) -> Any:
        """GET a URL and decode its JSON body.

        Raises:
            TransientError: On timeouts, connection failures, 429 and 5xx.
            FatalError: On any other non-2xx status or an undecodable body.
        """
        await self._rate_limiter.acquire()
        session = await self._get_session()
        try:
            async with session.get(url, params=params, timeout=self._timeout) as response:
                if response.status >= 400:
                    body = await response.text()
                    message = f"GET {url} returned HTTP {response.status}: {body[:200]}"
                    if is_retryable_status(response.status):
                        raise TransientError(message)
                    raise FatalError(message)
                body = await response.read()
        except asyncio.TimeoutError as e:
            raise TransientError(f"GET {url} timed out") from e
        except aiohttp.ClientError as e:
            raise TransientError(f"GET {url} failed: {e}") from e

        # Covers both undecodable bytes and malformed JSON.
        try:
            return json.loads(body.decode("utf-8"))
        except ValueError as e:
            raise FatalError(f"GET {url} returned invalid JSON: {e}") from e

    async def close(self) -> None:
        """Close the underlying session if this client created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
