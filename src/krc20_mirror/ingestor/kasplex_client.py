"""Async client for the Kasplex KRC20 indexer API with rate limiting and retry logic."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar
from urllib.parse import quote

import aiohttp

from krc20_mirror.ingestor.http import MAX_REQUESTS_PER_SECOND, JsonHttpClient
from krc20_mirror.ingestor.models import (
    AddressHolding,
    OperationRecord,
    TokenInfo,
    TokenListPage,
)
from krc20_mirror.ingestor.retry import (
    DEFAULT_BASE_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    FatalError,
    with_retry,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BASE_URL = "https://api.kasplex.org/v1"
DEFAULT_BATCH_SIZE = 50

PageFallback = Callable[[Exception], list[OperationRecord]]


def _result_list(payload: Any, url: str) -> list[dict[str, Any]]:
    if not isinstance(payload, dict):
        raise FatalError(f"Unexpected payload from {url}: expected an object")
    result = payload.get("result")
    if result is None:
        return []
    if not isinstance(result, list):
        raise FatalError(f"Unexpected payload from {url}: 'result' is not a list")
    return result


class KasplexClient:
    """Typed reads against the Kasplex KRC20 REST API.

    Every call is rate limited and wrapped in the retry policy: transient
    failures are retried with linear backoff, fatal ones propagate at once.

    Example:
        >>> client = KasplexClient()
        >>> page = await client.list_tokens()
        >>> info = await client.get_token_detail(page.items[0].tick)
        >>> await client.close()
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_delay: float = DEFAULT_BASE_DELAY,
        timeout_seconds: float = 30.0,
        requests_per_second: float = MAX_REQUESTS_PER_SECOND,
        token_cursor_param: str = "next",
        op_cursor_param: str = "next",
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize the Kasplex client.

        Args:
            base_url: API root, e.g. ``https://api.kasplex.org/v1``.
            batch_size: Fixed page size of the operation list.
            max_attempts: Attempts per call, including the first.
            retry_base_delay: Linear backoff base in seconds.
            timeout_seconds: Total timeout per request.
            requests_per_second: Client-side rate limit.
            token_cursor_param: Query parameter for the token list cursor.
            op_cursor_param: Query parameter for the operation list cursor.
            session: Optional shared aiohttp session.
        """
        self._base_url = base_url.rstrip("/")
        self._batch_size = batch_size
        self._max_attempts = max_attempts
        self._retry_base_delay = retry_base_delay
        self._token_cursor_param = token_cursor_param
        self._op_cursor_param = op_cursor_param
        self._http = JsonHttpClient(
            timeout_seconds=timeout_seconds,
            requests_per_second=requests_per_second,
            session=session,
        )

        logger.info(
            "Initialized KasplexClient with base_url=%s, rate_limit=%.1f req/s",
            self._base_url,
            requests_per_second,
        )

    @property
    def batch_size(self) -> int:
        """Fixed page size of the operation list."""
        return self._batch_size

    async def _call(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str,
        fallback: Callable[[Exception], T] | None = None,
    ) -> T:
        return await with_retry(
            operation,
            max_attempts=self._max_attempts,
            base_delay=self._retry_base_delay,
            fallback=fallback,
            description=description,
        )

    async def list_tokens(self, cursor: str | None = None) -> TokenListPage:
        """Fetch one page of the token universe.

        Args:
            cursor: Opaque cursor from the previous page, if any.

        Returns:
            The page; ``next_cursor`` is None on the last page.
        """
        url = f"{self._base_url}/krc20/tokenlist"
        params = {self._token_cursor_param: cursor} if cursor else None

        async def fetch() -> TokenListPage:
            payload = await self._http.get_json(url, params)
            _result_list(payload, url)
            try:
                return TokenListPage.from_dict(payload)
            except (KeyError, ValueError, TypeError) as e:
                raise FatalError(f"Malformed token list from {url}: {e}") from e

        return await self._call(fetch, f"list_tokens(cursor={cursor})")

    async def get_token_detail(self, tick: str) -> TokenInfo:
        """Fetch a token's detail including its embedded holder list.

        Raises:
            FatalError: If the token is unknown upstream or the payload is malformed.
        """
        url = f"{self._base_url}/krc20/token/{quote(tick, safe='')}"

        async def fetch() -> TokenInfo:
            items = _result_list(await self._http.get_json(url), url)
            if not items:
                raise FatalError(f"Token {tick} not found upstream")
            try:
                return TokenInfo.from_dict(items[0])
            except (KeyError, ValueError, TypeError) as e:
                raise FatalError(f"Malformed token detail for {tick}: {e}") from e

        return await self._call(fetch, f"get_token_detail({tick})")

    async def get_transaction_page(
        self,
        tick: str,
        cursor: str | None = None,
        *,
        fallback: PageFallback | None = None,
    ) -> list[OperationRecord]:
        """Fetch one page of a token's operations, newest first.

        The indexer returns operations in descending opScore order, so the
        first page holds the most recent operations and each following page
        is older. A page shorter than ``batch_size`` is the last one.
        Otherwise the next cursor is the last (oldest) item's ``op_score``.
        Stopping at the first already-stored hash relies on this order.

        Args:
            tick: Token ticker.
            cursor: opScore cursor from the previous page, if any.
            fallback: Value factory used once transient retries are exhausted.
        """
        url = f"{self._base_url}/krc20/oplist"
        params = {"tick": tick}
        if cursor:
            params[self._op_cursor_param] = cursor

        async def fetch() -> list[OperationRecord]:
            items = _result_list(await self._http.get_json(url, params), url)
            try:
                return [OperationRecord.from_dict(item) for item in items]
            except (KeyError, ValueError, TypeError) as e:
                raise FatalError(f"Malformed operation list for {tick}: {e}") from e

        return await self._call(
            fetch,
            f"get_transaction_page({tick}, cursor={cursor})",
            fallback=fallback,
        )

    async def get_address_holdings(self, address: str) -> list[AddressHolding]:
        """Fetch every KRC20 balance held by an address."""
        url = f"{self._base_url}/krc20/address/{quote(address, safe=':')}/tokenlist"

        async def fetch() -> list[AddressHolding]:
            items = _result_list(await self._http.get_json(url), url)
            try:
                return [AddressHolding.from_dict(item) for item in items]
            except (KeyError, ValueError, TypeError) as e:
                raise FatalError(f"Malformed holdings for {address}: {e}") from e

        return await self._call(fetch, f"get_address_holdings({address})")

    async def close(self) -> None:
        """Release the HTTP session."""
        await self._http.close()
