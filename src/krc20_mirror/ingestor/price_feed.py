"""Floor-price feed client.

The feed returns quotes for every listed ticker in one call, either as an
object keyed by ticker or as a list of objects carrying ``tick``/``ticker``.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any

import aiohttp

from krc20_mirror.ingestor.http import JsonHttpClient
from krc20_mirror.ingestor.models import PriceQuote
from krc20_mirror.ingestor.retry import (
    DEFAULT_BASE_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    FatalError,
    UpstreamError,
    with_retry,
)

logger = logging.getLogger(__name__)


def parse_price_feed(payload: Any) -> list[PriceQuote]:
    """Parse a price feed payload into quotes, skipping unreadable entries."""
    if isinstance(payload, dict):
        entries = [(str(tick), data) for tick, data in payload.items()]
    elif isinstance(payload, list):
        entries = []
        for data in payload:
            if isinstance(data, dict):
                tick = data.get("tick") or data.get("ticker")
                if tick:
                    entries.append((str(tick), data))
    else:
        raise FatalError("Unexpected price feed payload")

    quotes: list[PriceQuote] = []
    for tick, data in entries:
        if not isinstance(data, dict):
            continue
        try:
            quotes.append(PriceQuote.from_dict(tick, data))
        except (KeyError, ValueError, TypeError) as e:
            logger.debug("Skipping price entry for %s: %s", tick, e)
    return quotes


class PriceFeedClient:
    """Fetches floor-price quotes and, optionally, the base asset's USD price."""

    def __init__(
        self,
        feed_url: str,
        *,
        base_asset_url: str | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_delay: float = DEFAULT_BASE_DELAY,
        timeout_seconds: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._feed_url = feed_url
        self._base_asset_url = base_asset_url
        self._max_attempts = max_attempts
        self._retry_base_delay = retry_base_delay
        self._http = JsonHttpClient(timeout_seconds=timeout_seconds, session=session)

    async def fetch_floor_prices(self) -> list[PriceQuote]:
        """Fetch floor prices for every ticker the feed lists."""

        async def fetch() -> list[PriceQuote]:
            return parse_price_feed(await self._http.get_json(self._feed_url))

        return await with_retry(
            fetch,
            max_attempts=self._max_attempts,
            base_delay=self._retry_base_delay,
            description="fetch_floor_prices",
        )

    async def fetch_base_asset_usd(self) -> Decimal | None:
        """Fetch the USD price of the base asset, or None if unavailable."""
        if self._base_asset_url is None:
            return None
        url = self._base_asset_url

        async def fetch() -> Any:
            return await self._http.get_json(url)

        try:
            payload = await with_retry(
                fetch,
                max_attempts=self._max_attempts,
                base_delay=self._retry_base_delay,
                description="fetch_base_asset_usd",
            )
        except UpstreamError as e:
            logger.warning("Base asset price unavailable: %s", e)
            return None

        price = payload.get("price") if isinstance(payload, dict) else None
        if price is None:
            logger.warning("Base asset price missing from %s", url)
            return None
        try:
            return Decimal(str(price))
        except InvalidOperation:
            logger.warning("Invalid base asset price from %s: %r", url, price)
            return None

    async def close(self) -> None:
        await self._http.close()
