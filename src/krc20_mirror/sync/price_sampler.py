"""Periodic floor-price sampler.

Each sample makes one feed call covering every ticker and appends one
PriceData row per quote. Tokens the mirror has not synced yet get a
placeholder row first, so the price row always has a token to reference.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

from krc20_mirror.ingestor.price_feed import PriceFeedClient
from krc20_mirror.ingestor.retry import UpstreamError
from krc20_mirror.storage.database import DatabaseManager
from krc20_mirror.storage.repos import PriceDataDTO, PriceDataRepository, TokenRepository

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MINUTES = 15


@dataclass
class SampleResult:
    """Outcome of one price sample."""

    sampled_at: datetime
    quotes: int = 0
    placeholders_created: int = 0
    base_asset_usd: Decimal | None = None


@dataclass
class SamplerStats:
    """Statistics across samples."""

    samples: int = 0
    failed_samples: int = 0
    rows_written: int = 0
    last_sample_at: datetime | None = None
    last_error: str | None = None


class PriceSampler:
    """Appends floor-price snapshots on a fixed interval.

    Runs independently of the reconciliation engine.
    """

    def __init__(
        self,
        db: DatabaseManager,
        feed: PriceFeedClient,
        *,
        interval_minutes: int = DEFAULT_INTERVAL_MINUTES,
    ) -> None:
        self._db = db
        self._feed = feed
        self._interval_seconds = interval_minutes * 60

        self._stats = SamplerStats()
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def stats(self) -> SamplerStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sample_once(self) -> SampleResult:
        """Fetch all quotes and append one PriceData row per ticker.

        Raises:
            UpstreamError: If the price feed cannot be fetched.
        """
        sampled_at = datetime.now(UTC)
        quotes = await self._feed.fetch_floor_prices()
        kas_usd = await self._feed.fetch_base_asset_usd()

        result = SampleResult(sampled_at=sampled_at, base_asset_usd=kas_usd)
        async with self._db.get_async_session() as session:
            tokens = TokenRepository(session)
            prices = PriceDataRepository(session)
            for quote in quotes:
                if await tokens.ensure_placeholder(quote.tick):
                    result.placeholders_created += 1
                    logger.debug("Created placeholder token %s for price data", quote.tick)
                value_usd = quote.value_kas * kas_usd if kas_usd is not None else Decimal(0)
                await prices.append(
                    PriceDataDTO(
                        tick=quote.tick,
                        timestamp=sampled_at,
                        value_kas=quote.value_kas,
                        value_usd=value_usd,
                        change_24h=quote.change_24h,
                    )
                )
                result.quotes += 1

        self._stats.samples += 1
        self._stats.rows_written += result.quotes
        self._stats.last_sample_at = sampled_at
        logger.info(
            "Stored %d price snapshots (%d new placeholder tokens)",
            result.quotes,
            result.placeholders_created,
        )
        return result

    async def start(self) -> None:
        """Start sampling in the background, beginning immediately."""
        if self._task is not None:
            logger.warning("Price sampler already started")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("Price sampler started (interval=%ds)", self._interval_seconds)

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Price sampler stopped")

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.sample_once()
            except UpstreamError as e:
                self._stats.failed_samples += 1
                self._stats.last_error = str(e)
                logger.warning("Price sample failed: %s", e)
            except Exception as e:
                self._stats.failed_samples += 1
                self._stats.last_error = str(e)
                logger.exception("Unexpected error during price sample")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval_seconds)
                break
            except TimeoutError:
                pass
