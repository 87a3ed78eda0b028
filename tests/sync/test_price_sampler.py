"""Tests for the floor-price sampler."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from krc20_mirror.ingestor.models import PriceQuote
from krc20_mirror.ingestor.price_feed import PriceFeedClient
from krc20_mirror.ingestor.retry import TransientError
from krc20_mirror.storage.database import DatabaseManager
from krc20_mirror.storage.repos import PriceDataRepository, TokenRepository
from krc20_mirror.sync.price_sampler import PriceSampler


@pytest.fixture
def feed() -> MagicMock:
    mock = MagicMock(spec=PriceFeedClient)
    mock.fetch_floor_prices = AsyncMock(
        return_value=[
            PriceQuote(tick="NACHO", value_kas=Decimal("0.5"), change_24h=Decimal("-2")),
            PriceQuote(tick="KASPER", value_kas=Decimal(2)),
        ]
    )
    mock.fetch_base_asset_usd = AsyncMock(return_value=Decimal("0.1"))
    return mock


class TestSampleOnce:
    """Tests for a single sample."""

    @pytest.mark.asyncio
    async def test_appends_row_per_quote(self, db: DatabaseManager, feed: MagicMock) -> None:
        sampler = PriceSampler(db, feed)

        result = await sampler.sample_once()

        async with db.get_async_session() as session:
            nacho = await PriceDataRepository(session).list_for_tick("NACHO")
            kasper = await PriceDataRepository(session).latest_for_tick("KASPER")
        assert result.quotes == 2
        assert len(nacho) == 1
        assert nacho[0].value_kas == Decimal("0.5")
        assert nacho[0].value_usd == Decimal("0.05")
        assert nacho[0].change_24h == Decimal(-2)
        assert kasper is not None
        assert kasper.value_usd == Decimal("0.2")
        assert sampler.stats.rows_written == 2

    @pytest.mark.asyncio
    async def test_creates_placeholder_tokens(self, db: DatabaseManager, feed: MagicMock) -> None:
        async with db.get_async_session() as session:
            await TokenRepository(session).ensure_placeholder("NACHO")

        result = await PriceSampler(db, feed).sample_once()

        async with db.get_async_session() as session:
            ticks = await TokenRepository(session).list_ticks()
        assert result.placeholders_created == 1
        assert ticks == {"NACHO", "KASPER"}

    @pytest.mark.asyncio
    async def test_usd_zero_without_base_price(self, db: DatabaseManager, feed: MagicMock) -> None:
        feed.fetch_base_asset_usd.return_value = None

        result = await PriceSampler(db, feed).sample_once()

        async with db.get_async_session() as session:
            row = await PriceDataRepository(session).latest_for_tick("NACHO")
        assert result.base_asset_usd is None
        assert row is not None
        assert row.value_usd == Decimal(0)

    @pytest.mark.asyncio
    async def test_samples_accumulate(self, db: DatabaseManager, feed: MagicMock) -> None:
        sampler = PriceSampler(db, feed)

        await sampler.sample_once()
        await sampler.sample_once()

        async with db.get_async_session() as session:
            rows = await PriceDataRepository(session).list_for_tick("NACHO")
        assert len(rows) == 2

    @pytest.mark.asyncio
    async def test_feed_failure_raises(self, db: DatabaseManager, feed: MagicMock) -> None:
        feed.fetch_floor_prices.side_effect = TransientError("feed down")

        with pytest.raises(TransientError):
            await PriceSampler(db, feed).sample_once()


class TestSamplerLoop:
    """Tests for the background sampling loop."""

    @pytest.mark.asyncio
    async def test_samples_immediately_on_start(self, db: DatabaseManager, feed: MagicMock) -> None:
        sampler = PriceSampler(db, feed)

        await sampler.start()
        assert sampler.is_running
        try:
            await asyncio.wait_for(_until(lambda: sampler.stats.samples >= 1), timeout=5)
        finally:
            await sampler.stop()

        assert not sampler.is_running
        feed.fetch_floor_prices.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_sample_keeps_loop_alive(
        self, db: DatabaseManager, feed: MagicMock
    ) -> None:
        feed.fetch_floor_prices.side_effect = TransientError("feed down")
        sampler = PriceSampler(db, feed)

        await sampler.start()
        try:
            await asyncio.wait_for(_until(lambda: sampler.stats.failed_samples >= 1), timeout=5)
            assert sampler.is_running
        finally:
            await sampler.stop()

        assert sampler.stats.last_error == "feed down"


async def _until(predicate) -> None:
    while not predicate():
        await asyncio.sleep(0.001)
