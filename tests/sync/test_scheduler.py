"""Tests for the hourly scheduler."""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from krc20_mirror.sync.engine import ConcurrencyConflict, EngineState, ReconciliationEngine
from krc20_mirror.sync.scheduler import HourlyScheduler, SchedulerState, next_hour_boundary


def make_engine(*, busy: bool = False) -> MagicMock:
    engine = MagicMock(spec=ReconciliationEngine)
    engine.is_busy = busy
    engine.state = EngineState.FULL_PASS if busy else EngineState.IDLE
    engine.run_full_pass = AsyncMock()
    return engine


async def wait_until(predicate, timeout: float = 5.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout=timeout)


class TestNextHourBoundary:
    """Tests for next_hour_boundary."""

    def test_mid_hour(self) -> None:
        now = datetime(2026, 3, 1, 12, 34, 56, 789, tzinfo=UTC)

        assert next_hour_boundary(now) == datetime(2026, 3, 1, 13, 0, tzinfo=UTC)

    def test_exactly_on_the_hour(self) -> None:
        now = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)

        assert next_hour_boundary(now) == datetime(2026, 3, 1, 13, 0, tzinfo=UTC)

    def test_crosses_midnight(self) -> None:
        now = datetime(2026, 3, 1, 23, 59, 59, tzinfo=UTC)

        assert next_hour_boundary(now) == datetime(2026, 3, 2, 0, 0, tzinfo=UTC)


class TestTick:
    """Tests for a single scheduled fire."""

    @pytest.mark.asyncio
    async def test_runs_full_pass(self) -> None:
        engine = make_engine()
        scheduler = HourlyScheduler(engine, historical=True)

        assert await scheduler.tick() is True

        engine.run_full_pass.assert_awaited_once_with(historical=True)
        assert scheduler.stats.passes_started == 1
        assert scheduler.stats.ticks == 1

    @pytest.mark.asyncio
    async def test_skips_when_engine_busy(self) -> None:
        engine = make_engine(busy=True)
        scheduler = HourlyScheduler(engine)

        assert await scheduler.tick() is False

        engine.run_full_pass.assert_not_awaited()
        assert scheduler.stats.ticks_skipped == 1

    @pytest.mark.asyncio
    async def test_skips_on_lost_claim(self) -> None:
        engine = make_engine()
        engine.run_full_pass.side_effect = ConcurrencyConflict(EngineState.TICKER_PASS, "FOO")
        scheduler = HourlyScheduler(engine)

        assert await scheduler.tick() is False
        assert scheduler.stats.ticks_skipped == 1
        assert scheduler.stats.passes_failed == 0

    @pytest.mark.asyncio
    async def test_failure_is_recorded(self) -> None:
        engine = make_engine()
        engine.run_full_pass.side_effect = RuntimeError("database unreachable")
        scheduler = HourlyScheduler(engine)

        assert await scheduler.tick() is True

        assert scheduler.stats.passes_failed == 1
        assert scheduler.stats.last_error == "database unreachable"
        assert scheduler.state == SchedulerState.WAITING


class TestLoop:
    """Tests for the background loop."""

    @pytest.mark.asyncio
    async def test_loop_survives_failed_pass(self) -> None:
        engine = make_engine()
        calls = 0

        async def run_full_pass(**kwargs) -> None:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("first pass fails")

        engine.run_full_pass.side_effect = run_full_pass
        # A clock just short of the hour makes every wait a few microseconds.
        scheduler = HourlyScheduler(
            engine, clock=lambda: datetime(2026, 3, 1, 12, 59, 59, 999990, tzinfo=UTC)
        )

        await scheduler.start()
        try:
            await wait_until(lambda: scheduler.stats.ticks >= 3)
        finally:
            await scheduler.stop()

        assert scheduler.stats.passes_failed == 1
        assert scheduler.stats.passes_started >= 2
        assert scheduler.stats.next_run_at == datetime(2026, 3, 1, 13, 0, tzinfo=UTC)
        assert scheduler.state == SchedulerState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_while_waiting(self) -> None:
        engine = make_engine()
        scheduler = HourlyScheduler(engine)

        await scheduler.start()
        await wait_until(lambda: scheduler.state == SchedulerState.WAITING)
        await scheduler.stop()

        engine.run_full_pass.assert_not_awaited()
        assert scheduler.state == SchedulerState.STOPPED

    @pytest.mark.asyncio
    async def test_double_start_is_noop(self) -> None:
        scheduler = HourlyScheduler(make_engine())

        await scheduler.start()
        first_task = scheduler._task
        await scheduler.start()

        assert scheduler._task is first_task
        await scheduler.stop()
