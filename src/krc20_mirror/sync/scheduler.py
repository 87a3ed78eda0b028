"""Hourly scheduler aligned to wall-clock hour boundaries."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

from krc20_mirror.sync.engine import ConcurrencyConflict, ReconciliationEngine

logger = logging.getLogger(__name__)


def next_hour_boundary(now: datetime) -> datetime:
    """Return the first HH:00:00 strictly after ``now``."""
    return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)


class SchedulerState(str, Enum):
    """Lifecycle of the scheduler loop."""

    STOPPED = "stopped"
    WAITING = "waiting"
    RUNNING = "running"


@dataclass
class SchedulerStats:
    """Statistics for scheduled ticks."""

    ticks: int = 0
    passes_started: int = 0
    ticks_skipped: int = 0
    passes_failed: int = 0
    next_run_at: datetime | None = None
    last_error: str | None = None


class HourlyScheduler:
    """Fires a full pass at every wall-clock hour unless a pass is running.

    Example:
        ```python
        scheduler = HourlyScheduler(engine)
        await scheduler.start()
        ...
        await scheduler.stop()
        ```
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        *,
        historical: bool | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine
        self._historical = historical
        self._clock = clock or (lambda: datetime.now(UTC))

        self._state = SchedulerState.STOPPED
        self._stats = SchedulerStats()
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def stats(self) -> SchedulerStats:
        return self._stats

    async def start(self) -> None:
        """Start the background scheduling loop."""
        if self._task is not None:
            logger.warning("Scheduler already started")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("Hourly scheduler started")

    async def stop(self) -> None:
        """Stop the loop, cancelling a pass it started if one is running."""
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._state = SchedulerState.STOPPED
        logger.info("Hourly scheduler stopped")

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            now = self._clock()
            fire_at = next_hour_boundary(now)
            self._stats.next_run_at = fire_at
            self._state = SchedulerState.WAITING
            logger.info("Next full sync scheduled for %s", fire_at.isoformat())

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=(fire_at - now).total_seconds(),
                )
                break
            except TimeoutError:
                pass

            await self.tick()

    async def tick(self) -> bool:
        """Run one scheduled fire.

        Returns:
            True if a pass was started.
        """
        self._stats.ticks += 1
        if self._engine.is_busy:
            self._stats.ticks_skipped += 1
            logger.info("Skipping scheduled sync: engine is %s", self._engine.state.value)
            return False

        self._state = SchedulerState.RUNNING
        try:
            await self._engine.run_full_pass(historical=self._historical)
        except ConcurrencyConflict as e:
            self._stats.ticks_skipped += 1
            logger.info("Skipping scheduled sync: %s", e)
            return False
        except Exception as e:
            self._stats.passes_failed += 1
            self._stats.last_error = str(e)
            logger.exception("Scheduled full sync failed")
            return True
        finally:
            self._state = SchedulerState.WAITING
        self._stats.passes_started += 1
        return True
