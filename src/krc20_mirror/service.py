"""Service wiring for the KRC20 mirror.

This module provides the SyncService class that builds the upstream clients,
storage, reconciliation engine, scheduler and price sampler from settings and
owns their lifecycle. It also exposes the on-demand trigger seam a route layer
or bot command would call.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from krc20_mirror.config import Settings, get_settings
from krc20_mirror.ingestor.kasplex_client import KasplexClient
from krc20_mirror.ingestor.price_feed import PriceFeedClient
from krc20_mirror.storage.database import DatabaseManager
from krc20_mirror.storage.repos import LastUpdateRepository
from krc20_mirror.sync.engine import ConcurrencyConflict, PassResult, ReconciliationEngine
from krc20_mirror.sync.price_sampler import PriceSampler
from krc20_mirror.sync.scheduler import HourlyScheduler

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    """Service lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass(frozen=True)
class TriggerResult:
    """Immediate answer to an on-demand sync request."""

    accepted: bool
    message: str


class SyncService:
    """Owns the mirror's components and background tasks.

    Example:
        ```python
        from krc20_mirror.service import SyncService

        service = SyncService()
        await service.start()
        result = service.request_ticker_sync("NACHO")
        print(result.message)
        await service.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db: DatabaseManager | None = None,
        client: KasplexClient | None = None,
        price_feed: PriceFeedClient | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            db: Database manager to use instead of one built from settings.
            client: Kasplex client to use instead of one built from settings.
            price_feed: Price feed client to use instead of one built from settings.
        """
        self._settings = settings or get_settings()
        settings = self._settings

        self._db = db or DatabaseManager(settings.database.url, echo=settings.database.echo)
        self._client = client or KasplexClient(
            base_url=settings.kasplex.api_base_url,
            batch_size=settings.kasplex.batch_size,
            max_attempts=settings.retry.max_attempts,
            retry_base_delay=settings.retry.base_delay_seconds,
            timeout_seconds=settings.kasplex.request_timeout_seconds,
            requests_per_second=settings.kasplex.requests_per_second,
            token_cursor_param=settings.kasplex.token_cursor_param,
            op_cursor_param=settings.kasplex.op_cursor_param,
        )
        self._price_feed = price_feed or PriceFeedClient(
            settings.price.feed_url,
            base_asset_url=settings.price.base_asset_url,
            max_attempts=settings.retry.max_attempts,
            retry_base_delay=settings.retry.base_delay_seconds,
            timeout_seconds=settings.kasplex.request_timeout_seconds,
        )

        self._engine = ReconciliationEngine(
            self._db,
            self._client,
            batch_size=settings.kasplex.batch_size,
            historical=settings.sync.historical_update,
            ticker_retry_cooldown_seconds=settings.sync.ticker_retry_cooldown_seconds,
        )
        self._scheduler = HourlyScheduler(
            self._engine, historical=settings.sync.historical_update
        )
        self._sampler = PriceSampler(
            self._db,
            self._price_feed,
            interval_minutes=settings.price.update_interval_minutes,
        )

        self._state = ServiceState.STOPPED
        self._started_at: datetime | None = None
        self._stop_event: asyncio.Event | None = None
        self._pass_tasks: set[asyncio.Task[PassResult | None]] = set()

    @property
    def state(self) -> ServiceState:
        """Current service state."""
        return self._state

    @property
    def engine(self) -> ReconciliationEngine:
        return self._engine

    @property
    def scheduler(self) -> HourlyScheduler:
        return self._scheduler

    @property
    def sampler(self) -> PriceSampler:
        return self._sampler

    @property
    def db(self) -> DatabaseManager:
        return self._db

    @property
    def is_running(self) -> bool:
        """Check if the service is running."""
        return self._state == ServiceState.RUNNING

    async def start(self) -> None:
        """Start the scheduler and price sampler as enabled in settings.

        Raises:
            RuntimeError: If the service is not stopped.
        """
        if self._state != ServiceState.STOPPED:
            raise RuntimeError(f"Cannot start service in state {self._state}")

        self._state = ServiceState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting sync service with %s", self._settings.redacted_summary())

        try:
            if self._settings.sync.scheduler_enabled:
                await self._scheduler.start()
            else:
                logger.info("Hourly scheduler disabled")
            if self._settings.price.enabled:
                await self._sampler.start()
            else:
                logger.info("Price sampler disabled")
            self._started_at = datetime.now(UTC)
            self._state = ServiceState.RUNNING
            logger.info("Sync service started")
        except Exception as e:
            self._state = ServiceState.ERROR
            logger.error("Failed to start sync service: %s", e)
            await self._shutdown()
            raise

    async def stop(self) -> None:
        """Stop background tasks and release connections."""
        if self._state == ServiceState.STOPPED:
            return

        self._state = ServiceState.STOPPING
        logger.info("Stopping sync service...")
        if self._stop_event:
            self._stop_event.set()

        await self._shutdown()
        self._state = ServiceState.STOPPED
        logger.info("Sync service stopped")

    async def close(self) -> None:
        """Release connections held by a service that was never started."""
        if self._state == ServiceState.STOPPED:
            await self._close_resources()
        else:
            await self.stop()

    async def _shutdown(self) -> None:
        await self._scheduler.stop()
        await self._sampler.stop()

        for task in list(self._pass_tasks):
            task.cancel()
        for task in list(self._pass_tasks):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._pass_tasks.clear()

        await self._close_resources()

    async def _close_resources(self) -> None:
        await self._client.close()
        await self._price_feed.close()
        await self._db.dispose_async()

    # ------------------------------------------------------------------
    # On-demand triggers
    # ------------------------------------------------------------------

    def request_full_sync(self, *, historical: bool | None = None) -> TriggerResult:
        """Start a full pass in the background.

        Returns immediately; the pass outcome is only logged.
        """
        try:
            coro = self._engine.begin_full_pass(historical=historical)
        except ConcurrencyConflict as e:
            logger.warning("Rejected full sync request: %s", e)
            return TriggerResult(accepted=False, message=str(e))

        self._spawn(coro, "full sync")
        return TriggerResult(accepted=True, message="Full sync started")

    def request_ticker_sync(self, tick: str, *, historical: bool | None = None) -> TriggerResult:
        """Start a single-ticker pass in the background."""
        tick = tick.strip()
        if not tick:
            return TriggerResult(accepted=False, message="Ticker must not be empty")
        try:
            coro = self._engine.begin_ticker_pass(tick, historical=historical)
        except ConcurrencyConflict as e:
            logger.warning("Rejected sync request for %s: %s", tick, e)
            return TriggerResult(accepted=False, message=str(e))

        self._spawn(coro, f"sync of {tick}")
        return TriggerResult(accepted=True, message=f"Sync started for {tick}")

    def _spawn(self, coro: Coroutine[Any, Any, PassResult], label: str) -> None:
        task = asyncio.create_task(self._run_in_background(coro, label))
        self._pass_tasks.add(task)
        task.add_done_callback(self._pass_tasks.discard)

    async def _run_in_background(
        self, coro: Coroutine[Any, Any, PassResult], label: str
    ) -> PassResult | None:
        try:
            return await coro
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Background %s failed", label)
            return None

    async def wait_for_background(self) -> None:
        """Wait until every triggered background pass has finished."""
        if self._pass_tasks:
            await asyncio.gather(*list(self._pass_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # One-shot operations
    # ------------------------------------------------------------------

    async def init_schema(self) -> None:
        await self._db.init_schema_async()

    async def last_update(self) -> datetime | None:
        """Start time of the most recent full pass."""
        async with self._db.get_async_session() as session:
            return await LastUpdateRepository(session).get()

    async def status(self) -> dict[str, Any]:
        """Snapshot of service, engine, scheduler and sampler state."""
        engine_stats = self._engine.stats
        last_update = await self.last_update()
        return {
            "service": self._state.value,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "engine": {
                "state": self._engine.state.value,
                "active_ticker": self._engine.active_ticker,
                "total_passes": engine_stats.total_passes,
                "failed_passes": engine_stats.failed_passes,
                "rejected_requests": engine_stats.rejected_requests,
                "last_error": engine_stats.last_error,
            },
            "scheduler": {
                "state": self._scheduler.state.value,
                "next_run_at": (
                    self._scheduler.stats.next_run_at.isoformat()
                    if self._scheduler.stats.next_run_at
                    else None
                ),
            },
            "sampler": {
                "samples": self._sampler.stats.samples,
                "failed_samples": self._sampler.stats.failed_samples,
            },
            "last_update": last_update.isoformat() if last_update else None,
        }

    async def run(self) -> None:
        """Start the service and run until stopped or cancelled."""
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    def request_stop(self) -> None:
        """Ask a running ``run()`` to return. Safe to call from a signal handler."""
        if self._stop_event:
            self._stop_event.set()

    async def __aenter__(self) -> SyncService:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
