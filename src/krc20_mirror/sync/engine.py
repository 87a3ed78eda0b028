"""Reconciliation engine mirroring Kasplex state into the local store.

The engine owns the only coordination state in the process: which kind of
pass (if any) is running. Claiming a pass is a synchronous check-and-set,
so two tasks can never both observe IDLE and start concurrently.

Full pass:
    1. Record the pass start in LastUpdate.
    2. Enumerate the token universe and overwrite each token's metadata.
    3. Page through each token's operations until a short page, a failed
       page, or (unless historical) a page containing an already-stored hash.
    4. Replace the balance set of every holder named by any token.
    5. Evict holders that no token named, and holders left without balances.
    6. Remove duplicate rows.

Single-ticker pass: steps 2-4 and 6 for one ticker, resuming transaction
pagination from a stored checkpoint.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from functools import partial
from typing import Any

from krc20_mirror.ingestor.kasplex_client import KasplexClient
from krc20_mirror.ingestor.models import HolderEntry, OperationRecord, TokenInfo, TokenSummary
from krc20_mirror.ingestor.retry import UpstreamError
from krc20_mirror.storage.database import DatabaseManager
from krc20_mirror.storage.repos import (
    BalanceDTO,
    CheckpointRepository,
    CleanupRepository,
    DuplicateCleanupReport,
    HolderRepository,
    LastUpdateRepository,
    PaginationCheckpoint,
    TokenDTO,
    TokenRepository,
    TransactionDTO,
    TransactionRepository,
)

logger = logging.getLogger(__name__)

DEFAULT_TICKER_RETRY_COOLDOWN_SECONDS = 60.0


class EngineState(str, Enum):
    """Which reconciliation pass, if any, is running."""

    IDLE = "idle"
    FULL_PASS = "full_pass"
    TICKER_PASS = "ticker_pass"


class ConcurrencyConflict(Exception):
    """Raised when a pass is requested while another one is running."""

    def __init__(self, active: EngineState, active_ticker: str | None = None) -> None:
        if active == EngineState.TICKER_PASS and active_ticker:
            message = f"A sync is already running (ticker pass for {active_ticker})"
        else:
            message = f"A sync is already running ({active.value})"
        super().__init__(message)
        self.active = active
        self.active_ticker = active_ticker


class TickerSyncError(Exception):
    """Raised when a single-ticker pass gives up on a transaction page."""


@dataclass
class PassResult:
    """Outcome of one reconciliation pass."""

    kind: EngineState
    started_at: datetime
    finished_at: datetime | None = None
    tick: str | None = None
    tokens_synced: int = 0
    tokens_failed: list[str] = field(default_factory=list)
    transactions_upserted: int = 0
    transaction_pages: int = 0
    holders_synced: int = 0
    holders_failed: int = 0
    holders_evicted: int = 0
    duplicates: DuplicateCleanupReport = field(default_factory=DuplicateCleanupReport)

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class EngineStats:
    """Statistics across all passes run by an engine."""

    total_passes: int = 0
    successful_passes: int = 0
    failed_passes: int = 0
    rejected_requests: int = 0
    last_pass_kind: EngineState | None = None
    last_pass_started_at: datetime | None = None
    last_pass_duration_seconds: float = 0.0
    last_error: str | None = None


def token_dto_from_info(info: TokenInfo, synced_at: datetime) -> TokenDTO:
    return TokenDTO(
        tick=info.tick,
        max=info.max,
        lim=info.lim,
        pre=info.pre,
        to_address=info.to,
        dec=info.dec,
        minted=info.minted,
        op_score_add=info.op_score_add,
        op_score_mod=info.op_score_mod,
        state=info.state.value,
        hash_rev=info.hash_rev,
        mts_add=info.mts_add,
        holder_total=info.holder_total,
        transfer_total=info.transfer_total,
        mint_total=info.mint_total,
        last_updated=synced_at,
    )


def transaction_dto_from_record(record: OperationRecord) -> TransactionDTO:
    return TransactionDTO(
        hash_rev=record.hash_rev,
        p=record.p,
        op=record.op,
        tick=record.tick,
        amt=record.amt,
        from_address=record.from_address,
        to_address=record.to_address,
        op_score=record.op_score,
        fee_rev=record.fee_rev,
        tx_accept=record.tx_accept,
        op_accept=record.op_accept,
        op_error=record.op_error,
        checkpoint=record.checkpoint,
        mts_add=record.mts_add,
        mts_mod=record.mts_mod,
        max=record.max,
        lim=record.lim,
        pre=record.pre,
        dec=record.dec,
    )


def _empty_page(_: Exception) -> list[OperationRecord]:
    return []


class ReconciliationEngine:
    """Runs full and single-ticker reconciliation passes, one at a time.

    Example:
        ```python
        engine = ReconciliationEngine(db, client)
        result = await engine.run_full_pass()
        print(result.tokens_synced, result.holders_evicted)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        client: KasplexClient,
        *,
        batch_size: int | None = None,
        historical: bool = False,
        ticker_retry_cooldown_seconds: float = DEFAULT_TICKER_RETRY_COOLDOWN_SECONDS,
    ) -> None:
        """Initialize the engine.

        Args:
            db: Database manager providing sessions.
            client: Upstream Kasplex client.
            batch_size: Fixed operation page size; defaults to the client's.
            historical: Default for walking every page instead of stopping
                at the first already-stored hash.
            ticker_retry_cooldown_seconds: Wait before a single-ticker pass
                retries a failed page.
        """
        self._db = db
        self._client = client
        self._batch_size = batch_size if batch_size is not None else client.batch_size
        self._historical = historical
        self._ticker_retry_cooldown = ticker_retry_cooldown_seconds

        self._state = EngineState.IDLE
        self._active_ticker: str | None = None
        self._stats = EngineStats()

    @property
    def state(self) -> EngineState:
        """Current engine state."""
        return self._state

    @property
    def active_ticker(self) -> str | None:
        """Ticker of the running single-ticker pass, if any."""
        return self._active_ticker

    @property
    def is_busy(self) -> bool:
        return self._state != EngineState.IDLE

    @property
    def stats(self) -> EngineStats:
        """Statistics across passes."""
        return self._stats

    # ------------------------------------------------------------------
    # Mutual exclusion
    # ------------------------------------------------------------------

    def _claim(self, state: EngineState, tick: str | None = None) -> None:
        # Must stay free of awaits: check and set happen in one step.
        if self._state != EngineState.IDLE:
            self._stats.rejected_requests += 1
            raise ConcurrencyConflict(self._state, self._active_ticker)
        self._state = state
        self._active_ticker = tick

    def _release(self) -> None:
        self._state = EngineState.IDLE
        self._active_ticker = None

    def begin_full_pass(self, *, historical: bool | None = None) -> Coroutine[Any, Any, PassResult]:
        """Claim the engine for a full pass and return the pass coroutine.

        The claim happens immediately, so a caller can schedule the returned
        coroutine as a background task without a window for another pass.

        Raises:
            ConcurrencyConflict: If any pass is already running.
        """
        self._claim(EngineState.FULL_PASS)
        walk_all = self._historical if historical is None else historical
        result = PassResult(EngineState.FULL_PASS, datetime.now(UTC))
        return self._guarded(result, self._full_pass, walk_all)

    def begin_ticker_pass(
        self, tick: str, *, historical: bool | None = None
    ) -> Coroutine[Any, Any, PassResult]:
        """Claim the engine for a single-ticker pass and return the pass coroutine.

        Raises:
            ConcurrencyConflict: If any pass is already running.
        """
        self._claim(EngineState.TICKER_PASS, tick)
        walk_all = self._historical if historical is None else historical
        result = PassResult(EngineState.TICKER_PASS, datetime.now(UTC), tick=tick)
        return self._guarded(result, partial(self._ticker_pass, tick=tick), walk_all)

    async def run_full_pass(self, *, historical: bool | None = None) -> PassResult:
        """Run a full pass over the token universe."""
        return await self.begin_full_pass(historical=historical)

    async def run_ticker_pass(self, tick: str, *, historical: bool | None = None) -> PassResult:
        """Run a pass scoped to one ticker."""
        return await self.begin_ticker_pass(tick, historical=historical)

    async def _guarded(
        self,
        result: PassResult,
        body: Callable[[PassResult, bool], Awaitable[None]],
        historical: bool,
    ) -> PassResult:
        self._stats.total_passes += 1
        self._stats.last_pass_kind = result.kind
        self._stats.last_pass_started_at = result.started_at
        logger.info(
            "Starting %s%s (historical=%s)",
            result.kind.value,
            f" for {result.tick}" if result.tick else "",
            historical,
        )
        try:
            await body(result, historical)
        except Exception as e:
            self._stats.failed_passes += 1
            self._stats.last_error = str(e)
            logger.error("%s failed: %s", result.kind.value, e)
            raise
        else:
            self._stats.successful_passes += 1
            self._stats.last_error = None
        finally:
            result.finished_at = datetime.now(UTC)
            self._stats.last_pass_duration_seconds = result.duration_seconds
            self._release()

        logger.info(
            "Finished %s in %.2fs: tokens=%d failed=%d transactions=%d holders=%d evicted=%d duplicates=%d",
            result.kind.value,
            result.duration_seconds,
            result.tokens_synced,
            len(result.tokens_failed),
            result.transactions_upserted,
            result.holders_synced,
            result.holders_evicted,
            result.duplicates.total,
        )
        return result

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def _full_pass(self, result: PassResult, historical: bool) -> None:
        async with self._db.get_async_session() as session:
            await LastUpdateRepository(session).touch(result.started_at)

        universe = await self._list_universe()
        logger.info("Token universe has %d tokens", len(universe))

        holders_by_tick: dict[str, tuple[HolderEntry, ...]] = {}
        missing_holder_lists: list[str] = []
        for summary in universe:
            tick = summary.tick
            try:
                info = await self._sync_token(tick)
            except UpstreamError as e:
                logger.warning("Skipping token %s: detail fetch failed: %s", tick, e)
                result.tokens_failed.append(tick)
                missing_holder_lists.append(tick)
                continue

            holders_by_tick[tick] = info.holders
            try:
                await self._sync_transactions(result, tick, historical=historical)
            except UpstreamError as e:
                logger.warning("Skipping transactions of %s: %s", tick, e)
                result.tokens_failed.append(tick)
                continue
            result.tokens_synced += 1

        seen = await self._sync_holders(result, holders_by_tick)

        if missing_holder_lists:
            logger.warning(
                "Skipping stale holder eviction: holder lists missing for %d tokens (%s)",
                len(missing_holder_lists),
                ", ".join(missing_holder_lists[:10]),
            )
        else:
            async with self._db.get_async_session() as session:
                holders = HolderRepository(session)
                result.holders_evicted = await holders.delete_except(seen)
                result.holders_evicted += await holders.delete_without_balances()

        result.duplicates = await self._remove_duplicates()

    async def _ticker_pass(self, result: PassResult, historical: bool, *, tick: str) -> None:
        try:
            info = await self._sync_token(tick)

            async with self._db.get_async_session() as session:
                checkpoint = await CheckpointRepository(session).load(tick)
            if checkpoint is not None:
                logger.info(
                    "Resuming %s from cursor %s after %d batches",
                    tick,
                    checkpoint.cursor,
                    checkpoint.batch_count,
                )

            await self._sync_transactions(
                result,
                tick,
                historical=historical,
                checkpoint=checkpoint or PaginationCheckpoint(tick=tick, cursor=None, batch_count=0),
            )
            result.tokens_synced = 1

            await self._sync_holders(result, {tick: info.holders})
            result.duplicates = await self._remove_duplicates()
        except Exception:
            result.tokens_failed.append(tick)
            await self._delete_checkpoint(tick)
            raise
        await self._delete_checkpoint(tick)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _list_universe(self) -> list[TokenSummary]:
        tokens: list[TokenSummary] = []
        seen_ticks: set[str] = set()
        seen_cursors: set[str] = set()
        cursor: str | None = None
        while True:
            page = await self._client.list_tokens(cursor)
            for item in page.items:
                if item.tick not in seen_ticks:
                    seen_ticks.add(item.tick)
                    tokens.append(item)
            if not page.next_cursor or not page.items:
                break
            if page.next_cursor in seen_cursors:
                logger.warning("Token list cursor %s repeated; stopping enumeration", page.next_cursor)
                break
            seen_cursors.add(page.next_cursor)
            cursor = page.next_cursor
        return tokens

    async def _sync_token(self, tick: str) -> TokenInfo:
        info = await self._client.get_token_detail(tick)
        async with self._db.get_async_session() as session:
            await TokenRepository(session).upsert(token_dto_from_info(info, datetime.now(UTC)))
        logger.debug("Synced token %s (minted=%s, holders=%d)", tick, info.minted, len(info.holders))
        return info

    async def _sync_transactions(
        self,
        result: PassResult,
        tick: str,
        *,
        historical: bool,
        checkpoint: PaginationCheckpoint | None = None,
    ) -> None:
        """Page through a token's operations, upserting every item.

        Without a checkpoint (full pass) a failed page ends pagination like a
        natural end. With one (single-ticker pass) the page is retried once
        after a cooldown and the checkpoint is saved after every page.
        """
        cursor = checkpoint.cursor if checkpoint else None
        batch_count = checkpoint.batch_count if checkpoint else 0
        # Hashes written by this pass, so overlapping pages never count as "caught up".
        written: set[str] = set()

        while True:
            if checkpoint is None:
                page = await self._client.get_transaction_page(tick, cursor, fallback=_empty_page)
            else:
                page = await self._fetch_page_with_cooldown(tick, cursor)
            result.transaction_pages += 1
            if not page:
                break

            async with self._db.get_async_session() as session:
                existing = await TransactionRepository(session).upsert_many(
                    [transaction_dto_from_record(record) for record in page]
                )
            known = existing - written
            written.update(record.hash_rev for record in page)
            result.transactions_upserted += len(page)
            batch_count += 1

            if len(page) < self._batch_size:
                break
            if known and not historical:
                logger.debug("%s caught up with stored operations after %d pages", tick, batch_count)
                break

            cursor = page[-1].op_score
            if checkpoint is not None:
                async with self._db.get_async_session() as session:
                    await CheckpointRepository(session).save(
                        PaginationCheckpoint(tick=tick, cursor=cursor, batch_count=batch_count)
                    )

    async def _fetch_page_with_cooldown(self, tick: str, cursor: str | None) -> list[OperationRecord]:
        try:
            return await self._client.get_transaction_page(tick, cursor)
        except UpstreamError as e:
            logger.warning(
                "Page of %s at cursor %s failed: %s. Retrying once in %.0f seconds",
                tick,
                cursor,
                e,
                self._ticker_retry_cooldown,
            )
        await asyncio.sleep(self._ticker_retry_cooldown)
        try:
            return await self._client.get_transaction_page(tick, cursor)
        except UpstreamError as e:
            raise TickerSyncError(f"Giving up on {tick} at cursor {cursor}: {e}") from e

    async def _sync_holders(
        self, result: PassResult, holders_by_tick: dict[str, tuple[HolderEntry, ...]]
    ) -> set[str]:
        """Replace the balance set of every holder named in ``holders_by_tick``.

        Each address is fetched once however many tokens name it.

        Returns:
            Every address named, including those whose holdings fetch failed.
        """
        addresses = list(
            dict.fromkeys(entry.address for entries in holders_by_tick.values() for entry in entries)
        )
        seen: set[str] = set()
        for address in addresses:
            seen.add(address)
            try:
                holdings = await self._client.get_address_holdings(address)
            except UpstreamError as e:
                logger.warning("Keeping previous balances of %s: %s", address, e)
                result.holders_failed += 1
                continue

            balances = [BalanceDTO(tick=h.tick, balance=h.balance) for h in holdings]
            async with self._db.get_async_session() as session:
                await HolderRepository(session).replace_balances(address, balances)
            result.holders_synced += 1
        return seen

    async def _remove_duplicates(self) -> DuplicateCleanupReport:
        async with self._db.get_async_session() as session:
            return await CleanupRepository(session).remove_duplicates()

    async def _delete_checkpoint(self, tick: str) -> None:
        async with self._db.get_async_session() as session:
            await CheckpointRepository(session).delete(tick)
