"""Repository pattern implementations for data access.

This module provides idempotent write operations and read queries for
tokens, transactions, holders and balances, price snapshots, the
last-update marker and single-ticker pagination checkpoints.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from krc20_mirror.storage.models import (
    BalanceModel,
    HolderModel,
    LastUpdateModel,
    PriceDataModel,
    SyncCheckpointModel,
    TokenModel,
    TransactionModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

T = TypeVar("T")

LAST_UPDATE_ID = 1
# Keeps IN (...) lists well under driver bind-parameter limits.
IN_CLAUSE_CHUNK_SIZE = 500


def _chunks(items: Sequence[T], size: int = IN_CLAUSE_CHUNK_SIZE) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _ensure_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _insert(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


# ============================================================================
# Tokens
# ============================================================================


@dataclass
class TokenDTO:
    """Data transfer object for tokens."""

    tick: str
    max: Decimal
    lim: Decimal
    pre: Decimal
    to_address: str
    dec: int
    minted: Decimal
    op_score_add: str
    op_score_mod: str
    state: str
    hash_rev: str
    mts_add: int
    holder_total: int
    transfer_total: int
    mint_total: int
    last_updated: datetime
    logo: str | None = None

    @classmethod
    def placeholder(cls, tick: str, now: datetime | None = None) -> TokenDTO:
        """A token row with zeroed metadata, later overwritten by a real sync."""
        return cls(
            tick=tick,
            max=Decimal(0),
            lim=Decimal(0),
            pre=Decimal(0),
            to_address="",
            dec=0,
            minted=Decimal(0),
            op_score_add="",
            op_score_mod="",
            state="unused",
            hash_rev="",
            mts_add=0,
            holder_total=0,
            transfer_total=0,
            mint_total=0,
            last_updated=now or datetime.now(UTC),
        )

    @classmethod
    def from_model(cls, model: TokenModel) -> TokenDTO:
        return cls(
            tick=model.tick,
            max=model.max,
            lim=model.lim,
            pre=model.pre,
            to_address=model.to_address,
            dec=model.dec,
            minted=model.minted,
            op_score_add=model.op_score_add,
            op_score_mod=model.op_score_mod,
            state=model.state,
            hash_rev=model.hash_rev,
            mts_add=model.mts_add,
            holder_total=model.holder_total,
            transfer_total=model.transfer_total,
            mint_total=model.mint_total,
            last_updated=_ensure_utc(model.last_updated),
            logo=model.logo,
        )

    def upstream_values(self) -> dict[str, Any]:
        """Column values sourced from upstream (everything except ``logo``)."""
        return {
            "tick": self.tick,
            "max": self.max,
            "lim": self.lim,
            "pre": self.pre,
            "to_address": self.to_address,
            "dec": self.dec,
            "minted": self.minted,
            "op_score_add": self.op_score_add,
            "op_score_mod": self.op_score_mod,
            "state": self.state,
            "hash_rev": self.hash_rev,
            "mts_add": self.mts_add,
            "holder_total": self.holder_total,
            "transfer_total": self.transfer_total,
            "mint_total": self.mint_total,
            "last_updated": self.last_updated,
        }


class TokenRepository:
    """Repository for mirrored tokens."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, dto: TokenDTO) -> TokenDTO:
        """Insert or overwrite every upstream-sourced field of a token.

        ``logo`` is never touched by an update.
        """
        values = dto.upstream_values()
        stmt = _insert(self.session, TokenModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["tick"],
            set_={key: stmt.excluded[key] for key in values if key != "tick"},
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return dto

    async def ensure_placeholder(self, tick: str) -> bool:
        """Create a placeholder token if none exists.

        Returns:
            True if a row was inserted.
        """
        result = await self.session.execute(select(TokenModel.tick).where(TokenModel.tick == tick))
        if result.scalar_one_or_none() is not None:
            return False

        values = TokenDTO.placeholder(tick).upstream_values()
        stmt = _insert(self.session, TokenModel).values(**values)
        stmt = stmt.on_conflict_do_nothing(index_elements=["tick"])
        await self.session.execute(stmt)
        await self.session.flush()
        return True

    async def get(self, tick: str) -> TokenDTO | None:
        result = await self.session.execute(
            select(TokenModel).where(TokenModel.tick == tick).execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return TokenDTO.from_model(model) if model else None

    async def list_ticks(self) -> set[str]:
        result = await self.session.execute(select(TokenModel.tick))
        return set(result.scalars().all())

    async def list_all(self) -> list[TokenDTO]:
        result = await self.session.execute(select(TokenModel).order_by(TokenModel.tick))
        return [TokenDTO.from_model(m) for m in result.scalars().all()]


# ============================================================================
# Transactions
# ============================================================================


@dataclass
class TransactionDTO:
    """Data transfer object for KRC20 operations."""

    hash_rev: str
    p: str
    op: str
    tick: str
    amt: Decimal | None
    from_address: str | None
    to_address: str | None
    op_score: str
    fee_rev: Decimal | None
    tx_accept: str
    op_accept: str
    op_error: str
    checkpoint: str
    mts_add: int
    mts_mod: int
    max: Decimal | None = None
    lim: Decimal | None = None
    pre: Decimal | None = None
    dec: int | None = None

    @classmethod
    def from_model(cls, model: TransactionModel) -> TransactionDTO:
        return cls(
            hash_rev=model.hash_rev,
            p=model.p,
            op=model.op,
            tick=model.tick,
            amt=model.amt,
            from_address=model.from_address,
            to_address=model.to_address,
            op_score=model.op_score,
            fee_rev=model.fee_rev,
            tx_accept=model.tx_accept,
            op_accept=model.op_accept,
            op_error=model.op_error,
            checkpoint=model.checkpoint,
            mts_add=model.mts_add,
            mts_mod=model.mts_mod,
            max=model.max,
            lim=model.lim,
            pre=model.pre,
            dec=model.dec,
        )

    def values(self) -> dict[str, Any]:
        return {
            "hash_rev": self.hash_rev,
            "p": self.p,
            "op": self.op,
            "tick": self.tick,
            "amt": self.amt,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "op_score": self.op_score,
            "fee_rev": self.fee_rev,
            "tx_accept": self.tx_accept,
            "op_accept": self.op_accept,
            "op_error": self.op_error,
            "checkpoint": self.checkpoint,
            "mts_add": self.mts_add,
            "mts_mod": self.mts_mod,
            "max": self.max,
            "lim": self.lim,
            "pre": self.pre,
            "dec": self.dec,
        }


class TransactionRepository:
    """Repository for KRC20 operations, deduplicated by reveal hash."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def existing_hashes(self, hashes: Iterable[str]) -> set[str]:
        unique = list(dict.fromkeys(hashes))
        found: set[str] = set()
        for chunk in _chunks(unique):
            result = await self.session.execute(
                select(TransactionModel.hash_rev).where(TransactionModel.hash_rev.in_(chunk))
            )
            found.update(result.scalars().all())
        return found

    async def upsert_many(self, dtos: Sequence[TransactionDTO]) -> set[str]:
        """Update-if-exists / insert-if-absent, keyed by ``hash_rev``.

        Existing rows are overwritten with the full new payload; nothing is
        merged from the old row. Within one batch the last payload per hash wins.

        Returns:
            Hashes that were already stored before this call.
        """
        by_hash = {dto.hash_rev: dto for dto in dtos}
        if not by_hash:
            return set()

        existing = await self.existing_hashes(by_hash)
        for hash_rev, dto in by_hash.items():
            if hash_rev in existing:
                await self.session.execute(
                    update(TransactionModel)
                    .where(TransactionModel.hash_rev == hash_rev)
                    .values(**dto.values())
                    .execution_options(synchronize_session=False)
                )
            else:
                self.session.add(TransactionModel(**dto.values()))
        await self.session.flush()
        return existing

    async def get_by_hash(self, hash_rev: str) -> TransactionDTO | None:
        result = await self.session.execute(
            select(TransactionModel)
            .where(TransactionModel.hash_rev == hash_rev)
            .order_by(TransactionModel.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return TransactionDTO.from_model(model) if model else None

    async def count_by_hash(self, hash_rev: str) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(TransactionModel).where(TransactionModel.hash_rev == hash_rev)
        )
        return int(result.scalar_one())

    async def list_for_tick(self, tick: str, *, limit: int = 100, offset: int = 0) -> list[TransactionDTO]:
        """Newest operations of a token first."""
        result = await self.session.execute(
            select(TransactionModel)
            .where(TransactionModel.tick == tick)
            .order_by(TransactionModel.mts_add.desc(), TransactionModel.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return [TransactionDTO.from_model(m) for m in result.scalars().all()]

    async def mint_counts(self) -> dict[str, int]:
        """Number of stored mint operations per ticker."""
        result = await self.session.execute(
            select(TransactionModel.tick, func.count())
            .where(TransactionModel.op == "mint")
            .group_by(TransactionModel.tick)
        )
        return {tick: int(count) for tick, count in result.all()}


# ============================================================================
# Holders & balances
# ============================================================================


@dataclass
class BalanceDTO:
    """One token balance of a holder."""

    tick: str
    balance: Decimal


@dataclass
class HolderDTO:
    """A holder with its full balance set."""

    address: str
    balances: list[BalanceDTO] = field(default_factory=list)
    updated_at: datetime | None = None


class HolderRepository:
    """Repository for holders and their balances.

    A holder's balances are only ever replaced as a whole.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _get_or_create_id(self, address: str, now: datetime) -> int:
        result = await self.session.execute(
            select(HolderModel.id)
            .where(HolderModel.address == address)
            .order_by(HolderModel.id.desc())
            .limit(1)
        )
        holder_id = result.scalar_one_or_none()
        if holder_id is not None:
            await self.session.execute(
                update(HolderModel)
                .where(HolderModel.id == holder_id)
                .values(updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return int(holder_id)

        model = HolderModel(address=address, created_at=now, updated_at=now)
        self.session.add(model)
        await self.session.flush()
        return model.id

    async def replace_balances(self, address: str, balances: Sequence[BalanceDTO]) -> int:
        """Delete all balances of a holder and write the given set.

        Balances for tickers without a token row are dropped. The holder is
        created if it does not exist.

        Returns:
            Number of balance rows written.
        """
        requested = {b.tick for b in balances}
        known: set[str] = set()
        if requested:
            result = await self.session.execute(
                select(TokenModel.tick).where(TokenModel.tick.in_(list(requested)))
            )
            known = set(result.scalars().all())
        dropped = requested - known
        if dropped:
            logger.debug("Dropping balances of %s for unknown tickers: %s", address, sorted(dropped))

        holder_id = await self._get_or_create_id(address, datetime.now(UTC))
        await self.session.execute(
            delete(BalanceModel)
            .where(BalanceModel.holder_id == holder_id)
            .execution_options(synchronize_session=False)
        )

        merged: dict[str, Decimal] = {}
        for b in balances:
            if b.tick in known:
                merged[b.tick] = b.balance
        self.session.add_all(
            BalanceModel(holder_id=holder_id, tick=tick, balance=amount)
            for tick, amount in merged.items()
        )
        await self.session.flush()
        return len(merged)

    async def get_balances(self, address: str) -> list[BalanceDTO]:
        result = await self.session.execute(
            select(BalanceModel.tick, BalanceModel.balance)
            .join(HolderModel, HolderModel.id == BalanceModel.holder_id)
            .where(HolderModel.address == address)
            .order_by(BalanceModel.tick)
        )
        return [BalanceDTO(tick=tick, balance=balance) for tick, balance in result.all()]

    async def list_addresses(self) -> list[str]:
        result = await self.session.execute(select(HolderModel.address).order_by(HolderModel.id))
        return list(result.scalars().all())

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(HolderModel))
        return int(result.scalar_one())

    async def list_with_balances(self, *, limit: int = 100, offset: int = 0) -> list[HolderDTO]:
        """Holders with their balances, oldest holder first."""
        result = await self.session.execute(
            select(HolderModel).order_by(HolderModel.id).limit(limit).offset(offset)
        )
        holders = list(result.scalars().all())
        if not holders:
            return []

        by_id = {
            h.id: HolderDTO(address=h.address, updated_at=_ensure_utc(h.updated_at)) for h in holders
        }
        balances = await self.session.execute(
            select(BalanceModel)
            .where(BalanceModel.holder_id.in_(list(by_id)))
            .order_by(BalanceModel.tick)
        )
        for b in balances.scalars().all():
            by_id[b.holder_id].balances.append(BalanceDTO(tick=b.tick, balance=b.balance))
        return list(by_id.values())

    async def _delete_ids(self, holder_ids: Sequence[int]) -> None:
        for chunk in _chunks(holder_ids):
            await self.session.execute(
                delete(BalanceModel)
                .where(BalanceModel.holder_id.in_(chunk))
                .execution_options(synchronize_session=False)
            )
            await self.session.execute(
                delete(HolderModel)
                .where(HolderModel.id.in_(chunk))
                .execution_options(synchronize_session=False)
            )

    async def delete_except(self, addresses: set[str]) -> int:
        """Delete every holder whose address is not in ``addresses``.

        Returns:
            Number of holder rows deleted.
        """
        result = await self.session.execute(select(HolderModel.id, HolderModel.address))
        stale_ids = [row.id for row in result.all() if row.address not in addresses]
        await self._delete_ids(stale_ids)
        await self.session.flush()
        return len(stale_ids)

    async def delete_without_balances(self) -> int:
        """Delete holders that own no balance rows."""
        result = await self.session.execute(
            delete(HolderModel)
            .where(HolderModel.id.not_in(select(BalanceModel.holder_id)))
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return int(result.rowcount or 0)


# ============================================================================
# Last update marker
# ============================================================================


class LastUpdateRepository:
    """Repository for the singleton last-update row."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def touch(self, timestamp: datetime) -> None:
        stmt = _insert(self.session, LastUpdateModel).values(id=LAST_UPDATE_ID, timestamp=timestamp)
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={"timestamp": stmt.excluded.timestamp},
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def get(self) -> datetime | None:
        result = await self.session.execute(
            select(LastUpdateModel.timestamp).where(LastUpdateModel.id == LAST_UPDATE_ID)
        )
        value = result.scalar_one_or_none()
        return _ensure_utc(value) if value is not None else None


# ============================================================================
# Price data
# ============================================================================


@dataclass
class PriceDataDTO:
    """Data transfer object for floor-price snapshots."""

    tick: str
    timestamp: datetime
    value_kas: Decimal
    value_usd: Decimal
    change_24h: Decimal = Decimal(0)

    @classmethod
    def from_model(cls, model: PriceDataModel) -> PriceDataDTO:
        return cls(
            tick=model.tick,
            timestamp=_ensure_utc(model.timestamp),
            value_kas=model.value_kas,
            value_usd=model.value_usd,
            change_24h=model.change_24h,
        )


class PriceDataRepository:
    """Append-only repository for price snapshots."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(self, dto: PriceDataDTO) -> PriceDataDTO:
        self.session.add(
            PriceDataModel(
                tick=dto.tick,
                timestamp=dto.timestamp,
                value_kas=dto.value_kas,
                value_usd=dto.value_usd,
                change_24h=dto.change_24h,
            )
        )
        await self.session.flush()
        return dto

    async def list_for_tick(
        self,
        tick: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[PriceDataDTO]:
        stmt = select(PriceDataModel).where(PriceDataModel.tick == tick)
        if start is not None:
            stmt = stmt.where(PriceDataModel.timestamp >= start)
        if end is not None:
            stmt = stmt.where(PriceDataModel.timestamp <= end)
        result = await self.session.execute(stmt.order_by(PriceDataModel.timestamp, PriceDataModel.id))
        return [PriceDataDTO.from_model(m) for m in result.scalars().all()]

    async def latest_for_tick(self, tick: str) -> PriceDataDTO | None:
        result = await self.session.execute(
            select(PriceDataModel)
            .where(PriceDataModel.tick == tick)
            .order_by(PriceDataModel.timestamp.desc(), PriceDataModel.id.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return PriceDataDTO.from_model(model) if model else None


# ============================================================================
# Pagination checkpoints
# ============================================================================


@dataclass
class PaginationCheckpoint:
    """Resume point of a single-ticker pass."""

    tick: str
    cursor: str | None
    batch_count: int
    updated_at: datetime | None = None


class CheckpointRepository:
    """Repository for single-ticker pagination checkpoints."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def save(self, checkpoint: PaginationCheckpoint) -> None:
        now = datetime.now(UTC)
        stmt = _insert(self.session, SyncCheckpointModel).values(
            tick=checkpoint.tick,
            cursor=checkpoint.cursor,
            batch_count=checkpoint.batch_count,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tick"],
            set_={
                "cursor": stmt.excluded.cursor,
                "batch_count": stmt.excluded.batch_count,
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def load(self, tick: str) -> PaginationCheckpoint | None:
        result = await self.session.execute(
            select(SyncCheckpointModel)
            .where(SyncCheckpointModel.tick == tick)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        if model is None:
            return None
        return PaginationCheckpoint(
            tick=model.tick,
            cursor=model.cursor,
            batch_count=model.batch_count,
            updated_at=_ensure_utc(model.updated_at),
        )

    async def delete(self, tick: str) -> None:
        await self.session.execute(
            delete(SyncCheckpointModel)
            .where(SyncCheckpointModel.tick == tick)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()


# ============================================================================
# Duplicate cleanup
# ============================================================================


@dataclass
class DuplicateCleanupReport:
    """Rows removed per table by a cleanup run."""

    transactions: int = 0
    holders: int = 0
    balances: int = 0
    price_data: int = 0

    @property
    def total(self) -> int:
        return self.transactions + self.holders + self.balances + self.price_data


class CleanupRepository:
    """Removes physical rows that repeat a natural key.

    The newest row (highest id) of each key survives.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _dedupe(self, model: type[Any], *key_columns: Any) -> int:
        survivors = select(func.max(model.id)).group_by(*key_columns)
        result = await self.session.execute(
            delete(model)
            .where(model.id.not_in(survivors))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    async def remove_duplicates(self) -> DuplicateCleanupReport:
        report = DuplicateCleanupReport()

        # Holders first, taking the balances of discarded rows with them.
        survivors = select(func.max(HolderModel.id)).group_by(HolderModel.address)
        result = await self.session.execute(
            select(HolderModel.id).where(HolderModel.id.not_in(survivors))
        )
        duplicate_holder_ids = list(result.scalars().all())
        for chunk in _chunks(duplicate_holder_ids):
            await self.session.execute(
                delete(BalanceModel)
                .where(BalanceModel.holder_id.in_(chunk))
                .execution_options(synchronize_session=False)
            )
            await self.session.execute(
                delete(HolderModel)
                .where(HolderModel.id.in_(chunk))
                .execution_options(synchronize_session=False)
            )
        report.holders = len(duplicate_holder_ids)

        report.balances = await self._dedupe(BalanceModel, BalanceModel.holder_id, BalanceModel.tick)
        report.transactions = await self._dedupe(TransactionModel, TransactionModel.hash_rev)
        report.price_data = await self._dedupe(
            PriceDataModel, PriceDataModel.tick, PriceDataModel.timestamp
        )
        await self.session.flush()

        if report.total:
            logger.info(
                "Removed duplicate rows: transactions=%d holders=%d balances=%d price_data=%d",
                report.transactions,
                report.holders,
                report.balances,
                report.price_data,
            )
        return report
