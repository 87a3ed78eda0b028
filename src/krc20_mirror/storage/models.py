"""SQLAlchemy models for persistent storage.

This module defines the database schema for mirrored KRC20 tokens,
operations, holders, balances, price snapshots and sync bookkeeping.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Raw KRC20 amounts are integers scaled by the token's decimals.
AMOUNT = Numeric(40, 0)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TokenModel(Base):
    """A KRC20 token as last reported by the indexer."""

    __tablename__ = "tokens"

    tick: Mapped[str] = mapped_column(String(32), primary_key=True)
    max: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=Decimal(0))
    lim: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=Decimal(0))
    pre: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=Decimal(0))
    to_address: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    dec: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    minted: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=Decimal(0))
    op_score_add: Mapped[str] = mapped_column(String(40), nullable=False, default="")
    op_score_mod: Mapped[str] = mapped_column(String(40), nullable=False, default="")
    state: Mapped[str] = mapped_column(String(16), nullable=False, default="unused")
    hash_rev: Mapped[str] = mapped_column(String(80), nullable=False, default="")
    mts_add: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Upstream snapshots, overwritten on every sync.
    holder_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transfer_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    mint_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    logo: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class TransactionModel(Base):
    """A KRC20 operation, keyed by its reveal transaction hash."""

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hash_rev: Mapped[str] = mapped_column(String(80), nullable=False)

    p: Mapped[str] = mapped_column(String(16), nullable=False, default="krc-20")
    op: Mapped[str] = mapped_column(String(16), nullable=False)
    # No FK: operations may arrive before their token row.
    tick: Mapped[str] = mapped_column(String(32), nullable=False)
    amt: Mapped[Decimal | None] = mapped_column(AMOUNT, nullable=True)
    from_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    to_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    op_score: Mapped[str] = mapped_column(String(40), nullable=False)
    fee_rev: Mapped[Decimal | None] = mapped_column(AMOUNT, nullable=True)
    tx_accept: Mapped[str] = mapped_column(String(8), nullable=False, default="")
    op_accept: Mapped[str] = mapped_column(String(8), nullable=False, default="")
    op_error: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    checkpoint: Mapped[str] = mapped_column(String(80), nullable=False, default="")
    mts_add: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    mts_mod: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Deploy-only fields.
    max: Mapped[Decimal | None] = mapped_column(AMOUNT, nullable=True)
    lim: Mapped[Decimal | None] = mapped_column(AMOUNT, nullable=True)
    pre: Mapped[Decimal | None] = mapped_column(AMOUNT, nullable=True)
    dec: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("idx_transactions_hash_rev", "hash_rev"),
        Index("idx_transactions_tick_mts", "tick", "mts_add"),
    )


class HolderModel(Base):
    """A wallet address holding at least one tracked token."""

    __tablename__ = "holders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_holders_address", "address"),)


class BalanceModel(Base):
    """One holder's balance of one token."""

    __tablename__ = "balances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    holder_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("holders.id", ondelete="CASCADE"), nullable=False
    )
    tick: Mapped[str] = mapped_column(
        String(32), ForeignKey("tokens.tick", ondelete="CASCADE"), nullable=False
    )
    balance: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)

    __table_args__ = (
        Index("idx_balances_holder_tick", "holder_id", "tick"),
        Index("idx_balances_tick", "tick"),
    )


class LastUpdateModel(Base):
    """Singleton row holding the start time of the latest full pass."""

    __tablename__ = "last_update"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class PriceDataModel(Base):
    """Append-only floor-price snapshot."""

    __tablename__ = "price_data"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tick: Mapped[str] = mapped_column(
        String(32), ForeignKey("tokens.tick", ondelete="CASCADE"), nullable=False
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    value_kas: Mapped[Decimal] = mapped_column(Numeric(30, 12), nullable=False)
    value_usd: Mapped[Decimal] = mapped_column(Numeric(30, 12), nullable=False)
    change_24h: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal(0))

    __table_args__ = (Index("idx_price_data_tick_ts", "tick", "timestamp"),)


class SyncCheckpointModel(Base):
    """Resumable pagination cursor of a single-ticker pass."""

    __tablename__ = "sync_checkpoints"

    tick: Mapped[str] = mapped_column(String(32), primary_key=True)
    cursor: Mapped[str | None] = mapped_column(String(80), nullable=True)
    batch_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
