"""Initial schema for mirrored tokens, transactions, holders and prices.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Tokens table
    op.create_table(
        "tokens",
        sa.Column("tick", sa.String(32), nullable=False),
        sa.Column("max", sa.Numeric(40, 0), nullable=False),
        sa.Column("lim", sa.Numeric(40, 0), nullable=False),
        sa.Column("pre", sa.Numeric(40, 0), nullable=False),
        sa.Column("to_address", sa.String(128), nullable=False),
        sa.Column("dec", sa.Integer(), nullable=False),
        sa.Column("minted", sa.Numeric(40, 0), nullable=False),
        sa.Column("op_score_add", sa.String(40), nullable=False),
        sa.Column("op_score_mod", sa.String(40), nullable=False),
        sa.Column("state", sa.String(16), nullable=False),
        sa.Column("hash_rev", sa.String(80), nullable=False),
        sa.Column("mts_add", sa.BigInteger(), nullable=False),
        sa.Column("holder_total", sa.Integer(), nullable=False),
        sa.Column("transfer_total", sa.Integer(), nullable=False),
        sa.Column("mint_total", sa.Integer(), nullable=False),
        sa.Column("logo", sa.String(255), nullable=True),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("tick"),
    )

    # Transactions table; hash_rev is indexed but not unique so cleanup can find repeats
    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("hash_rev", sa.String(80), nullable=False),
        sa.Column("p", sa.String(16), nullable=False),
        sa.Column("op", sa.String(16), nullable=False),
        sa.Column("tick", sa.String(32), nullable=False),
        sa.Column("amt", sa.Numeric(40, 0), nullable=True),
        sa.Column("from_address", sa.String(128), nullable=True),
        sa.Column("to_address", sa.String(128), nullable=True),
        sa.Column("op_score", sa.String(40), nullable=False),
        sa.Column("fee_rev", sa.Numeric(40, 0), nullable=True),
        sa.Column("tx_accept", sa.String(8), nullable=False),
        sa.Column("op_accept", sa.String(8), nullable=False),
        sa.Column("op_error", sa.String(128), nullable=False),
        sa.Column("checkpoint", sa.String(80), nullable=False),
        sa.Column("mts_add", sa.BigInteger(), nullable=False),
        sa.Column("mts_mod", sa.BigInteger(), nullable=False),
        sa.Column("max", sa.Numeric(40, 0), nullable=True),
        sa.Column("lim", sa.Numeric(40, 0), nullable=True),
        sa.Column("pre", sa.Numeric(40, 0), nullable=True),
        sa.Column("dec", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_transactions_hash_rev", "transactions", ["hash_rev"])
    op.create_index("idx_transactions_tick_mts", "transactions", ["tick", "mts_add"])

    # Holders table
    op.create_table(
        "holders",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("address", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_holders_address", "holders", ["address"])

    # Balances table
    op.create_table(
        "balances",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("holder_id", sa.Integer(), nullable=False),
        sa.Column("tick", sa.String(32), nullable=False),
        sa.Column("balance", sa.Numeric(40, 0), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["holder_id"], ["holders.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["tick"], ["tokens.tick"], ondelete="CASCADE"),
    )
    op.create_index("idx_balances_holder_tick", "balances", ["holder_id", "tick"])
    op.create_index("idx_balances_tick", "balances", ["tick"])

    # Last update singleton
    op.create_table(
        "last_update",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    # Price snapshots
    op.create_table(
        "price_data",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tick", sa.String(32), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("value_kas", sa.Numeric(30, 12), nullable=False),
        sa.Column("value_usd", sa.Numeric(30, 12), nullable=False),
        sa.Column("change_24h", sa.Numeric(18, 6), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["tick"], ["tokens.tick"], ondelete="CASCADE"),
    )
    op.create_index("idx_price_data_tick_ts", "price_data", ["tick", "timestamp"])

    # Single-ticker pagination checkpoints
    op.create_table(
        "sync_checkpoints",
        sa.Column("tick", sa.String(32), nullable=False),
        sa.Column("cursor", sa.String(80), nullable=True),
        sa.Column("batch_count", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("tick"),
    )


def downgrade() -> None:
    op.drop_table("sync_checkpoints")
    op.drop_index("idx_price_data_tick_ts", table_name="price_data")
    op.drop_table("price_data")
    op.drop_table("last_update")
    op.drop_index("idx_balances_tick", table_name="balances")
    op.drop_index("idx_balances_holder_tick", table_name="balances")
    op.drop_table("balances")
    op.drop_index("idx_holders_address", table_name="holders")
    op.drop_table("holders")
    op.drop_index("idx_transactions_tick_mts", table_name="transactions")
    op.drop_index("idx_transactions_hash_rev", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("tokens")
