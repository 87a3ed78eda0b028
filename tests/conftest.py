"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable
from decimal import Decimal
from pathlib import Path

import pytest

from krc20_mirror.ingestor.models import (
    AddressHolding,
    HolderEntry,
    OperationRecord,
    TokenInfo,
    TokenListPage,
    TokenState,
    TokenSummary,
)
from krc20_mirror.ingestor.retry import UpstreamError
from krc20_mirror.storage.database import DatabaseManager

# ============================================================================
# Builders
# ============================================================================


def make_token_info(
    tick: str,
    *,
    minted: str = "100",
    holders: list[tuple[str, str]] | None = None,
    holder_total: int | None = None,
) -> TokenInfo:
    """Build a deployed token detail with the given holder list."""
    entries = tuple(HolderEntry(address=a, amount=Decimal(v)) for a, v in holders or [])
    return TokenInfo(
        tick=tick,
        max=Decimal("1000"),
        lim=Decimal("10"),
        pre=Decimal(0),
        to="",
        dec=8,
        minted=Decimal(minted),
        op_score_add="100",
        op_score_mod="200",
        state=TokenState.DEPLOYED,
        hash_rev=f"deploy-{tick}",
        mts_add=1700000000000,
        holder_total=len(entries) if holder_total is None else holder_total,
        transfer_total=0,
        mint_total=len(entries),
        holders=entries,
    )


def make_op(tick: str, n: int, *, op: str = "mint", amt: str = "10") -> OperationRecord:
    """Build the n-th operation of a token; hash and opScore derive from n."""
    return OperationRecord(
        p="krc-20",
        op=op,
        tick=tick,
        amt=Decimal(amt),
        from_address=None,
        to_address="kaspa:abc",
        op_score=f"{1000 + n}",
        hash_rev=f"{tick}-hash-{n}",
        fee_rev=Decimal(1),
        tx_accept="1",
        op_accept="1",
        op_error="",
        checkpoint=f"cp-{n}",
        mts_add=1700000000000 + n,
        mts_mod=1700000000000 + n,
    )


def make_page(tick: str, start: int, size: int) -> list[OperationRecord]:
    return [make_op(tick, n) for n in range(start, start + size)]


# ============================================================================
# Fake upstream
# ============================================================================


class FakeKasplexClient:
    """In-memory stand-in for KasplexClient.

    Operation pages are served in call order per ticker. A page entry that is
    an exception is raised, or handed to ``fallback`` when one is given, the
    way the retry policy does once attempts are exhausted.
    """

    def __init__(self, *, batch_size: int = 50) -> None:
        self.batch_size = batch_size
        self.token_pages: dict[str | None, TokenListPage] = {}
        self.details: dict[str, TokenInfo | Exception] = {}
        self.op_pages: dict[str, list[list[OperationRecord] | Exception]] = {}
        self.holdings: dict[str, list[AddressHolding] | Exception] = {}
        self.op_calls: list[tuple[str, str | None]] = []
        self.holding_calls: list[str] = []
        self.list_tokens_error: Exception | None = None
        self.before_op_page: Callable[[str, str | None], object] | None = None

    def set_universe(self, *ticks: str) -> None:
        self.token_pages = {
            None: TokenListPage(
                items=tuple(TokenSummary(tick=t, state=TokenState.DEPLOYED) for t in ticks)
            )
        }

    async def list_tokens(self, cursor: str | None = None) -> TokenListPage:
        if self.list_tokens_error is not None:
            raise self.list_tokens_error
        return self.token_pages.get(cursor, TokenListPage(items=()))

    async def get_token_detail(self, tick: str) -> TokenInfo:
        detail = self.details[tick]
        if isinstance(detail, Exception):
            raise detail
        return detail

    async def get_transaction_page(
        self,
        tick: str,
        cursor: str | None = None,
        *,
        fallback: Callable[[Exception], list[OperationRecord]] | None = None,
    ) -> list[OperationRecord]:
        index = sum(1 for t, _ in self.op_calls if t == tick)
        self.op_calls.append((tick, cursor))
        if self.before_op_page is not None:
            hook = self.before_op_page(tick, cursor)
            if hasattr(hook, "__await__"):
                await hook  # type: ignore[misc]

        pages = self.op_pages.get(tick, [])
        page = pages[index] if index < len(pages) else []
        if isinstance(page, Exception):
            if fallback is not None and isinstance(page, UpstreamError):
                return fallback(page)
            raise page
        return page

    async def get_address_holdings(self, address: str) -> list[AddressHolding]:
        self.holding_calls.append(address)
        holdings = self.holdings.get(address, [])
        if isinstance(holdings, Exception):
            raise holdings
        return holdings

    async def close(self) -> None:
        pass


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def db(tmp_path: Path) -> DatabaseManager:
    """File-backed SQLite database with the full schema."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'mirror.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
def fake_client() -> FakeKasplexClient:
    return FakeKasplexClient()
