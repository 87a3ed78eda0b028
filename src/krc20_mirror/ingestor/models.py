"""Data models for the ingestor module.

Upstream payloads are JSON objects whose numeric fields arrive as decimal
strings. Each model parses its own payload in ``from_dict`` and raises
``KeyError``/``ValueError``/``TypeError`` on anything it cannot read.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any


def _amount(value: Any) -> Decimal:
    """Parse an upstream amount string into a Decimal."""
    if value is None or value == "":
        return Decimal(0)
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {value!r}") from e


def _optional_amount(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    return _amount(value)


def _int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    return int(str(value))


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(str(value))


def _str(value: Any) -> str:
    return "" if value is None else str(value)


class TokenState(str, Enum):
    """Lifecycle state of a KRC20 token."""

    UNUSED = "unused"
    DEPLOYED = "deployed"
    FINISHED = "finished"
    IGNORED = "ignored"


@dataclass(frozen=True)
class HolderEntry:
    """A top-holder entry embedded in a token detail."""

    address: str
    amount: Decimal

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HolderEntry":
        return cls(address=str(data["address"]), amount=_amount(data.get("amount")))


@dataclass(frozen=True)
class TokenSummary:
    """A token as listed by the paginated token list."""

    tick: str
    state: TokenState

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenSummary":
        return cls(tick=str(data["tick"]), state=TokenState(data.get("state", "unused")))


@dataclass(frozen=True)
class TokenListPage:
    """One page of the token universe."""

    items: tuple[TokenSummary, ...]
    next_cursor: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenListPage":
        items = tuple(TokenSummary.from_dict(item) for item in data.get("result") or [])
        next_cursor = data.get("next")
        return cls(items=items, next_cursor=str(next_cursor) if next_cursor else None)


@dataclass(frozen=True)
class TokenInfo:
    """Full token detail including the embedded holder list."""

    tick: str
    max: Decimal
    lim: Decimal
    pre: Decimal
    to: str
    dec: int
    minted: Decimal
    op_score_add: str
    op_score_mod: str
    state: TokenState
    hash_rev: str
    mts_add: int
    holder_total: int = 0
    transfer_total: int = 0
    mint_total: int = 0
    holders: tuple[HolderEntry, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenInfo":
        """Create a TokenInfo from a token detail result entry."""
        holders = tuple(HolderEntry.from_dict(h) for h in data.get("holder") or [])
        return cls(
            tick=str(data["tick"]),
            max=_amount(data.get("max")),
            lim=_amount(data.get("lim")),
            pre=_amount(data.get("pre")),
            to=_str(data.get("to")),
            dec=_int(data.get("dec")),
            minted=_amount(data.get("minted")),
            op_score_add=_str(data.get("opScoreAdd")),
            op_score_mod=_str(data.get("opScoreMod")),
            state=TokenState(data.get("state", "unused")),
            hash_rev=_str(data.get("hashRev")),
            mts_add=_int(data.get("mtsAdd")),
            holder_total=_int(data.get("holderTotal")),
            transfer_total=_int(data.get("transferTotal")),
            mint_total=_int(data.get("mintTotal")),
            holders=holders,
        )


@dataclass(frozen=True)
class OperationRecord:
    """A single KRC20 operation from the per-token operation list."""

    p: str
    op: str
    tick: str
    amt: Decimal | None
    from_address: str | None
    to_address: str | None
    op_score: str
    hash_rev: str
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
    def from_dict(cls, data: dict[str, Any]) -> "OperationRecord":
        hash_rev = str(data["hashRev"])
        if not hash_rev:
            raise ValueError("Operation without hashRev")
        return cls(
            p=_str(data.get("p")),
            op=_str(data.get("op")),
            tick=str(data["tick"]),
            amt=_optional_amount(data.get("amt")),
            from_address=data.get("from") or None,
            to_address=data.get("to") or None,
            op_score=str(data["opScore"]),
            hash_rev=hash_rev,
            fee_rev=_optional_amount(data.get("feeRev")),
            tx_accept=_str(data.get("txAccept")),
            op_accept=_str(data.get("opAccept")),
            op_error=_str(data.get("opError")),
            checkpoint=_str(data.get("checkpoint")),
            mts_add=_int(data.get("mtsAdd")),
            mts_mod=_int(data.get("mtsMod")),
            max=_optional_amount(data.get("max")),
            lim=_optional_amount(data.get("lim")),
            pre=_optional_amount(data.get("pre")),
            dec=_optional_int(data.get("dec")),
        )


@dataclass(frozen=True)
class AddressHolding:
    """One token balance held by an address."""

    tick: str
    balance: Decimal
    locked: Decimal = Decimal(0)
    dec: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AddressHolding":
        return cls(
            tick=str(data["tick"]),
            balance=_amount(data.get("balance")),
            locked=_amount(data.get("locked")),
            dec=_int(data.get("dec")),
        )


@dataclass(frozen=True)
class PriceQuote:
    """Floor price of one ticker, quoted in the base asset (KAS)."""

    tick: str
    value_kas: Decimal
    change_24h: Decimal = Decimal(0)

    @classmethod
    def from_dict(cls, tick: str, data: dict[str, Any]) -> "PriceQuote":
        """Create a PriceQuote from a feed entry.

        Accepts ``floor_price``/``floorPrice``/``price`` for the value and
        ``change_24h``/``change24h`` for the daily change.
        """
        value = data.get("floor_price", data.get("floorPrice", data.get("price")))
        if value is None:
            raise KeyError("floor_price")
        change = data.get("change_24h", data.get("change24h"))
        return cls(
            tick=tick,
            value_kas=_amount(value),
            change_24h=_amount(change) if change is not None else Decimal(0),
        )
