"""Tests for ingestor data models."""

from decimal import Decimal

import pytest

from krc20_mirror.ingestor.models import (
    AddressHolding,
    HolderEntry,
    OperationRecord,
    PriceQuote,
    TokenInfo,
    TokenListPage,
    TokenState,
)


class TestTokenListPage:
    """Tests for TokenListPage model."""

    def test_from_dict_with_next(self) -> None:
        data = {
            "message": "successful",
            "next": "123456",
            "result": [
                {"tick": "NACHO", "state": "finished"},
                {"tick": "KASPER", "state": "deployed"},
            ],
        }
        page = TokenListPage.from_dict(data)

        assert [t.tick for t in page.items] == ["NACHO", "KASPER"]
        assert page.items[0].state == TokenState.FINISHED
        assert page.next_cursor == "123456"

    def test_from_dict_last_page(self) -> None:
        page = TokenListPage.from_dict({"result": [{"tick": "FOO"}], "next": None})

        assert page.next_cursor is None
        assert page.items[0].state == TokenState.UNUSED

    def test_empty_next_is_end(self) -> None:
        assert TokenListPage.from_dict({"result": [], "next": ""}).next_cursor is None


class TestTokenInfo:
    """Tests for TokenInfo model."""

    def test_from_dict_full(self) -> None:
        data = {
            "tick": "FOO",
            "max": "2100000000000000",
            "lim": "100000000000",
            "pre": "0",
            "to": "kaspa:deployer",
            "dec": "8",
            "minted": "100",
            "opScoreAdd": "910200180003",
            "opScoreMod": "910300010001",
            "state": "deployed",
            "hashRev": "abc",
            "mtsAdd": "1716000000000",
            "holderTotal": "1",
            "transferTotal": "0",
            "mintTotal": "1",
            "holder": [{"address": "kaspa:abc", "amount": "100"}],
        }
        info = TokenInfo.from_dict(data)

        assert info.tick == "FOO"
        assert info.max == Decimal("2100000000000000")
        assert info.dec == 8
        assert info.minted == Decimal(100)
        assert info.state == TokenState.DEPLOYED
        assert info.mts_add == 1716000000000
        assert info.holder_total == 1
        assert info.holders == (HolderEntry(address="kaspa:abc", amount=Decimal(100)),)

    def test_missing_optional_fields_default(self) -> None:
        info = TokenInfo.from_dict({"tick": "BAR"})

        assert info.minted == Decimal(0)
        assert info.holders == ()
        assert info.to == ""
        assert info.state == TokenState.UNUSED

    def test_invalid_amount(self) -> None:
        with pytest.raises(ValueError):
            TokenInfo.from_dict({"tick": "BAR", "minted": "lots"})

    def test_unknown_state(self) -> None:
        with pytest.raises(ValueError):
            TokenInfo.from_dict({"tick": "BAR", "state": "exploded"})

    def test_frozen(self) -> None:
        info = TokenInfo.from_dict({"tick": "BAR"})
        with pytest.raises(AttributeError):
            info.tick = "BAZ"  # type: ignore[misc]


class TestOperationRecord:
    """Tests for OperationRecord model."""

    def test_mint(self) -> None:
        data = {
            "p": "KRC-20",
            "op": "mint",
            "tick": "FOO",
            "amt": "100",
            "from": "",
            "to": "kaspa:abc",
            "opScore": "910200180003",
            "hashRev": "deadbeef",
            "feeRev": "100000000",
            "txAccept": "1",
            "opAccept": "1",
            "opError": "",
            "checkpoint": "cp",
            "mtsAdd": "1716000000000",
            "mtsMod": "1716000000001",
        }
        record = OperationRecord.from_dict(data)

        assert record.hash_rev == "deadbeef"
        assert record.amt == Decimal(100)
        assert record.from_address is None
        assert record.to_address == "kaspa:abc"
        assert record.op_score == "910200180003"
        assert record.max is None
        assert record.dec is None

    def test_deploy_has_no_amount(self) -> None:
        record = OperationRecord.from_dict(
            {
                "op": "deploy",
                "tick": "FOO",
                "opScore": "1",
                "hashRev": "h",
                "max": "1000",
                "lim": "10",
                "dec": "8",
            }
        )

        assert record.amt is None
        assert record.max == Decimal(1000)
        assert record.dec == 8

    def test_missing_hash(self) -> None:
        with pytest.raises(KeyError):
            OperationRecord.from_dict({"tick": "FOO", "opScore": "1"})

    def test_empty_hash(self) -> None:
        with pytest.raises(ValueError):
            OperationRecord.from_dict({"tick": "FOO", "opScore": "1", "hashRev": ""})


class TestAddressHolding:
    """Tests for AddressHolding model."""

    def test_from_dict(self) -> None:
        holding = AddressHolding.from_dict(
            {"tick": "FOO", "balance": "12", "locked": "3", "dec": "8"}
        )

        assert holding == AddressHolding(tick="FOO", balance=Decimal(12), locked=Decimal(3), dec=8)


class TestPriceQuote:
    """Tests for PriceQuote model."""

    def test_snake_case_keys(self) -> None:
        quote = PriceQuote.from_dict("NACHO", {"floor_price": 0.0001, "change_24h": -1.5})

        assert quote.tick == "NACHO"
        assert quote.value_kas == Decimal("0.0001")
        assert quote.change_24h == Decimal("-1.5")

    def test_camel_case_keys(self) -> None:
        quote = PriceQuote.from_dict("NACHO", {"floorPrice": "0.5", "change24h": "2"})

        assert quote.value_kas == Decimal("0.5")
        assert quote.change_24h == Decimal(2)

    def test_change_defaults_to_zero(self) -> None:
        assert PriceQuote.from_dict("X", {"price": 1}).change_24h == Decimal(0)

    def test_missing_price(self) -> None:
        with pytest.raises(KeyError):
            PriceQuote.from_dict("X", {"change_24h": 1})
