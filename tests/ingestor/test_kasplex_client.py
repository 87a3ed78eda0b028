"""Tests for the Kasplex client against an in-process HTTP server."""

from collections.abc import AsyncIterator
from decimal import Decimal
from typing import Any

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from krc20_mirror.ingestor.http import JsonHttpClient
from krc20_mirror.ingestor.kasplex_client import KasplexClient
from krc20_mirror.ingestor.retry import FatalError, RetryError, TransientError


class FakeKasplexApp:
    """Minimal Kasplex API with configurable failures."""

    def __init__(self) -> None:
        self.requests: list[tuple[str, dict[str, str]]] = []
        self.failures: dict[str, list[int]] = {}

    def _record(self, request: web.Request) -> web.Response | None:
        self.requests.append((request.path, dict(request.query)))
        statuses = self.failures.get(request.path)
        if statuses:
            return web.Response(status=statuses.pop(0), text="upstream trouble")
        return None

    async def tokenlist(self, request: web.Request) -> web.Response:
        if failure := self._record(request):
            return failure
        if request.query.get("next") == "c1":
            return web.json_response({"result": [{"tick": "BAR", "state": "finished"}], "next": None})
        return web.json_response({"result": [{"tick": "FOO", "state": "deployed"}], "next": "c1"})

    async def token(self, request: web.Request) -> web.Response:
        if failure := self._record(request):
            return failure
        tick = request.match_info["tick"]
        if tick == "GARBLED":
            return web.Response(text="<html>not json</html>", content_type="text/html")
        if tick == "BADBYTES":
            return web.Response(body=b'{"result": [\xff\xfe]}', content_type="application/json")
        if tick != "FOO":
            return web.json_response({"message": "successful", "result": []})
        return web.json_response(
            {
                "result": [
                    {
                        "tick": "FOO",
                        "max": "1000",
                        "minted": "100",
                        "state": "deployed",
                        "holderTotal": "1",
                        "holder": [{"address": "kaspa:abc", "amount": "100"}],
                    }
                ]
            }
        )

    async def oplist(self, request: web.Request) -> web.Response:
        if failure := self._record(request):
            return failure
        start = 2 if request.query.get("next") else 0
        items = [
            {"op": "mint", "tick": "FOO", "amt": "10", "opScore": str(100 + n), "hashRev": f"h{n}"}
            for n in range(start, start + 2)
        ]
        return web.json_response({"result": items})

    async def holdings(self, request: web.Request) -> web.Response:
        if failure := self._record(request):
            return failure
        return web.json_response(
            {
                "result": [
                    {"tick": "FOO", "balance": "100", "locked": "0", "dec": "8"},
                    {"tick": "BAR", "balance": "5", "locked": "1", "dec": "8"},
                ]
            }
        )

    def build(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/v1/krc20/tokenlist", self.tokenlist)
        app.router.add_get("/v1/krc20/token/{tick}", self.token)
        app.router.add_get("/v1/krc20/oplist", self.oplist)
        app.router.add_get("/v1/krc20/address/{address}/tokenlist", self.holdings)
        return app


@pytest.fixture
def fake_api() -> FakeKasplexApp:
    return FakeKasplexApp()


@pytest.fixture
async def server(fake_api: FakeKasplexApp) -> AsyncIterator[TestServer]:
    test_server = TestServer(fake_api.build())
    await test_server.start_server()
    yield test_server
    await test_server.close()


@pytest.fixture
async def client(server: TestServer) -> AsyncIterator[KasplexClient]:
    kasplex = KasplexClient(
        base_url=str(server.make_url("/v1")),
        batch_size=2,
        max_attempts=3,
        retry_base_delay=0,
        requests_per_second=1000,
    )
    yield kasplex
    await kasplex.close()


class TestListTokens:
    """Tests for token universe pagination."""

    @pytest.mark.asyncio
    async def test_pages_follow_next_cursor(
        self, client: KasplexClient, fake_api: FakeKasplexApp
    ) -> None:
        first = await client.list_tokens()
        second = await client.list_tokens(first.next_cursor)

        assert [t.tick for t in first.items] == ["FOO"]
        assert first.next_cursor == "c1"
        assert [t.tick for t in second.items] == ["BAR"]
        assert second.next_cursor is None
        assert fake_api.requests[1][1] == {"next": "c1"}


class TestGetTokenDetail:
    """Tests for token detail fetches."""

    @pytest.mark.asyncio
    async def test_parses_embedded_holders(self, client: KasplexClient) -> None:
        info = await client.get_token_detail("FOO")

        assert info.minted == Decimal(100)
        assert info.holder_total == 1
        assert [h.address for h in info.holders] == ["kaspa:abc"]

    @pytest.mark.asyncio
    async def test_unknown_token_is_fatal(
        self, client: KasplexClient, fake_api: FakeKasplexApp
    ) -> None:
        with pytest.raises(FatalError, match="not found"):
            await client.get_token_detail("NOPE")
        assert len(fake_api.requests) == 1

    @pytest.mark.asyncio
    async def test_retries_server_errors(
        self, client: KasplexClient, fake_api: FakeKasplexApp
    ) -> None:
        fake_api.failures["/v1/krc20/token/FOO"] = [503, 429]

        info = await client.get_token_detail("FOO")

        assert info.tick == "FOO"
        assert len(fake_api.requests) == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries(self, client: KasplexClient, fake_api: FakeKasplexApp) -> None:
        fake_api.failures["/v1/krc20/token/FOO"] = [500, 502, 504]

        with pytest.raises(RetryError):
            await client.get_token_detail("FOO")
        assert len(fake_api.requests) == 3

    @pytest.mark.asyncio
    async def test_client_error_not_retried(
        self, client: KasplexClient, fake_api: FakeKasplexApp
    ) -> None:
        fake_api.failures["/v1/krc20/token/FOO"] = [404]

        with pytest.raises(FatalError, match="HTTP 404"):
            await client.get_token_detail("FOO")
        assert len(fake_api.requests) == 1

    @pytest.mark.asyncio
    async def test_invalid_json_is_fatal(self, client: KasplexClient) -> None:
        with pytest.raises(FatalError, match="invalid JSON"):
            await client.get_token_detail("GARBLED")

    @pytest.mark.asyncio
    async def test_undecodable_body_is_fatal(
        self, client: KasplexClient, fake_api: FakeKasplexApp
    ) -> None:
        with pytest.raises(FatalError, match="invalid JSON"):
            await client.get_token_detail("BADBYTES")
        assert len(fake_api.requests) == 1


class TestGetTransactionPage:
    """Tests for operation list pages."""

    @pytest.mark.asyncio
    async def test_cursor_is_passed(self, client: KasplexClient, fake_api: FakeKasplexApp) -> None:
        first = await client.get_transaction_page("FOO")
        second = await client.get_transaction_page("FOO", first[-1].op_score)

        assert [r.hash_rev for r in first] == ["h0", "h1"]
        assert [r.hash_rev for r in second] == ["h2", "h3"]
        assert fake_api.requests[0][1] == {"tick": "FOO"}
        assert fake_api.requests[1][1] == {"tick": "FOO", "next": "101"}

    @pytest.mark.asyncio
    async def test_fallback_after_exhaustion(
        self, client: KasplexClient, fake_api: FakeKasplexApp
    ) -> None:
        fake_api.failures["/v1/krc20/oplist"] = [503, 503, 503]
        errors: list[Exception] = []

        def fallback(exc: Exception) -> list[Any]:
            errors.append(exc)
            return []

        page = await client.get_transaction_page("FOO", fallback=fallback)

        assert page == []
        assert len(errors) == 1
        assert isinstance(errors[0], TransientError)


class TestGetAddressHoldings:
    """Tests for address holdings."""

    @pytest.mark.asyncio
    async def test_parses_holdings(self, client: KasplexClient, fake_api: FakeKasplexApp) -> None:
        holdings = await client.get_address_holdings("kaspa:abc")

        assert [(h.tick, h.balance) for h in holdings] == [("FOO", Decimal(100)), ("BAR", Decimal(5))]
        assert fake_api.requests[0][0] == "/v1/krc20/address/kaspa:abc/tokenlist"


class TestJsonHttpClient:
    """Tests for transport error classification."""

    @pytest.mark.asyncio
    async def test_connection_failure_is_transient(self) -> None:
        http = JsonHttpClient(timeout_seconds=2, requests_per_second=1000)
        try:
            with pytest.raises(TransientError):
                await http.get_json("http://127.0.0.1:1/unreachable")
        finally:
            await http.close()
