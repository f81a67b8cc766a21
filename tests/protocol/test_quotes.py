"""Tests for the MUSD/USDC swap quote client."""

from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest

from trove_monitor.protocol.quotes import MUSD_ETHEREUM, USDC_ETHEREUM, SwapQuote, SwapQuoteClient, SwapQuoteError

API = "https://api.cow.fi/mainnet"


def _client(handler) -> SwapQuoteClient:
    return SwapQuoteClient(API + "/", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def _quote_body(sell: int, buy: int) -> dict:
    return {"quote": {"sellAmount": str(sell), "buyAmount": str(buy), "feeAmount": "0"}, "id": 1}


class TestSellQuote:
    @pytest.mark.asyncio
    async def test_parses_amounts(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=_quote_body(99_990 * 10**18, 99_800_123_456))

        quote = await _client(handler).get_musd_sell_quote(Decimal(100_000))

        assert quote.requested_sell_amount == Decimal(100_000)
        assert quote.sell_amount == Decimal(99_990)
        assert quote.buy_amount == Decimal("99800.123456")
        assert quote.price == Decimal("99800.123456") / Decimal(100_000)

        (request,) = seen
        assert str(request.url) == f"{API}/api/v1/quote"
        body = json.loads(request.content)
        assert body["sellToken"] == MUSD_ETHEREUM
        assert body["buyToken"] == USDC_ETHEREUM
        assert body["kind"] == "sell"
        assert body["sellAmountBeforeFee"] == str(100_000 * 10**18)

    @pytest.mark.asyncio
    async def test_http_error_raises(self) -> None:
        client = _client(lambda request: httpx.Response(503, text="unavailable"))

        with pytest.raises(SwapQuoteError, match="request failed"):
            await client.get_musd_sell_quote()

    @pytest.mark.asyncio
    async def test_transport_error_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(SwapQuoteError):
            await _client(handler).get_musd_sell_quote()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"errorType": "NoLiquidity"},
            {"quote": {"sellAmount": "1"}},
            {"quote": {"sellAmount": "abc", "buyAmount": "1"}},
        ],
    )
    async def test_malformed_body_raises(self, payload: dict) -> None:
        client = _client(lambda request: httpx.Response(200, json=payload))

        with pytest.raises(SwapQuoteError):
            await client.get_musd_sell_quote()

    @pytest.mark.asyncio
    async def test_non_json_body_raises(self) -> None:
        client = _client(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(SwapQuoteError):
            await client.get_musd_sell_quote()

    def test_zero_request_has_zero_price(self) -> None:
        assert SwapQuote(Decimal(0), Decimal(0), Decimal(5)).price == Decimal(0)


@pytest.mark.asyncio
async def test_context_manager_closes_owned_client() -> None:
    async with SwapQuoteClient(API) as quotes:
        inner = quotes._client
    assert inner.is_closed
