"""Reference MUSD -> USDC swap quote from the CoW Protocol order book API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from trove_monitor.chain.abi import ZERO_ADDRESS
from trove_monitor.protocol.models import from_units, to_units

logger = logging.getLogger(__name__)

MUSD_ETHEREUM = "0xdD468A1DDc392dcdbEf6db6e34E89AA338F9F186"
MUSD_DECIMALS = 18
USDC_ETHEREUM = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
USDC_DECIMALS = 6


class SwapQuoteError(Exception):
    """Raised when the quote service fails or returns an unusable body."""


@dataclass(frozen=True)
class SwapQuote:
    """Sell quote after network costs, in token units."""

    requested_sell_amount: Decimal
    sell_amount: Decimal
    buy_amount: Decimal

    @property
    def price(self) -> Decimal:
        """USDC received per MUSD offered (network costs included)."""
        if self.requested_sell_amount == 0:
            return Decimal(0)
        return self.buy_amount / self.requested_sell_amount


class SwapQuoteClient:
    """Fetches sell-side MUSD/USDC quotes.

    Example:
        ```python
        async with SwapQuoteClient("https://api.cow.fi/mainnet") as quotes:
            quote = await quotes.get_musd_sell_quote(Decimal("100000"))
            print(quote.price)
        ```
    """

    def __init__(
        self,
        api_url: str,
        *,
        quote_from: str = ZERO_ADDRESS,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._quote_from = quote_from
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = client is None

    async def get_musd_sell_quote(self, amount: Decimal = Decimal("100000")) -> SwapQuote:
        body = {
            "sellToken": MUSD_ETHEREUM,
            "buyToken": USDC_ETHEREUM,
            "from": self._quote_from,
            "receiver": self._quote_from,
            "kind": "sell",
            "sellAmountBeforeFee": str(to_units(amount, MUSD_DECIMALS)),
            "partiallyFillable": True,
            "signingScheme": "eip712",
        }
        try:
            response = await self._client.post(f"{self._api_url}/api/v1/quote", json=body)
            response.raise_for_status()
            payload: dict[str, Any] = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise SwapQuoteError(f"Quote request failed: {e}") from e

        quote = payload.get("quote")
        if not isinstance(quote, dict):
            raise SwapQuoteError("Quote response has no 'quote' object")
        try:
            sell_amount = from_units(int(quote["sellAmount"]), MUSD_DECIMALS)
            buy_amount = from_units(int(quote["buyAmount"]), USDC_DECIMALS)
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise SwapQuoteError(f"Malformed quote amounts: {e}") from e

        logger.debug("Swap quote: sell %s MUSD -> buy %s USDC", sell_amount, buy_amount)
        return SwapQuote(requested_sell_amount=amount, sell_amount=sell_amount, buy_amount=buy_amount)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> SwapQuoteClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()
