"""Tests for bridged asset balance reads."""

from __future__ import annotations

from decimal import Decimal

import pytest

from trove_monitor.chain import abi
from trove_monitor.protocol.bridge import BridgeAssetFetcher, BridgeToken

BRIDGE = "0xf6680ea3b480ca2b72d96ea13ccaf2cfd8e6908c"
TOKENS = (
    BridgeToken("mUSDC", "USDC", "0x0000000000000000000000000000000000000a01", "0x0000000000000000000000000000000000000e01"),
    BridgeToken("mT", "T", "0x0000000000000000000000000000000000000a02", "0x0000000000000000000000000000000000000e02"),
    BridgeToken("mDAI", "DAI", "0x0000000000000000000000000000000000000a03", "0x0000000000000000000000000000000000000e03"),
    BridgeToken("BTC", "tBTC", "0x0000000000000000000000000000000000000a04", "0x0000000000000000000000000000000000000e04"),
)


def _by_token(values: dict[str, object]):
    return lambda c: values[c.address]


@pytest.mark.asyncio
async def test_fetches_non_zero_balances(chain_reader) -> None:
    balances = {
        TOKENS[0].ethereum_address: 1_234_567_890,
        TOKENS[1].ethereum_address: 0,
        TOKENS[2].ethereum_address: RuntimeError("revert"),
        TOKENS[3].ethereum_address: 15 * 10**17,
    }
    decimals = {
        TOKENS[0].ethereum_address: 6,
        TOKENS[1].ethereum_address: 18,
        TOKENS[2].ethereum_address: 18,
        TOKENS[3].ethereum_address: 18,
    }
    reader = chain_reader({abi.BALANCE_OF["name"]: _by_token(balances), abi.DECIMALS["name"]: _by_token(decimals)})

    assets = await BridgeAssetFetcher(reader, bridge_address=BRIDGE, tokens=TOKENS, batch_size=3).fetch_assets()

    assert [a.token_symbol for a in assets] == ["mUSDC", "BTC"]
    usdc, btc = assets
    assert usdc.balance_raw == 1_234_567_890
    assert usdc.balance_formatted == Decimal("1234.56789")
    assert usdc.decimals == 6
    assert usdc.bridge_address == BRIDGE
    assert usdc.ethereum_symbol == "USDC"
    assert btc.balance_formatted == Decimal("1.5")


@pytest.mark.asyncio
async def test_queries_bridge_balance(chain_reader) -> None:
    reader = chain_reader({abi.BALANCE_OF["name"]: 0, abi.DECIMALS["name"]: 18})

    assert await BridgeAssetFetcher(reader, bridge_address=BRIDGE, tokens=TOKENS[:1]).fetch_assets() == []

    balance_call = next(c for c in reader.calls if c.abi["name"] == "balanceOf")
    assert balance_call.args == (BRIDGE,)
    assert balance_call.address == TOKENS[0].ethereum_address


@pytest.mark.asyncio
async def test_missing_decimals_skips_asset(chain_reader) -> None:
    reader = chain_reader({abi.BALANCE_OF["name"]: 10**18})

    assert await BridgeAssetFetcher(reader, bridge_address=BRIDGE, tokens=TOKENS).fetch_assets() == []
