"""Balances of bridged assets held by the bridge contract on Ethereum."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from trove_monitor.chain import abi
from trove_monitor.chain.batching import DEFAULT_MULTICALL_BATCH_SIZE, multicall_in_chunks
from trove_monitor.chain.client import ChainReader, ContractCall
from trove_monitor.protocol.models import BridgeAsset, from_units

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BridgeToken:
    token_symbol: str
    ethereum_symbol: str
    mezo_address: str
    ethereum_address: str


BRIDGE_TOKENS: tuple[BridgeToken, ...] = (
    BridgeToken("mcbBTC", "cbBTC", "0x6a7CD8E1384d49f502b4A4CE9aC9eb320835c5d7", "0xcbB7C0000aB88B473b1f5aFd9ef808440eed33Bf"),
    BridgeToken("mDAI", "DAI", "0x1531b6e3d51BF80f634957dF81A990B92dA4b154", "0x6B175474E89094C44Da98b954EedeAC495271d0F"),
    BridgeToken("mFBTC", "FBTC", "0x812fcC0Bb8C207Fd8D6165a7a1173037F43B2dB8", "0xC96dE26018A54D51c097160568752c4E3BD6C364"),
    BridgeToken("mSolvBTC", "SolvBTC", "0xa10aD2570ea7b93d19fDae6Bd7189fF4929Bc747", "0x7A56E1C57C7475CCf742a1832B028F0456652F97"),
    BridgeToken("mswBTC", "swBTC", "0x29fA8F46CBB9562b87773c8f50a7F9F27178261c", "0x8DB2350D78aBc13f5673A411D4700BCF87864dDE"),
    BridgeToken("mT", "T", "0xaaC423eDC4E3ee9ef81517e8093d52737165b71F", "0xCdF7028ceAB81fA0C6971208e83fa7872994beE5"),
    BridgeToken("mUSDC", "USDC", "0x04671C72Aab5AC02A03c1098314b1BB6B560c197", "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"),
    BridgeToken("mUSDe", "USDe", "0xdf6542260a9F768f07030E4895083F804241F4C4", "0x4c9EDD5852cd905f086C759E8383e09bff1E68B3"),
    BridgeToken("mUSDT", "USDT", "0xeB5a5d39dE4Ea42C2Aa6A57EcA2894376683bB8E", "0xdAC17F958D2ee523a2206206994597C13D831ec7"),
    BridgeToken("mxSolvBTC", "xSolvBTC", "0xdF708431162Ba247dDaE362D2c919e0fbAfcf9DE", "0xd9D920AA40f578ab794426F5C90F6C731D159DEf"),
    BridgeToken("BTC", "tBTC", "0x7b7C000000000000000000000000000000000000", "0x18084fbA666a33d37592fA2633fD49a74DD93a88"),
)


class BridgeAssetFetcher:
    """Reads `balanceOf(bridge)` and `decimals()` for each bridged token."""

    def __init__(
        self,
        reader: ChainReader,
        *,
        bridge_address: str,
        tokens: tuple[BridgeToken, ...] = BRIDGE_TOKENS,
        batch_size: int = DEFAULT_MULTICALL_BATCH_SIZE,
    ) -> None:
        self._reader = reader
        self._bridge_address = bridge_address
        self._tokens = tokens
        self._batch_size = batch_size

    async def fetch_assets(self) -> list[BridgeAsset]:
        """Tokens with a non-zero bridge balance; failed reads are skipped."""
        calls = [
            ContractCall(token.ethereum_address, fn, args)
            for token in self._tokens
            for fn, args in ((abi.BALANCE_OF, (self._bridge_address,)), (abi.DECIMALS, ()))
        ]
        results = await multicall_in_chunks(self._reader, calls, batch_size=self._batch_size)

        assets: list[BridgeAsset] = []
        for i, token in enumerate(self._tokens):
            balance, decimals = results[2 * i], results[2 * i + 1]
            if not (balance.success and decimals.success):
                logger.warning("Skipping bridge asset %s: balance/decimals read failed", token.token_symbol)
                continue
            if int(balance.value) == 0:
                continue
            assets.append(
                BridgeAsset(
                    token_symbol=token.token_symbol,
                    ethereum_symbol=token.ethereum_symbol,
                    mezo_address=token.mezo_address,
                    ethereum_address=token.ethereum_address,
                    bridge_address=self._bridge_address,
                    decimals=int(decimals.value),
                    balance_raw=int(balance.value),
                    balance_formatted=from_units(balance.value, int(decimals.value)),
                )
            )
        return assets
