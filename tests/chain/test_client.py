"""Tests for the read-only chain client."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_abi import encode
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception

from trove_monitor.chain import abi
from trove_monitor.chain.client import ChainReader, ContractCall, RPCError, abi_signature, to_hex

TOKEN = "0x1111111111111111111111111111111111111111"
HOLDER = "0x2222222222222222222222222222222222222222"


async def _value(v):
    return v


class _Eth:
    """web3.eth stand-in whose `block_number` is an awaitable property."""

    def __init__(self, block_number: int) -> None:
        self._block_number = block_number

    @property
    def block_number(self):
        return _value(self._block_number)


@pytest.fixture
def reader() -> ChainReader:
    client = ChainReader("http://localhost:8545", max_requests_per_second=1_000)
    client._w3 = MagicMock()
    return client


class TestContractCall:
    def test_selector_matches_known_signature(self) -> None:
        call = ContractCall(TOKEN, abi.BALANCE_OF, (HOLDER,))
        assert abi_signature(abi.BALANCE_OF) == "balanceOf(address)"
        assert call.selector.hex() == "70a08231"

    def test_encode_prefixes_selector(self) -> None:
        call = ContractCall(TOKEN, abi.BALANCE_OF, (HOLDER,))
        assert call.encode() == call.selector + encode(["address"], [HOLDER])

    def test_decode_unwraps_single_output(self) -> None:
        call = ContractCall(TOKEN, abi.BALANCE_OF, (HOLDER,))
        assert call.decode(encode(["uint256"], [42])) == 42

    def test_decode_returns_tuple_for_multiple_outputs(self) -> None:
        call = ContractCall(TOKEN, abi.GET_APPROX_HINT, (1, 32, 7))
        data = encode(["address", "uint256", "uint256"], [HOLDER, 5, 9])
        assert call.decode(data) == (Web3.to_checksum_address(HOLDER), 5, 9)

    def test_aggregate3_signature_expands_tuples(self) -> None:
        assert abi_signature(abi.AGGREGATE3) == "aggregate3((address,bool,bytes)[])"


class TestCall:
    @pytest.mark.asyncio
    async def test_call_decodes_result(self, reader: ChainReader) -> None:
        reader._w3.eth.call = AsyncMock(return_value=encode(["uint256"], [10**18]))

        value = await reader.call(ContractCall(TOKEN, abi.BALANCE_OF, (HOLDER,)))

        assert value == 10**18
        tx = reader._w3.eth.call.call_args.args[0]
        assert tx["data"] == to_hex(ContractCall(TOKEN, abi.BALANCE_OF, (HOLDER,)).encode())

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [Web3Exception("boom"), ValueError("execution reverted"), OSError("reset")])
    async def test_call_wraps_transport_errors(self, reader: ChainReader, error: Exception) -> None:
        reader._w3.eth.call = AsyncMock(side_effect=error)

        with pytest.raises(RPCError):
            await reader.call(ContractCall(TOKEN, abi.BALANCE_OF, (HOLDER,)))

    @pytest.mark.asyncio
    async def test_call_wraps_decode_errors(self, reader: ChainReader) -> None:
        reader._w3.eth.call = AsyncMock(return_value=b"\x01")

        with pytest.raises(RPCError, match="decode"):
            await reader.call(ContractCall(TOKEN, abi.BALANCE_OF, (HOLDER,)))

    @pytest.mark.asyncio
    async def test_call_does_not_retry(self, reader: ChainReader) -> None:
        reader._w3.eth.call = AsyncMock(side_effect=Web3Exception("boom"))

        with pytest.raises(RPCError):
            await reader.call(ContractCall(TOKEN, abi.BALANCE_OF, (HOLDER,)))
        assert reader._w3.eth.call.await_count == 1


class TestMulticall:
    @pytest.mark.asyncio
    async def test_sub_call_failure_does_not_abort_batch(self, reader: ChainReader) -> None:
        returned = [
            (True, encode(["uint256"], [7])),
            (False, b""),
            (True, b"\x00"),  # undecodable
            (True, encode(["uint8"], [18])),
        ]
        reader._w3.eth.call = AsyncMock(return_value=encode(["(bool,bytes)[]"], [returned]))

        results = await reader.multicall(
            [
                ContractCall(TOKEN, abi.BALANCE_OF, (HOLDER,)),
                ContractCall(TOKEN, abi.BALANCE_OF, (TOKEN,)),
                ContractCall(TOKEN, abi.BALANCE_OF, (HOLDER,)),
                ContractCall(TOKEN, abi.DECIMALS),
            ]
        )

        assert [r.success for r in results] == [True, False, False, True]
        assert results[0].value == 7
        assert results[3].value == 18
        assert reader._w3.eth.call.await_count == 1

    @pytest.mark.asyncio
    async def test_batch_transport_failure_raises(self, reader: ChainReader) -> None:
        reader._w3.eth.call = AsyncMock(side_effect=Web3Exception("timeout"))

        with pytest.raises(RPCError):
            await reader.multicall([ContractCall(TOKEN, abi.DECIMALS)])

    @pytest.mark.asyncio
    async def test_empty_batch_skips_rpc(self, reader: ChainReader) -> None:
        reader._w3.eth.call = AsyncMock()

        assert await reader.multicall([]) == []
        reader._w3.eth.call.assert_not_awaited()


class TestBlocksAndReceipts:
    @pytest.mark.asyncio
    async def test_get_block_number(self, reader: ChainReader) -> None:
        reader._w3.eth = _Eth(5_000_500)

        assert await reader.get_block_number() == 5_000_500

    @pytest.mark.asyncio
    async def test_get_block_uses_cache(self) -> None:
        redis = AsyncMock()
        redis.get = AsyncMock(return_value=json.dumps({"number": 10, "hash": "0xab", "timestamp": 1234}).encode())
        client = ChainReader("http://localhost:8545", redis=redis)
        client._w3 = MagicMock()
        client._w3.eth.get_block = AsyncMock()

        assert await client.get_block_timestamp(10) == 1234
        client._w3.eth.get_block.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_block_populates_cache(self) -> None:
        redis = AsyncMock()
        redis.get = AsyncMock(return_value=None)
        client = ChainReader("http://localhost:8545", redis=redis, cache_prefix="mezo:")
        client._w3 = MagicMock()
        client._w3.eth.get_block = AsyncMock(
            return_value={"number": 10, "hash": bytes.fromhex("ab" * 32), "timestamp": 1234}
        )

        header = await client.get_block(10)

        assert header == {"number": 10, "hash": "0x" + "ab" * 32, "timestamp": 1234}
        key, value = redis.set.call_args.args
        assert key == "mezo:block:10"
        assert json.loads(value) == header

    @pytest.mark.asyncio
    async def test_cache_failure_falls_back_to_rpc(self) -> None:
        redis = AsyncMock()
        redis.get = AsyncMock(side_effect=ConnectionError("redis down"))
        redis.set = AsyncMock(side_effect=ConnectionError("redis down"))
        client = ChainReader("http://localhost:8545", redis=redis)
        client._w3 = MagicMock()
        client._w3.eth.get_block = AsyncMock(return_value={"number": 3, "hash": None, "timestamp": 99})

        assert await client.get_block_timestamp(3) == 99

    @pytest.mark.asyncio
    async def test_missing_receipt_is_none(self, reader: ChainReader) -> None:
        reader._w3.eth.get_transaction_receipt = AsyncMock(side_effect=TransactionNotFound("unknown"))

        assert await reader.get_transaction_receipt("0x" + "aa" * 32) is None

    @pytest.mark.asyncio
    async def test_health_check(self, reader: ChainReader) -> None:
        reader._w3.eth = _Eth(1)
        assert await reader.health_check() is True
