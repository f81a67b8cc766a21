"""Read-only EVM chain client with multicall batching and block caching.

This module provides the ChainReader used by every protocol reader:
- Single contract calls encoded from minimal ABI fragments
- Multicall3 `aggregate3` batches that report per-call success
- Redis caching for immutable block headers
- Rate limiting to respect provider limits

Failures are surfaced immediately as RPCError; retry policy belongs to the
caller (a failed pass is simply re-run from the last watermark).
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, cast

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError, EncodingError
from redis.asyncio import Redis
from web3 import AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from trove_monitor.chain.abi import AGGREGATE3, MULTICALL3_ADDRESS

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_BLOCK_CACHE_TTL_SECONDS = 3600

_RPC_ERRORS = (Web3Exception, ValueError, OSError, asyncio.TimeoutError)


class ChainReaderError(Exception):
    """Base exception for chain reader errors."""


class RPCError(ChainReaderError):
    """Raised when an RPC call fails, reverts or returns undecodable data."""


def abi_type(param: dict[str, Any]) -> str:
    """Canonical ABI type string for a parameter, expanding tuples."""
    type_ = str(param["type"])
    if type_.startswith("tuple"):
        inner = ",".join(abi_type(c) for c in param.get("components", []))
        return f"({inner}){type_[len('tuple'):]}"
    return type_


def abi_signature(entry: dict[str, Any]) -> str:
    types = ",".join(abi_type(p) for p in entry.get("inputs", []))
    return f"{entry['name']}({types})"


def to_hex(value: bytes | bytearray | str) -> str:
    """Render bytes (or HexBytes) as a 0x-prefixed lowercase hex string."""
    if isinstance(value, str):
        return value.lower() if value.startswith("0x") else "0x" + value.lower()
    return "0x" + bytes(value).hex()


def to_bytes(value: bytes | bytearray | str) -> bytes:
    if isinstance(value, str):
        return bytes.fromhex(value[2:] if value.startswith("0x") else value)
    return bytes(value)


@dataclass(frozen=True)
class ContractCall:
    """A single read (or transaction) against a contract function."""

    address: str
    abi: dict[str, Any]
    args: tuple[Any, ...] = ()

    @property
    def selector(self) -> bytes:
        return bytes(Web3.keccak(text=abi_signature(self.abi)))[:4]

    def encode(self) -> bytes:
        input_types = [abi_type(p) for p in self.abi.get("inputs", [])]
        return self.selector + encode(input_types, list(self.args))

    def decode(self, data: bytes) -> Any:
        """Decode return data; single outputs are unwrapped."""
        output_types = [abi_type(p) for p in self.abi.get("outputs", [])]
        values = decode(output_types, data)
        if len(values) == 1:
            return values[0]
        return tuple(values)


@dataclass(frozen=True)
class CallResult:
    """Outcome of one sub-call inside a multicall batch."""

    success: bool
    value: Any = None
    error: str | None = None


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class ChainReader:
    """Read-only chain client.

    Example:
        ```python
        reader = ChainReader("https://rpc.mezo.org", redis=redis)

        owners = await reader.call(ContractCall(trove_manager, GET_TROVE_OWNERS_COUNT))
        results = await reader.multicall([ContractCall(pool, POOL_NAME) for pool in pools])
        names = [r.value for r in results if r.success]
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        redis: Redis | None = None,
        multicall_address: str = MULTICALL3_ADDRESS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        block_cache_ttl_seconds: int = DEFAULT_BLOCK_CACHE_TTL_SECONDS,
        cache_prefix: str = "chain:",
    ) -> None:
        """Initialize the chain reader.

        Args:
            rpc_url: RPC endpoint URL.
            redis: Optional Redis client for caching block headers.
            multicall_address: Multicall3 deployment on this chain.
            max_requests_per_second: Rate limit for RPC calls.
            block_cache_ttl_seconds: Cache TTL for block headers.
            cache_prefix: Redis key prefix; keep distinct per chain.
        """
        self._rpc_url = rpc_url
        self._redis = redis
        self._multicall_address = AsyncWeb3.to_checksum_address(multicall_address)
        self._block_cache_ttl = block_cache_ttl_seconds
        self._cache_prefix = cache_prefix
        self._rate_limiter = RateLimiter.create(max_requests_per_second)
        self._w3 = self._new_web3_client(rpc_url)

    @property
    def w3(self) -> AsyncWeb3[AsyncHTTPProvider]:
        """Underlying web3 instance (used by the transaction signer)."""
        return self._w3

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)
        return client

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    async def _execute(self, func_name: str, *args: Any, **kwargs: Any) -> Any:
        """Run a single web3.eth method, wrapping transport errors in RPCError.

        Awaitable properties (e.g. ``block_number``) are awaited directly.
        """
        await self._rate_limiter.acquire()
        try:
            target = getattr(self._w3.eth, func_name)
            result = target(*args, **kwargs) if callable(target) else target
            return await result
        except TransactionNotFound:
            raise
        except _RPC_ERRORS as e:
            raise RPCError(f"RPC call {func_name} failed: {e}") from e

    async def call(self, call: ContractCall, *, block_identifier: int | str = "latest") -> Any:
        """Execute one read-only contract call and decode its return value.

        Raises:
            RPCError: On transport failure, revert, or undecodable return data.
        """
        try:
            data = call.encode()
        except EncodingError as e:
            raise RPCError(f"Cannot encode {call.abi['name']}: {e}") from e
        raw = await self._execute(
            "call",
            {"to": AsyncWeb3.to_checksum_address(call.address), "data": to_hex(data)},
            block_identifier,
        )
        try:
            return call.decode(to_bytes(raw))
        except DecodingError as e:
            raise RPCError(f"Cannot decode {call.abi['name']} result: {e}") from e

    async def multicall(
        self,
        calls: Sequence[ContractCall],
        *,
        block_identifier: int | str = "latest",
    ) -> list[CallResult]:
        """Execute calls in one Multicall3 round-trip.

        A failing sub-call never aborts the batch; callers inspect each
        CallResult. The batch itself failing (transport error) raises RPCError.
        """
        if not calls:
            return []

        payload = [(AsyncWeb3.to_checksum_address(c.address), True, c.encode()) for c in calls]
        batch = ContractCall(self._multicall_address, AGGREGATE3, (payload,))
        returned = cast(list[tuple[bool, bytes]], await self.call(batch, block_identifier=block_identifier))

        results: list[CallResult] = []
        for c, (success, return_data) in zip(calls, returned, strict=True):
            if not success:
                results.append(CallResult(success=False, error=f"{c.abi['name']} reverted"))
                continue
            try:
                results.append(CallResult(success=True, value=c.decode(bytes(return_data))))
            except DecodingError as e:
                results.append(CallResult(success=False, error=f"{c.abi['name']}: {e}"))
        return results

    async def get_block_number(self) -> int:
        return int(await self._execute("block_number"))

    async def get_block(self, block_number: int) -> dict[str, Any]:
        """Get a block header (number, hash, timestamp).

        Headers are immutable, so they are cached for the configured TTL.
        """
        cache_key = f"{self._cache_prefix}block:{block_number}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return cast(dict[str, Any], json.loads(cached))

        block = await self._execute("get_block", block_number)
        header = {
            "number": int(block["number"]),
            "hash": to_hex(block["hash"]) if block.get("hash") is not None else None,
            "timestamp": int(block["timestamp"]),
        }
        await self._set_cached(cache_key, json.dumps(header), self._block_cache_ttl)
        return header

    async def get_latest_block(self) -> dict[str, Any]:
        """Get the latest block header (never cached)."""
        block = await self._execute("get_block", "latest")
        return {
            "number": int(block["number"]),
            "hash": to_hex(block["hash"]) if block.get("hash") is not None else None,
            "timestamp": int(block["timestamp"]),
        }

    async def get_block_timestamp(self, block_number: int) -> int:
        block = await self.get_block(block_number)
        return int(block["timestamp"])

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        """Fetch a receipt, or None when the node does not know the transaction."""
        try:
            receipt = await self._execute("get_transaction_receipt", tx_hash)
        except TransactionNotFound:
            return None
        if receipt is None:
            return None
        return dict(receipt)

    async def get_logs(
        self,
        *,
        address: str,
        topics: list[str | None],
        from_block: int,
        to_block: int,
    ) -> list[dict[str, Any]]:
        """Fetch raw logs via `eth_getLogs` for one contract and block range."""
        logs = await self._execute(
            "get_logs",
            {
                "address": AsyncWeb3.to_checksum_address(address),
                "topics": topics,
                "fromBlock": from_block,
                "toBlock": to_block,
            },
        )
        return [dict(log) for log in logs]

    async def estimate_gas(self, transaction: dict[str, Any]) -> int:
        return int(await self._execute("estimate_gas", transaction))

    async def health_check(self) -> bool:
        try:
            await self.get_block_number()
            return True
        except RPCError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if not callable(disconnect):
            return
        try:
            result = disconnect()
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.warning("Failed to close RPC provider session: %s", e)
