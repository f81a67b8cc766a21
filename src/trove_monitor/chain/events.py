"""Chunked contract-event scanning with deterministic ordering.

Ranges are fetched chunk by chunk (to respect provider response limits),
merged and sorted by (block_number, log_index). Block timestamps and
receipt statuses are resolved once per distinct block/transaction and
memoized for the lifetime of the scanner (one indexing pass). The memo
holds the lookup task itself, so concurrent scans sharing a block or
transaction wait on the same request.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, TypeVar

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from trove_monitor.chain.batching import DEFAULT_MULTICALL_BATCH_SIZE, chunked, iter_block_ranges
from trove_monitor.chain.client import ChainReader, RPCError, abi_signature, abi_type, to_bytes, to_hex
from trove_monitor.protocol.models import TxStatus

logger = logging.getLogger(__name__)

_K = TypeVar("_K")
_V = TypeVar("_V")


def _memoized(cache: dict[_K, asyncio.Task[_V]], key: _K, lookup: Callable[[], Awaitable[_V]]) -> asyncio.Task[_V]:
    """Return the cached lookup task for `key`, starting one if needed.

    Failed lookups are evicted so a later call retries them.
    """
    task = cache.get(key)
    if task is None:
        task = asyncio.ensure_future(lookup())
        cache[key] = task

        def _evict_failed(done: asyncio.Task[_V]) -> None:
            if done.cancelled() or done.exception() is not None:
                cache.pop(key, None)

        task.add_done_callback(_evict_failed)
    return task


def event_topic(event_abi: dict[str, Any]) -> str:
    """topic0 for an event ABI entry."""
    return to_hex(bytes(Web3.keccak(text=abi_signature(event_abi))))


@dataclass(frozen=True)
class Decoded:
    name: str
    args: dict[str, Any]


@dataclass(frozen=True)
class Unrecognized:
    reason: str


DecodeResult = Decoded | Unrecognized


def decode_log(event_abi: dict[str, Any], log: dict[str, Any]) -> DecodeResult:
    """Decode a raw log against one event ABI.

    Logs of any other shape come back as Unrecognized instead of raising.
    """
    topics = [to_bytes(t) for t in log.get("topics") or []]
    if not topics or to_hex(topics[0]) != event_topic(event_abi):
        return Unrecognized("topic mismatch")

    inputs = event_abi.get("inputs", [])
    indexed = [p for p in inputs if p.get("indexed")]
    plain = [p for p in inputs if not p.get("indexed")]
    if len(topics) - 1 != len(indexed):
        return Unrecognized("indexed argument count mismatch")

    try:
        args: dict[str, Any] = {}
        for param, topic in zip(indexed, topics[1:], strict=True):
            (args[param["name"]],) = decode([abi_type(param)], topic)
        values = decode([abi_type(p) for p in plain], to_bytes(log.get("data") or b""))
        for param, value in zip(plain, values, strict=True):
            args[param["name"]] = value
    except (DecodingError, ValueError) as e:
        return Unrecognized(str(e))
    return Decoded(name=str(event_abi["name"]), args=args)


@dataclass(frozen=True)
class LogEntry:
    """A decoded event with its position in the chain."""

    name: str
    args: dict[str, Any]
    address: str
    block_number: int
    log_index: int
    tx_hash: str

    @property
    def sort_key(self) -> tuple[int, int]:
        return self.block_number, self.log_index


class EventLogScanner:
    """Fetches, orders and annotates contract events over block ranges."""

    def __init__(self, reader: ChainReader, *, lookup_batch_size: int = DEFAULT_MULTICALL_BATCH_SIZE) -> None:
        self._reader = reader
        self._lookup_batch_size = lookup_batch_size
        self._timestamps: dict[int, asyncio.Task[int]] = {}
        self._receipts: dict[str, asyncio.Task[dict[str, Any] | None]] = {}

    async def scan(
        self,
        *,
        address: str,
        event_abi: dict[str, Any],
        from_block: int,
        to_block: int,
        chunk_size: int,
    ) -> list[LogEntry]:
        """Return every `event_abi` log emitted by `address` in [from_block, to_block].

        The result is sorted by (block_number, log_index) and does not depend
        on `chunk_size`. An inverted range returns an empty list.
        """
        if from_block > to_block:
            return []

        topic = event_topic(event_abi)
        entries: dict[tuple[str, int], LogEntry] = {}
        for start, end in iter_block_ranges(from_block, to_block, chunk_size):
            logger.debug("Scanning %s logs %d-%d", event_abi["name"], start, end)
            raw_logs = await self._reader.get_logs(
                address=address,
                topics=[topic],
                from_block=start,
                to_block=end,
            )
            for raw in raw_logs:
                entry = self._to_entry(event_abi, raw)
                if entry is not None:
                    entries[(entry.tx_hash, entry.log_index)] = entry

        ordered = sorted(entries.values(), key=lambda e: e.sort_key)
        if ordered:
            logger.info(
                "Found %d %s events in blocks %d-%d",
                len(ordered),
                event_abi["name"],
                from_block,
                to_block,
            )
        return ordered

    @staticmethod
    def _to_entry(event_abi: dict[str, Any], raw: dict[str, Any]) -> LogEntry | None:
        tx_hash = raw.get("transactionHash")
        if not tx_hash:
            return None
        result = decode_log(event_abi, raw)
        if isinstance(result, Unrecognized):
            logger.debug("Skipping undecodable %s log: %s", event_abi["name"], result.reason)
            return None
        return LogEntry(
            name=result.name,
            args=result.args,
            address=str(raw.get("address") or "").lower(),
            block_number=int(raw.get("blockNumber") or 0),
            log_index=int(raw.get("logIndex") or 0),
            tx_hash=to_hex(tx_hash),
        )

    async def block_timestamps(self, block_numbers: Iterable[int]) -> dict[int, int]:
        """Resolve timestamps with one lookup per distinct, not yet known block."""
        wanted = sorted(set(block_numbers))
        timestamps: dict[int, int] = {}
        for batch in chunked(wanted, self._lookup_batch_size):
            values = await asyncio.gather(*(self._block_timestamp(n) for n in batch))
            timestamps.update(zip(batch, values, strict=True))
        return timestamps

    async def _block_timestamp(self, block_number: int) -> int:
        return await _memoized(
            self._timestamps, block_number, lambda: self._reader.get_block_timestamp(block_number)
        )

    async def _receipt(self, tx_hash: str) -> dict[str, Any] | None:
        return await _memoized(self._receipts, tx_hash, lambda: self._reader.get_transaction_receipt(tx_hash))

    async def _status(self, tx_hash: str) -> TxStatus:
        try:
            receipt = await self._receipt(tx_hash)
        except RPCError as e:
            logger.warning("Failed to fetch transaction receipt %s: %s", tx_hash, e)
            return "failed"
        if receipt is None:
            return "success"
        return "success" if int(receipt.get("status", 1)) == 1 else "failed"

    async def receipt_statuses(self, tx_hashes: Iterable[str]) -> dict[str, TxStatus]:
        """Resolve receipt status with one lookup per distinct transaction."""
        wanted = sorted(set(tx_hashes))
        statuses: dict[str, TxStatus] = {}
        for batch in chunked(wanted, self._lookup_batch_size):
            values = await asyncio.gather(*(self._status(h) for h in batch))
            statuses.update(zip(batch, values, strict=True))
        return statuses

    async def companion_logs(
        self,
        tx_hashes: Iterable[str],
        *,
        address: str,
        event_abi: dict[str, Any],
        predicate: Callable[[Decoded], bool] = lambda _: True,
    ) -> dict[str, list[Decoded]]:
        """Decode same-transaction logs of `event_abi` emitted by `address`.

        Logs from other contracts or of another shape are ignored; a
        transaction whose receipt cannot be fetched contributes nothing.
        """
        found: dict[str, list[Decoded]] = {}
        target = address.lower()
        for batch in chunked(sorted(set(tx_hashes)), self._lookup_batch_size):
            receipts = await asyncio.gather(*(self._receipt(h) for h in batch), return_exceptions=True)
            for tx_hash, receipt in zip(batch, receipts, strict=True):
                if isinstance(receipt, BaseException):
                    if not isinstance(receipt, RPCError):
                        raise receipt
                    logger.warning("Failed to fetch receipt %s for companion logs: %s", tx_hash, receipt)
                    continue
                if receipt is None:
                    continue
                for raw in receipt.get("logs") or []:
                    if str(raw.get("address") or "").lower() != target:
                        continue
                    result = decode_log(event_abi, dict(raw))
                    if isinstance(result, Decoded) and predicate(result):
                        found.setdefault(tx_hash, []).append(result)
        return found
