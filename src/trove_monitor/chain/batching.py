"""Chunked batch helpers shared by log scanning and multicall reads."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from trove_monitor.chain.client import CallResult, ChainReader, ContractCall

logger = logging.getLogger(__name__)

DEFAULT_MULTICALL_BATCH_SIZE = 250

T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of at most `size` items (size < 1 means 1)."""
    step = max(1, size)
    for start in range(0, len(items), step):
        yield items[start : start + step]


def iter_block_ranges(from_block: int, to_block: int, chunk_size: int) -> Iterator[tuple[int, int]]:
    """Split the inclusive range [from_block, to_block] into bounded chunks.

    An inverted range yields nothing.
    """
    step = max(1, chunk_size)
    for start in range(from_block, to_block + 1, step):
        yield start, min(to_block, start + step - 1)


async def multicall_in_chunks(
    reader: ChainReader,
    calls: Sequence[ContractCall],
    *,
    batch_size: int = DEFAULT_MULTICALL_BATCH_SIZE,
) -> list[CallResult]:
    """Run `calls` through multicall, `batch_size` calls per round-trip.

    Results keep the order of `calls`. Batches run sequentially so request
    size, not concurrency, is the only knob.
    """
    results: list[CallResult] = []
    for batch in chunked(calls, batch_size):
        results.extend(await reader.multicall(batch))
    if len(calls) > batch_size:
        logger.debug("Multicall: %d calls in batches of %d", len(calls), max(1, batch_size))
    return results
