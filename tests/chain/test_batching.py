"""Tests for chunked batch helpers."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from trove_monitor.chain import abi
from trove_monitor.chain.batching import chunked, iter_block_ranges, multicall_in_chunks
from trove_monitor.chain.client import CallResult, ContractCall

POOL_FACTORY = "0x83fe469c636c4081b87ba5b3ae9991c6ed104248"


class TestChunked:
    def test_splits_into_bounded_slices(self) -> None:
        assert [list(c) for c in chunked(list(range(7)), 3)] == [[0, 1, 2], [3, 4, 5], [6]]

    def test_empty_input(self) -> None:
        assert list(chunked([], 5)) == []

    def test_non_positive_size_means_one(self) -> None:
        assert [list(c) for c in chunked([1, 2], 0)] == [[1], [2]]


class TestBlockRanges:
    def test_ranges_are_inclusive_and_contiguous(self) -> None:
        ranges = list(iter_block_ranges(0, 10_000, 1_000))

        assert len(ranges) == 11
        assert ranges[0] == (0, 999)
        assert ranges[-1] == (10_000, 10_000)
        for (_, prev_end), (start, _) in zip(ranges, ranges[1:]):
            assert start == prev_end + 1

    def test_single_chunk_covers_range(self) -> None:
        assert list(iter_block_ranges(0, 10_000, 10_001)) == [(0, 10_000)]

    def test_single_block(self) -> None:
        assert list(iter_block_ranges(42, 42, 1_000)) == [(42, 42)]

    def test_inverted_range_is_empty(self) -> None:
        assert list(iter_block_ranges(101, 100, 1_000)) == []


class TestMulticallInChunks:
    @pytest.mark.asyncio
    async def test_preserves_order_across_batches(self) -> None:
        reader = MagicMock()
        reader.multicall = AsyncMock(
            side_effect=lambda calls: [CallResult(success=True, value=c.args[0]) for c in calls]
        )
        calls = [ContractCall(POOL_FACTORY, abi.ALL_POOLS, (i,)) for i in range(601)]

        results = await multicall_in_chunks(reader, calls, batch_size=250)

        assert [r.value for r in results] == list(range(601))
        assert reader.multicall.await_count == 3
        assert [len(c.args[0]) for c in reader.multicall.await_args_list] == [250, 250, 101]

    @pytest.mark.asyncio
    async def test_no_calls_no_round_trips(self) -> None:
        reader = MagicMock()
        reader.multicall = AsyncMock()

        assert await multicall_in_chunks(reader, [], batch_size=250) == []
        reader.multicall.assert_not_awaited()
