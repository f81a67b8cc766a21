"""Tests for gauge incentive aggregation."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from trove_monitor.chain import abi
from trove_monitor.chain.client import ContractCall
from trove_monitor.protocol.gauges import WEEK_SECONDS, GaugeIncentiveAggregator, epoch_start_for

POOL_FACTORY = "0x83fe469c636c4081b87ba5b3ae9991c6ed104248"
VOTER = "0x48233ccc97b87ba93bca212cbee48e3210211f03"
VOTING_ESCROW = "0x3d4b1b884a7a1e59fe8589a3296ec8f8cbb6f279"
POOL_A = "0xa000000000000000000000000000000000000001"
POOL_B = "0xa000000000000000000000000000000000000002"
GAUGE_A = "0xb000000000000000000000000000000000000001"
BRIBE_A = "0xc000000000000000000000000000000000000001"
TOKEN_X = "0xd000000000000000000000000000000000000001"
TOKEN_Y = "0xd000000000000000000000000000000000000002"

NOW = 1_700_000_100
EPOCH = epoch_start_for(NOW, WEEK_SECONDS)


def _handlers(amounts: dict[tuple[str, int], int], *, duration: int = WEEK_SECONDS) -> dict:
    pools = [POOL_A, POOL_B]
    gauges = {POOL_A: GAUGE_A, POOL_B: abi.ZERO_ADDRESS}
    tokens = [TOKEN_X, TOKEN_Y]

    def rewards_per_epoch(call: ContractCall) -> int:
        token, epoch = call.args
        return amounts.get((token, epoch), 0)

    return {
        abi.ALL_POOLS_LENGTH["name"]: len(pools),
        abi.ALL_POOLS["name"]: lambda c: pools[c.args[0]],
        abi.POOL_NAME["name"]: lambda c: f"vAMM-{c.address[-1]}",
        abi.VOTER_GAUGES["name"]: lambda c: gauges[c.args[0]],
        abi.VOTER_WEIGHTS["name"]: 1_234 * 10**18,
        abi.VOTER_GAUGE_TO_BRIBE["name"]: BRIBE_A,
        abi.BRIBE_REWARDS_LIST_LENGTH["name"]: len(tokens),
        abi.BRIBE_DURATION["name"]: duration,
        abi.BRIBE_REWARDS["name"]: lambda c: tokens[c.args[0]],
        abi.BRIBE_TOKEN_REWARDS_PER_EPOCH["name"]: rewards_per_epoch,
    }


def _aggregator(reader: MagicMock) -> GaugeIncentiveAggregator:
    return GaugeIncentiveAggregator(
        reader, pool_factory=POOL_FACTORY, voter=VOTER, voting_escrow=VOTING_ESCROW, batch_size=3
    )


def _probed_epochs(reader: MagicMock) -> list[tuple[str, int]]:
    return [c.args for c in reader.calls if c.abi["name"] == abi.BRIBE_TOKEN_REWARDS_PER_EPOCH["name"]]


class TestEpochStart:
    def test_floors_to_duration(self) -> None:
        assert epoch_start_for(NOW, 604_800) == 1_699_488_000
        assert epoch_start_for(1_699_488_000, 604_800) == 1_699_488_000

    def test_zero_duration_has_no_alignment(self) -> None:
        assert epoch_start_for(NOW, 0) == 0


class TestFetchIncentives:
    @pytest.mark.asyncio
    async def test_enumerates_gauged_pools(self, chain_reader) -> None:
        reader = chain_reader(_handlers({(TOKEN_X, EPOCH): 500, (TOKEN_Y, EPOCH): 7}), latest_timestamp=NOW)

        incentives = await _aggregator(reader).fetch_incentives()

        assert len(incentives) == 1
        (gauge,) = incentives
        assert gauge.pool == POOL_A
        assert gauge.gauge == GAUGE_A
        assert gauge.bribe == BRIBE_A
        assert gauge.pool_name == "vAMM-1"
        assert gauge.votes == 1_234 * 10**18
        assert gauge.duration == WEEK_SECONDS
        assert gauge.epoch_start == EPOCH
        assert [(r.token, r.amount) for r in gauge.rewards] == [(TOKEN_X, 500), (TOKEN_Y, 7)]

    @pytest.mark.asyncio
    async def test_no_probing_unless_requested(self, chain_reader) -> None:
        reader = chain_reader(_handlers({}), latest_timestamp=NOW)

        (gauge,) = await _aggregator(reader).fetch_incentives()

        assert all(r.amount == 0 for r in gauge.rewards)
        assert all(r.previous_epoch_amount is None and r.next_epoch_amount is None for r in gauge.rewards)
        assert {epoch for _, epoch in _probed_epochs(reader)} == {EPOCH}

    @pytest.mark.asyncio
    async def test_probes_adjacent_epochs_for_empty_amounts(self, chain_reader) -> None:
        amounts = {
            (TOKEN_X, EPOCH - WEEK_SECONDS): 123,
            (TOKEN_Y, EPOCH): 55,
            (TOKEN_Y, EPOCH + WEEK_SECONDS): 999,
        }
        reader = chain_reader(_handlers(amounts), latest_timestamp=NOW)

        (gauge,) = await _aggregator(reader).fetch_incentives(probe_adjacent_epochs=True)

        x, y = gauge.rewards
        assert (x.amount, x.previous_epoch_amount, x.next_epoch_amount) == (0, 123, None)
        # A non-zero current amount is never probed.
        assert (y.amount, y.previous_epoch_amount, y.next_epoch_amount) == (55, None, None)
        assert sorted(_probed_epochs(reader)) == sorted(
            [
                (TOKEN_X, EPOCH),
                (TOKEN_Y, EPOCH),
                (TOKEN_X, EPOCH - WEEK_SECONDS),
                (TOKEN_X, EPOCH + WEEK_SECONDS),
            ]
        )

    @pytest.mark.asyncio
    async def test_skips_previous_epoch_before_first(self, chain_reader) -> None:
        long_duration = NOW + 1
        reader = chain_reader(_handlers({}, duration=long_duration), latest_timestamp=NOW)

        (gauge,) = await _aggregator(reader).fetch_incentives(probe_adjacent_epochs=True)

        assert gauge.epoch_start == 0
        assert {epoch for _, epoch in _probed_epochs(reader)} == {0, long_duration}

    @pytest.mark.asyncio
    async def test_failed_amount_reads_as_zero(self, chain_reader) -> None:
        handlers = _handlers({})
        handlers[abi.BRIBE_TOKEN_REWARDS_PER_EPOCH["name"]] = RuntimeError("reverted")
        reader = chain_reader(handlers, latest_timestamp=NOW)

        (gauge,) = await _aggregator(reader).fetch_incentives(probe_adjacent_epochs=True)

        assert [r.amount for r in gauge.rewards] == [0, 0]
        assert all(r.previous_epoch_amount is None for r in gauge.rewards)

    @pytest.mark.asyncio
    async def test_no_pools(self, chain_reader) -> None:
        reader = chain_reader({abi.ALL_POOLS_LENGTH["name"]: 0})

        assert await _aggregator(reader).fetch_incentives() == []


class TestVotingReads:
    @pytest.mark.asyncio
    async def test_epoch_timing_uses_latest_block(self, chain_reader) -> None:
        reader = chain_reader(
            {
                abi.VOTER_EPOCH_START["name"]: lambda c: epoch_start_for(c.args[0], WEEK_SECONDS),
                abi.VOTER_EPOCH_NEXT["name"]: lambda c: epoch_start_for(c.args[0], WEEK_SECONDS) + WEEK_SECONDS,
                abi.VOTER_EPOCH_VOTE_END["name"]: RuntimeError("reverted"),
            },
            latest_timestamp=NOW,
        )

        timing = await _aggregator(reader).get_epoch_timing()

        assert timing.epoch_start == EPOCH
        assert timing.epoch_end == EPOCH + WEEK_SECONDS
        assert timing.vote_end == 0

    @pytest.mark.asyncio
    async def test_historical_supply_failure_is_none(self, chain_reader) -> None:
        reader = chain_reader({abi.VE_TOTAL_VOTING_POWER_AT["name"]: RuntimeError("reverted")})

        assert await _aggregator(reader).get_total_ve_supply_at(EPOCH) is None

    @pytest.mark.asyncio
    async def test_supply_at_epoch_start(self, chain_reader) -> None:
        reader = chain_reader(
            {abi.VE_TOTAL_VOTING_POWER_AT["name"]: lambda c: c.args[0] * 2},
            latest_timestamp=NOW,
        )

        assert await _aggregator(reader).get_total_ve_supply_at_epoch_start() == EPOCH * 2
