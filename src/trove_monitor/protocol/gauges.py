"""Voting gauge and bribe incentive aggregation.

Walks PoolFactory -> Voter -> bribe contracts with chunked multicall and
reports per-gauge reward amounts for the bribe's current epoch. Rewards
credited against a neighbouring epoch (the bribe's clock and our block
timestamp can disagree around a boundary) are surfaced separately as
previous/next epoch amounts instead of replacing the current amount.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from trove_monitor.chain import abi
from trove_monitor.chain.batching import DEFAULT_MULTICALL_BATCH_SIZE, multicall_in_chunks
from trove_monitor.chain.client import CallResult, ChainReader, ContractCall, RPCError
from trove_monitor.protocol.models import EpochTiming, GaugeIncentive, GaugeReward

logger = logging.getLogger(__name__)

WEEK_SECONDS = 7 * 24 * 3600


def epoch_start_for(timestamp: int, duration: int) -> int:
    """Start of the epoch containing `timestamp`; 0 when duration is 0."""
    if duration <= 0:
        return 0
    return (timestamp // duration) * duration


@dataclass
class _BribeMeta:
    duration: int
    epoch_start: int
    tokens: list[str] = field(default_factory=list)


class GaugeIncentiveAggregator:
    """Reads gauges, votes and bribe rewards for every pool.

    Example:
        ```python
        gauges = GaugeIncentiveAggregator(reader, pool_factory=pf, voter=voter, voting_escrow=ve)
        incentives = await gauges.fetch_incentives(probe_adjacent_epochs=True)
        timing = await gauges.get_epoch_timing()
        ```
    """

    def __init__(
        self,
        reader: ChainReader,
        *,
        pool_factory: str,
        voter: str,
        voting_escrow: str,
        batch_size: int = DEFAULT_MULTICALL_BATCH_SIZE,
    ) -> None:
        self._reader = reader
        self._pool_factory = pool_factory
        self._voter = voter
        self._voting_escrow = voting_escrow
        self._batch_size = batch_size

    async def _multicall(self, calls: list[ContractCall]) -> list[CallResult]:
        return await multicall_in_chunks(self._reader, calls, batch_size=self._batch_size)

    async def _now(self) -> int:
        latest = await self._reader.get_latest_block()
        return int(latest["timestamp"])

    async def fetch_incentives(self, *, probe_adjacent_epochs: bool = False) -> list[GaugeIncentive]:
        """Return one GaugeIncentive per pool that has a gauge."""
        count = int(await self._reader.call(ContractCall(self._pool_factory, abi.ALL_POOLS_LENGTH)))
        if count == 0:
            return []

        pool_results = await self._multicall(
            [ContractCall(self._pool_factory, abi.ALL_POOLS, (i,)) for i in range(count)]
        )
        pools = [str(r.value) for r in pool_results if r.success]

        name_results = await self._multicall([ContractCall(pool, abi.POOL_NAME) for pool in pools])
        names = {pool: str(r.value) for pool, r in zip(pools, name_results, strict=True) if r.success}

        gauge_results = await self._multicall(
            [
                ContractCall(self._voter, fn, (pool,))
                for pool in pools
                for fn in (abi.VOTER_GAUGES, abi.VOTER_WEIGHTS)
            ]
        )
        gauged: list[tuple[str, str, int]] = []
        for i, pool in enumerate(pools):
            gauge_result, weight_result = gauge_results[2 * i], gauge_results[2 * i + 1]
            if not gauge_result.success or int(gauge_result.value, 16) == 0:
                continue
            votes = int(weight_result.value) if weight_result.success else 0
            gauged.append((pool, str(gauge_result.value), votes))
        if not gauged:
            return []

        bribe_results = await self._multicall(
            [ContractCall(self._voter, abi.VOTER_GAUGE_TO_BRIBE, (gauge,)) for _, gauge, _ in gauged]
        )
        bribes: dict[str, str | None] = {}
        for (_, gauge, _), r in zip(gauged, bribe_results, strict=True):
            bribes[gauge] = str(r.value) if r.success and int(r.value, 16) != 0 else None

        meta = await self._bribe_meta(sorted({b for b in bribes.values() if b}))
        rewards = await self._bribe_rewards(meta, probe_adjacent_epochs=probe_adjacent_epochs)

        incentives: list[GaugeIncentive] = []
        for pool, gauge, votes in gauged:
            bribe = bribes[gauge]
            bribe_meta = meta.get(bribe) if bribe else None
            incentives.append(
                GaugeIncentive(
                    pool=pool,
                    pool_name=names.get(pool),
                    gauge=gauge,
                    bribe=bribe,
                    votes=votes,
                    duration=bribe_meta.duration if bribe_meta else 0,
                    epoch_start=bribe_meta.epoch_start if bribe_meta else 0,
                    rewards=tuple(rewards.get(bribe, [])) if bribe else (),
                )
            )
        logger.info("Gauge incentives: %d gauges across %d pools", len(incentives), len(pools))
        return incentives

    async def _bribe_meta(self, bribes: list[str]) -> dict[str, _BribeMeta]:
        if not bribes:
            return {}
        results = await self._multicall(
            [
                ContractCall(bribe, fn)
                for bribe in bribes
                for fn in (abi.BRIBE_REWARDS_LIST_LENGTH, abi.BRIBE_DURATION)
            ]
        )
        now = await self._now()

        meta: dict[str, _BribeMeta] = {}
        lengths: dict[str, int] = {}
        for i, bribe in enumerate(bribes):
            length_result, duration_result = results[2 * i], results[2 * i + 1]
            if not (length_result.success and duration_result.success):
                logger.debug("Skipping bribe %s: metadata unavailable", bribe)
                continue
            duration = int(duration_result.value)
            meta[bribe] = _BribeMeta(duration=duration, epoch_start=epoch_start_for(now, duration))
            lengths[bribe] = int(length_result.value)

        token_calls = [
            (bribe, ContractCall(bribe, abi.BRIBE_REWARDS, (i,)))
            for bribe, length in lengths.items()
            for i in range(length)
        ]
        token_results = await self._multicall([c for _, c in token_calls])
        for (bribe, _), r in zip(token_calls, token_results, strict=True):
            if r.success and int(r.value, 16) != 0:
                meta[bribe].tokens.append(str(r.value))
        return meta

    async def _bribe_rewards(
        self,
        meta: dict[str, _BribeMeta],
        *,
        probe_adjacent_epochs: bool,
    ) -> dict[str, list[GaugeReward]]:
        pairs = [(bribe, token) for bribe, m in meta.items() for token in m.tokens]
        if not pairs:
            return {}

        amount_results = await self._multicall(
            [
                ContractCall(bribe, abi.BRIBE_TOKEN_REWARDS_PER_EPOCH, (token, meta[bribe].epoch_start))
                for bribe, token in pairs
            ]
        )
        amounts = [int(r.value) if r.success else 0 for r in amount_results]

        # (pair index, "previous"/"next") -> probe call
        probes: list[tuple[int, str, ContractCall]] = []
        if probe_adjacent_epochs:
            for i, (bribe, token) in enumerate(pairs):
                m = meta[bribe]
                if amounts[i] != 0 or m.duration == 0:
                    continue
                if m.epoch_start >= m.duration:
                    probes.append(
                        (i, "previous", ContractCall(bribe, abi.BRIBE_TOKEN_REWARDS_PER_EPOCH, (token, m.epoch_start - m.duration)))
                    )
                probes.append(
                    (i, "next", ContractCall(bribe, abi.BRIBE_TOKEN_REWARDS_PER_EPOCH, (token, m.epoch_start + m.duration)))
                )

        adjacent: dict[tuple[int, str], int] = {}
        if probes:
            probe_results = await self._multicall([c for _, _, c in probes])
            for (i, side, _), r in zip(probes, probe_results, strict=True):
                if r.success and int(r.value) != 0:
                    adjacent[(i, side)] = int(r.value)

        rewards: dict[str, list[GaugeReward]] = {}
        for i, (bribe, token) in enumerate(pairs):
            rewards.setdefault(bribe, []).append(
                GaugeReward(
                    token=token,
                    amount=amounts[i],
                    epoch_start=meta[bribe].epoch_start,
                    previous_epoch_amount=adjacent.get((i, "previous")),
                    next_epoch_amount=adjacent.get((i, "next")),
                )
            )
        return rewards

    async def get_epoch_timing(self) -> EpochTiming:
        """Voter epoch boundaries relative to the latest block timestamp (0 on failure)."""
        now = await self._now()
        results = await self._reader.multicall(
            [
                ContractCall(self._voter, abi.VOTER_EPOCH_START, (now,)),
                ContractCall(self._voter, abi.VOTER_EPOCH_NEXT, (now,)),
                ContractCall(self._voter, abi.VOTER_EPOCH_VOTE_END, (now,)),
            ]
        )
        start, end, vote_end = (int(r.value) if r.success else 0 for r in results)
        return EpochTiming(epoch_start=start, epoch_end=end, vote_end=vote_end)

    async def get_total_voting_power(self) -> int:
        """Total vote weight cast across all gauges."""
        return int(await self._reader.call(ContractCall(self._voter, abi.VOTER_TOTAL_WEIGHT)))

    async def get_total_ve_supply(self) -> int:
        return int(await self._reader.call(ContractCall(self._voting_escrow, abi.VE_TOTAL_VOTING_POWER)))

    async def get_total_ve_supply_at(self, timestamp: int) -> int | None:
        """Voting-power supply at a past timestamp, or None if the read fails."""
        try:
            return int(
                await self._reader.call(ContractCall(self._voting_escrow, abi.VE_TOTAL_VOTING_POWER_AT, (timestamp,)))
            )
        except RPCError as e:
            logger.warning("Failed to read ve supply at %d: %s", timestamp, e)
            return None

    async def get_total_ve_supply_at_epoch_start(self, duration: int = WEEK_SECONDS) -> int | None:
        now = await self._now()
        return await self.get_total_ve_supply_at(epoch_start_for(now, duration))
