"""One synchronization pass of the trove monitor.

A pass reads current protocol state, persists it, scans liquidation and
redemption events since the last watermark, records price samples, and
advances the watermark as its final step. A pass that fails anywhere
leaves the watermark untouched, so the next invocation repeats the work.

Example:
    ```python
    from trove_monitor.config import get_settings
    from trove_monitor.indexer import build_indexer

    indexer = build_indexer(get_settings())
    try:
        state = await indexer.run()
    finally:
        await indexer.aclose()
    ```
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any, Generic, Literal, TypeVar

from redis.asyncio import Redis

from trove_monitor.chain.client import ChainReader
from trove_monitor.chain.events import EventLogScanner
from trove_monitor.config import Settings
from trove_monitor.protocol.bridge import BridgeAssetFetcher
from trove_monitor.protocol.gauges import GaugeIncentiveAggregator
from trove_monitor.protocol.models import from_units
from trove_monitor.protocol.quotes import SwapQuote, SwapQuoteClient
from trove_monitor.protocol.redemption import (
    RecoveryModeBlockedError,
    RedemptionHintEngine,
    ensure_redemptions_allowed,
)
from trove_monitor.protocol.troves import TroveReader
from trove_monitor.storage.database import DatabaseManager
from trove_monitor.storage.repos import GaugeStateDTO, SnapshotRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

SOURCE_BTC_ORACLE = "btc_oracle"
SOURCE_MUSD_USDC = "musd_usdc"
SOURCE_MUSD_USDC_AVERAGE = "musd_usdc_4h"


@dataclass(frozen=True)
class SyncState:
    """Last block fully processed; None before the first successful pass."""

    last_block: int | None = None


@dataclass
class FetchResult(Generic[T]):
    """Outcome of one independent fetch in a pass."""

    name: str
    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


async def gather_results(fetches: dict[str, Awaitable[Any]]) -> dict[str, FetchResult[Any]]:
    """Run `fetches` concurrently and capture each outcome by name."""
    names = list(fetches)
    outcomes = await asyncio.gather(*fetches.values(), return_exceptions=True)
    results: dict[str, FetchResult[Any]] = {}
    for name, outcome in zip(names, outcomes, strict=True):
        if isinstance(outcome, BaseException):
            if not isinstance(outcome, Exception):
                raise outcome
            results[name] = FetchResult(name=name, error=outcome)
        else:
            results[name] = FetchResult(name=name, value=outcome)
    return results


def resolve_scan_start(
    watermark: int | None,
    current_block: int,
    *,
    environment: Literal["dev", "prod"],
    lookback_blocks: int,
) -> int:
    """First block to scan for events.

    Resumes at `watermark + 1`. Without a watermark, prod looks back
    `lookback_blocks` (inclusive of the head) and dev treats the block
    before the head as the watermark, so it scans only the head. Never
    below 0; may exceed `current_block` (empty scan).
    """
    if watermark is not None:
        return watermark + 1
    if environment == "dev":
        return max(current_block, 0)
    return max(current_block - lookback_blocks + 1, 0)


@dataclass
class PassStats:
    """Counters for one pass, for logging and tests."""

    from_block: int = 0
    to_block: int = 0
    troves: int = 0
    liquidations: int = 0
    redemptions: int = 0
    gauges: int = 0
    bridge_assets: int = 0
    reference_price: Decimal | None = None
    price_samples: list[str] = field(default_factory=list)
    average_price: Decimal | None = None
    redeemable_amount: int | None = None


class Indexer:
    """Sequences one pass over the injected readers and the store."""

    def __init__(
        self,
        settings: Settings,
        *,
        reader: ChainReader,
        troves: TroveReader,
        gauges: GaugeIncentiveAggregator,
        bridge: BridgeAssetFetcher,
        quotes: SwapQuoteClient,
        db_manager: DatabaseManager,
        redemption_engine: RedemptionHintEngine | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._settings = settings
        self._reader = reader
        self._troves = troves
        self._gauges = gauges
        self._bridge = bridge
        self._quotes = quotes
        self._db = db_manager
        self._redemption_engine = redemption_engine
        self._clock = clock
        self.last_stats: PassStats | None = None

    async def load_state(self) -> SyncState:
        async with self._db.get_async_session() as session:
            return SyncState(last_block=await SnapshotRepository(session).get_watermark())

    async def _read_watermark(self) -> int | None:
        return (await self.load_state()).last_block

    async def _persist(self, write: Callable[[SnapshotRepository], Awaitable[Any]]) -> Any:
        async with self._db.get_async_session() as session:
            return await write(SnapshotRepository(session))

    async def run(self, state: SyncState | None = None) -> SyncState:
        """Run one pass and return the advanced state.

        When `state` is None the watermark is read from the store.

        Raises:
            RPCError: If a required chain read fails.
            SQLAlchemyError: If a write fails.
        """
        cfg = self._settings.indexer
        stats = PassStats()
        now = self._clock()

        # 1. Oracle price.
        price_raw = await self._troves.get_price_raw()
        btc_price = from_units(price_raw)

        # 2. Independent reads.
        fetches: dict[str, Awaitable[Any]] = {
            "block_number": self._reader.get_block_number(),
            "system": self._troves.get_system_state(btc_price),
            "troves": self._troves.get_troves(btc_price),
            "quote": self._quotes.get_musd_sell_quote(self._settings.quote.sell_amount),
            "bridge": self._bridge.fetch_assets(),
            "incentives": self._gauges.fetch_incentives(probe_adjacent_epochs=True),
            "epoch_timing": self._gauges.get_epoch_timing(),
            "total_votes": self._gauges.get_total_voting_power(),
            "ve_supply": self._gauges.get_total_ve_supply(),
            "ve_supply_epoch_start": self._gauges.get_total_ve_supply_at_epoch_start(),
        }
        if state is None:
            fetches["watermark"] = self._read_watermark()
        results = await gather_results(fetches)

        quote_result = results["quote"]
        quote: SwapQuote | None = None
        if quote_result.ok:
            quote = quote_result.value
        else:
            logger.warning("Swap quote unavailable, snapshot has no reference price: %s", quote_result.error)

        bridge_result = results["bridge"]
        bridge_assets = bridge_result.value if bridge_result.ok else []
        if not bridge_result.ok:
            logger.warning("Bridge balance read failed, skipping bridge assets: %s", bridge_result.error)

        ve_start_result = results["ve_supply_epoch_start"]
        ve_supply_epoch_start = (ve_start_result.value if ve_start_result.ok else None) or 0

        for name in ("block_number", "system", "troves", "incentives", "epoch_timing", "total_votes", "ve_supply"):
            results[name].unwrap()
        watermark = results["watermark"].unwrap() if state is None else state.last_block

        current_block: int = results["block_number"].value
        system = results["system"].value
        troves = results["troves"].value
        incentives = results["incentives"].value
        timing = results["epoch_timing"].value

        # 3. Snapshot.
        reference_price = quote.price if quote is not None else None
        stats.reference_price = reference_price
        stats.troves = len(troves)
        stats.gauges = len(incentives)
        stats.bridge_assets = len(bridge_assets)

        gauge_state = GaugeStateDTO(
            epoch_end=timing.epoch_end,
            vote_end=timing.vote_end,
            ve_supply_live=results["ve_supply"].value,
            total_votes_snapshot=results["total_votes"].value,
            total_votes_tracked=sum(g.votes for g in incentives),
            ve_supply_epoch_start=ve_supply_epoch_start,
        )

        # 4. Persist current state, one session per branch.
        writes: dict[str, Awaitable[Any]] = {
            "troves": self._persist(lambda repo: repo.upsert_troves(troves, now=now)),
            "snapshot": self._persist(
                lambda repo: repo.store_snapshot(system, musd_to_usdc_price=reference_price, now=now)
            ),
            "daily_metric": self._persist(
                lambda repo: repo.store_daily_metric(system, trove_count=len(troves), now=now)
            ),
            "gauge_state": self._persist(lambda repo: repo.upsert_gauge_state(gauge_state, now=now)),
            "gauges": self._persist(lambda repo: repo.upsert_gauges(incentives, now=now)),
        }
        if bridge_assets:
            writes["bridge_assets"] = self._persist(lambda repo: repo.upsert_bridge_assets(bridge_assets, now=now))
        elif bridge_result.ok:
            logger.warning("No bridge assets with a non-zero balance")
        for result in (await gather_results(writes)).values():
            result.unwrap()

        logger.info(
            "Stored %d troves, %d gauges, %d bridge assets (TCR %s, BTC %s)",
            stats.troves,
            stats.gauges,
            stats.bridge_assets,
            system.ratio,
            btc_price,
        )

        # 5. Events since the watermark.
        from_block = resolve_scan_start(
            watermark,
            current_block,
            environment=cfg.environment,
            lookback_blocks=cfg.lookback_blocks,
        )
        stats.from_block, stats.to_block = from_block, current_block
        scans = await gather_results(
            {
                "liquidations": self._troves.get_liquidations(
                    from_block=from_block, to_block=current_block, chunk_size=cfg.liquidation_chunk_size
                ),
                "redemptions": self._troves.get_redemptions(
                    from_block=from_block, to_block=current_block, chunk_size=cfg.redemption_chunk_size
                ),
            }
        )
        liquidations = scans["liquidations"].unwrap()
        redemptions = scans["redemptions"].unwrap()
        if liquidations:
            stats.liquidations = await self._persist(lambda repo: repo.upsert_liquidations(liquidations))
        if redemptions:
            stats.redemptions = await self._persist(lambda repo: repo.upsert_redemptions(redemptions))
        logger.info(
            "Scanned blocks %d..%d: %d liquidations, %d redemptions",
            from_block,
            current_block,
            stats.liquidations,
            stats.redemptions,
        )

        # 6. Price samples.
        await self._persist(
            lambda repo: self._record_prices(
                repo,
                btc_price=btc_price,
                reference_price=reference_price,
                current_block=current_block,
                now=now,
                stats=stats,
            )
        )

        # 7. Optional redemption probe.
        probe_amount = self._settings.redemption.probe_amount
        if self._redemption_engine is not None and probe_amount is not None:
            stats.redeemable_amount = await self._probe_redemption(
                self._redemption_engine, price_raw, probe_amount
            )

        # 8. Watermark, last.
        await self._persist(lambda repo: repo.set_watermark(current_block, now=now))
        logger.info("Watermark advanced to %d", current_block)

        self.last_stats = stats
        return SyncState(last_block=current_block)

    async def _record_prices(
        self,
        repo: SnapshotRepository,
        *,
        btc_price: Decimal,
        reference_price: Decimal | None,
        current_block: int,
        now: datetime,
        stats: PassStats,
    ) -> None:
        cfg = self._settings.indexer

        last_sample = await repo.get_last_price_block(SOURCE_BTC_ORACLE)
        if last_sample is None or current_block - last_sample >= cfg.price_sample_interval_blocks:
            await repo.record_price(btc_price, SOURCE_BTC_ORACLE, current_block, now=now)
            stats.price_samples.append(SOURCE_BTC_ORACLE)
            if reference_price is not None:
                await repo.record_price(reference_price, SOURCE_MUSD_USDC, current_block, now=now)
                stats.price_samples.append(SOURCE_MUSD_USDC)

        last_average = await repo.get_last_price_block(SOURCE_MUSD_USDC_AVERAGE)
        if last_average is not None and current_block - last_average < cfg.average_sample_interval_blocks:
            return
        window_start = now - timedelta(hours=cfg.average_window_hours)
        average = await repo.average_price_since(window_start)
        if average is None:
            logger.warning(
                "No reference price snapshots in the last %dh, skipping average sample",
                cfg.average_window_hours,
            )
            return
        await repo.record_price(average, SOURCE_MUSD_USDC_AVERAGE, current_block, now=now)
        stats.price_samples.append(SOURCE_MUSD_USDC_AVERAGE)
        stats.average_price = average

    async def _probe_redemption(
        self, engine: RedemptionHintEngine, price_raw: int, amount: Decimal
    ) -> int | None:
        tcr, recovery_mode = await self._troves.get_tcr(price_raw)
        try:
            ensure_redemptions_allowed(tcr, recovery_mode=recovery_mode)
        except RecoveryModeBlockedError as e:
            logger.warning("Skipping redemption probe: %s", e)
            return None
        hints = await engine.compute_hints(
            amount, max_iterations=self._settings.redemption.max_iterations
        )
        if not hints.redeemable:
            logger.info("Redemption probe: nothing redeemable for %s MUSD", amount)
        return hints.truncated_amount

    async def aclose(self) -> None:
        await self._quotes.aclose()
        await self._db.dispose_async()


class ManagedIndexer(Indexer):
    """Indexer that also owns its chain readers and Redis client."""

    def __init__(
        self,
        settings: Settings,
        *,
        readers: list[ChainReader],
        redis: Redis | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(settings, **kwargs)
        self._readers = readers
        self._redis = redis

    async def aclose(self) -> None:
        await super().aclose()
        for reader in self._readers:
            await reader.aclose()
        if self._redis is not None:
            await self._redis.aclose()


def build_indexer(settings: Settings) -> ManagedIndexer:
    """Wire readers, fetchers and the store from settings."""
    settings.validate_requirements(command="index")
    contracts = settings.contracts
    batch_size = settings.indexer.multicall_batch_size

    redis = Redis.from_url(settings.redis.url) if settings.redis.url else None
    mezo = ChainReader(
        settings.mezo.rpc_url,
        redis=redis,
        multicall_address=contracts.multicall3,
        cache_prefix="mezo:",
    )
    ethereum = ChainReader(
        settings.ethereum.rpc_url,
        redis=redis,
        multicall_address=contracts.multicall3,
        cache_prefix="eth:",
    )

    troves = TroveReader(
        mezo,
        EventLogScanner(mezo, lookup_batch_size=batch_size),
        trove_manager=contracts.trove_manager,
        price_feed=contracts.price_feed,
        batch_size=batch_size,
    )
    engine = None
    if settings.redemption.probe_amount is not None:
        engine = RedemptionHintEngine(
            mezo,
            troves,
            hint_helpers=contracts.hint_helpers,
            sorted_troves=contracts.sorted_troves,
            musd=contracts.musd,
        )

    return ManagedIndexer(
        settings,
        readers=[mezo, ethereum],
        redis=redis,
        reader=mezo,
        troves=troves,
        gauges=GaugeIncentiveAggregator(
            mezo,
            pool_factory=contracts.pool_factory,
            voter=contracts.voter,
            voting_escrow=contracts.voting_escrow,
            batch_size=batch_size,
        ),
        bridge=BridgeAssetFetcher(ethereum, bridge_address=contracts.bridge, batch_size=batch_size),
        quotes=SwapQuoteClient(
            settings.quote.api_url,
            quote_from=settings.quote.quote_from,
            timeout_seconds=settings.quote.timeout_seconds,
        ),
        db_manager=DatabaseManager(settings.database.url),
        redemption_engine=engine,
    )
