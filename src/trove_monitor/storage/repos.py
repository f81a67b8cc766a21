"""Repository pattern implementation for data access.

SnapshotRepository is the only persistence surface the indexer uses:
keyed upserts per entity, insert-or-ignore for events, the watermark, and
a small number of aggregate reads.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from trove_monitor.protocol.models import (
    BridgeAsset,
    GaugeIncentive,
    LiquidationEvent,
    RedemptionEvent,
    SystemState,
    Trove,
    UNBOUNDED_RATIO,
)
from trove_monitor.storage.models import (
    Base,
    BridgeAssetModel,
    GaugeModel,
    GaugeStateModel,
    IndexerStateModel,
    LiquidationModel,
    PriceFeedModel,
    RedemptionModel,
    SystemMetricsDailyModel,
    SystemSnapshotModel,
    TroveModel,
)

logger = logging.getLogger(__name__)

WATERMARK_KEY = "latest_block"
GAUGE_STATE_KEY = "current"

# Rows per INSERT statement (keeps SQLite under its bound-parameter limit).
UPSERT_BATCH_SIZE = 500


def _ts(value: int) -> datetime:
    return datetime.fromtimestamp(int(value), tz=UTC)


def _finite(value: Decimal) -> Decimal:
    return value if value.is_finite() else Decimal(0)


@dataclass
class TroveDTO:
    """Data transfer object for stored troves."""

    owner: str
    collateral: Decimal
    principal_debt: Decimal
    interest: Decimal
    collateralization_ratio: Decimal
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TroveModel) -> TroveDTO:
        return cls(
            owner=model.owner,
            collateral=model.collateral,
            principal_debt=model.principal_debt,
            interest=model.interest,
            collateralization_ratio=model.collateralization_ratio,
            updated_at=model.updated_at,
        )


@dataclass
class PriceFeedDTO:
    """Data transfer object for price samples."""

    source: str
    price: Decimal
    block_number: int
    recorded_at: datetime

    @classmethod
    def from_model(cls, model: PriceFeedModel) -> PriceFeedDTO:
        return cls(
            source=model.source,
            price=model.price,
            block_number=model.block_number,
            recorded_at=model.recorded_at,
        )


@dataclass
class GaugeStateDTO:
    """Epoch and voting-power summary (singleton row)."""

    epoch_end: int
    vote_end: int
    ve_supply_live: int
    total_votes_snapshot: int
    total_votes_tracked: int
    ve_supply_epoch_start: int


class SnapshotRepository:
    """Persistence operations for one indexing pass."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _insert(self, model: type[Base]) -> Any:
        if self.session.get_bind().dialect.name == "postgresql":
            return pg_insert(model)
        return sqlite_insert(model)

    async def _upsert(
        self,
        model: type[Base],
        rows: Sequence[dict[str, Any]],
        *,
        key: str,
        update: bool = True,
    ) -> int:
        """Insert `rows` in batches; returns the number of rows written.

        With `update=False` conflicting rows are skipped and not counted.
        """
        written = 0
        for start in range(0, len(rows), UPSERT_BATCH_SIZE):
            batch = list(rows[start : start + UPSERT_BATCH_SIZE])
            stmt = self._insert(model).values(batch)
            if update:
                columns = [c for c in batch[0] if c != key]
                stmt = stmt.on_conflict_do_update(
                    index_elements=[key],
                    set_={c: getattr(stmt.excluded, c) for c in columns},
                )
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=[key])
            result = await self.session.execute(stmt)
            written += max(result.rowcount, 0)
        return written

    # ------------------------------------------------------------------
    # Troves
    # ------------------------------------------------------------------

    async def upsert_troves(self, troves: Sequence[Trove], *, now: datetime | None = None) -> int:
        """Replace the stored trove set with `troves`.

        Owners not present in `troves` are deleted; an empty input clears
        the table.

        Returns:
            Number of troves stored.
        """
        now = now or datetime.now(UTC)
        if not troves:
            await self.session.execute(delete(TroveModel))
            await self.session.flush()
            logger.info("Trove set is empty; cleared stored troves")
            return 0

        rows: dict[str, dict[str, Any]] = {}
        for trove in troves:
            owner = trove.owner.lower()
            rows[owner] = {
                "owner": owner,
                "collateral": trove.collateral,
                "principal_debt": trove.principal_debt,
                "interest": trove.interest,
                "collateralization_ratio": _finite(trove.collateralization_ratio),
                "updated_at": now,
            }
        await self._upsert(TroveModel, list(rows.values()), key="owner")

        result = await self.session.execute(delete(TroveModel).where(TroveModel.owner.notin_(list(rows))))
        await self.session.flush()
        pruned = result.rowcount or 0
        if pruned:
            logger.info("Pruned %d stale troves", pruned)
        return len(rows)

    async def list_troves(self) -> list[TroveDTO]:
        result = await self.session.execute(select(TroveModel).order_by(TroveModel.owner))
        return [TroveDTO.from_model(m) for m in result.scalars().all()]

    # ------------------------------------------------------------------
    # Events (insert-or-ignore by tx_hash:log_index)
    # ------------------------------------------------------------------

    async def upsert_liquidations(self, events: Sequence[LiquidationEvent]) -> int:
        if not events:
            return 0
        rows = [
            {
                "id": e.event_id,
                "borrower": e.borrower.lower(),
                "debt": e.debt,
                "collateral": e.collateral,
                "operation": e.operation,
                "tx_hash": e.tx_hash,
                "block_number": e.block_number,
                "log_index": e.log_index,
                "block_timestamp": _ts(e.timestamp),
                "tx_status": e.status,
            }
            for e in events
        ]
        inserted = await self._upsert(LiquidationModel, rows, key="id", update=False)
        await self.session.flush()
        return inserted

    async def upsert_redemptions(self, events: Sequence[RedemptionEvent]) -> int:
        if not events:
            return 0
        rows = [
            {
                "id": e.event_id,
                "attempted_amount": e.attempted_amount,
                "actual_amount": e.actual_amount,
                "collateral_sent": e.collateral_sent,
                "collateral_fee": e.collateral_fee,
                "affected_borrowers_json": (
                    json.dumps([b.lower() for b in e.affected_borrowers]) if e.affected_borrowers else None
                ),
                "tx_hash": e.tx_hash,
                "block_number": e.block_number,
                "log_index": e.log_index,
                "block_timestamp": _ts(e.timestamp),
                "tx_status": e.status,
            }
            for e in events
        ]
        inserted = await self._upsert(RedemptionModel, rows, key="id", update=False)
        await self.session.flush()
        return inserted

    async def count_events(self) -> tuple[int, int]:
        """(liquidations, redemptions) stored."""
        liquidations = await self.session.scalar(select(func.count()).select_from(LiquidationModel))
        redemptions = await self.session.scalar(select(func.count()).select_from(RedemptionModel))
        return int(liquidations or 0), int(redemptions or 0)

    # ------------------------------------------------------------------
    # Watermark
    # ------------------------------------------------------------------

    async def get_watermark(self) -> int | None:
        model = await self.session.get(IndexerStateModel, WATERMARK_KEY)
        return int(model.block_number) if model is not None else None

    async def set_watermark(self, block_number: int, *, now: datetime | None = None) -> None:
        now = now or datetime.now(UTC)
        await self._upsert(
            IndexerStateModel,
            [{"key": WATERMARK_KEY, "block_number": int(block_number), "updated_at": now}],
            key="key",
        )
        await self.session.flush()

    # ------------------------------------------------------------------
    # Price feeds
    # ------------------------------------------------------------------

    async def record_price(
        self,
        price: Decimal,
        source: str,
        block_number: int,
        *,
        now: datetime | None = None,
    ) -> None:
        self.session.add(
            PriceFeedModel(
                source=source,
                price=price,
                block_number=int(block_number),
                recorded_at=now or datetime.now(UTC),
            )
        )
        await self.session.flush()

    async def get_last_price_block(self, source: str) -> int | None:
        value = await self.session.scalar(
            select(func.max(PriceFeedModel.block_number)).where(PriceFeedModel.source == source)
        )
        return int(value) if value is not None else None

    async def list_prices(self, source: str) -> list[PriceFeedDTO]:
        result = await self.session.execute(
            select(PriceFeedModel).where(PriceFeedModel.source == source).order_by(PriceFeedModel.block_number)
        )
        return [PriceFeedDTO.from_model(m) for m in result.scalars().all()]

    async def average_price_since(self, since: datetime) -> Decimal | None:
        """Unweighted mean of snapshot reference prices recorded at or after `since`."""
        result = await self.session.execute(
            select(SystemSnapshotModel.musd_to_usdc_price).where(
                SystemSnapshotModel.recorded_at >= since,
                SystemSnapshotModel.musd_to_usdc_price.is_not(None),
            )
        )
        prices = [Decimal(p) for p in result.scalars().all()]
        if not prices:
            return None
        return sum(prices, Decimal(0)) / len(prices)

    # ------------------------------------------------------------------
    # System aggregates
    # ------------------------------------------------------------------

    async def store_snapshot(
        self,
        state: SystemState,
        *,
        musd_to_usdc_price: Decimal | None,
        now: datetime | None = None,
    ) -> None:
        self.session.add(
            SystemSnapshotModel(
                collateral=state.collateral,
                debt=state.debt,
                tcr=_finite(state.ratio),
                btc_price=state.btc_price,
                musd_to_usdc_price=musd_to_usdc_price,
                recorded_at=now or datetime.now(UTC),
            )
        )
        await self.session.flush()

    async def store_daily_metric(
        self,
        state: SystemState,
        *,
        trove_count: int,
        now: datetime | None = None,
    ) -> date:
        now = now or datetime.now(UTC)
        day = now.astimezone(UTC).date()
        await self._upsert(
            SystemMetricsDailyModel,
            [
                {
                    "day": day,
                    "trove_count": trove_count,
                    "collateral": state.collateral,
                    "debt": state.debt,
                    "tcr": _finite(min(state.ratio, UNBOUNDED_RATIO)),
                    "btc_price": state.btc_price,
                    "updated_at": now,
                }
            ],
            key="day",
        )
        await self.session.flush()
        return day

    # ------------------------------------------------------------------
    # Bridge / gauges
    # ------------------------------------------------------------------

    async def upsert_bridge_assets(self, assets: Sequence[BridgeAsset], *, now: datetime | None = None) -> int:
        if not assets:
            return 0
        now = now or datetime.now(UTC)
        rows = [
            {
                "token_symbol": a.token_symbol,
                "ethereum_symbol": a.ethereum_symbol,
                "mezo_address": a.mezo_address.lower(),
                "ethereum_address": a.ethereum_address.lower(),
                "bridge_address": a.bridge_address.lower(),
                "decimals": a.decimals,
                "balance_raw": Decimal(a.balance_raw),
                "balance_formatted": a.balance_formatted,
                "updated_at": now,
            }
            for a in assets
        ]
        await self._upsert(BridgeAssetModel, rows, key="token_symbol")
        await self.session.flush()
        return len(rows)

    async def upsert_gauge_state(self, state: GaugeStateDTO, *, now: datetime | None = None) -> None:
        await self._upsert(
            GaugeStateModel,
            [
                {
                    "key": GAUGE_STATE_KEY,
                    "epoch_end": state.epoch_end,
                    "vote_end": state.vote_end,
                    "ve_supply_live": Decimal(state.ve_supply_live),
                    "total_votes_snapshot": Decimal(state.total_votes_snapshot),
                    "total_votes_tracked": Decimal(state.total_votes_tracked),
                    "ve_supply_epoch_start": Decimal(state.ve_supply_epoch_start),
                    "updated_at": now or datetime.now(UTC),
                }
            ],
            key="key",
        )
        await self.session.flush()

    async def get_gauge_state(self) -> GaugeStateDTO | None:
        model = await self.session.get(GaugeStateModel, GAUGE_STATE_KEY)
        if model is None:
            return None
        return GaugeStateDTO(
            epoch_end=model.epoch_end,
            vote_end=model.vote_end,
            ve_supply_live=int(model.ve_supply_live),
            total_votes_snapshot=int(model.total_votes_snapshot),
            total_votes_tracked=int(model.total_votes_tracked),
            ve_supply_epoch_start=int(model.ve_supply_epoch_start),
        )

    async def upsert_gauges(self, incentives: Sequence[GaugeIncentive], *, now: datetime | None = None) -> int:
        if not incentives:
            return 0
        now = now or datetime.now(UTC)
        rows: dict[str, dict[str, Any]] = {}
        for g in incentives:
            bribes = [
                {
                    "token": r.token.lower(),
                    "amount": str(r.amount),
                    "epoch_start": r.epoch_start,
                    **({"previous_epoch_amount": str(r.previous_epoch_amount)} if r.previous_epoch_amount is not None else {}),
                    **({"next_epoch_amount": str(r.next_epoch_amount)} if r.next_epoch_amount is not None else {}),
                }
                for r in g.rewards
            ]
            gauge = g.gauge.lower()
            rows[gauge] = {
                "gauge": gauge,
                "pool": g.pool.lower(),
                "pool_name": g.pool_name,
                "bribe": g.bribe.lower() if g.bribe else None,
                "votes": Decimal(g.votes),
                "duration": g.duration,
                "epoch_start": g.epoch_start,
                "bribes_json": json.dumps(bribes),
                "updated_at": now,
            }
        await self._upsert(GaugeModel, list(rows.values()), key="gauge")
        await self.session.flush()
        return len(rows)
