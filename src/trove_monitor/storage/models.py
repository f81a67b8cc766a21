"""SQLAlchemy models for persistent storage.

This module defines the database schema for trove positions, protocol
events, price feeds, system snapshots, gauge incentives, bridge balances
and the indexer watermark.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TroveModel(Base):
    """Current trove universe; fully replaced on every pass."""

    __tablename__ = "troves"

    owner: Mapped[str] = mapped_column(String(42), primary_key=True)
    collateral: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    principal_debt: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    interest: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    collateralization_ratio: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (Index("idx_troves_ratio", "collateralization_ratio"),)


class LiquidationModel(Base):
    """TroveLiquidated events, keyed by `tx_hash:log_index`."""

    __tablename__ = "liquidations"

    id: Mapped[str] = mapped_column(String(80), primary_key=True)
    borrower: Mapped[str] = mapped_column(String(42), nullable=False)
    debt: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    collateral: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    operation: Mapped[int] = mapped_column(Integer, nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    tx_status: Mapped[str] = mapped_column(String(10), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_liquidations_block", "block_number", "log_index"),
        Index("idx_liquidations_borrower", "borrower"),
    )


class RedemptionModel(Base):
    """Redemption events, keyed by `tx_hash:log_index`."""

    __tablename__ = "redemptions"

    id: Mapped[str] = mapped_column(String(80), primary_key=True)
    attempted_amount: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    actual_amount: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    collateral_sent: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    collateral_fee: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    # JSON list of lowercase addresses, NULL when none were decoded.
    affected_borrowers_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    tx_status: Mapped[str] = mapped_column(String(10), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (Index("idx_redemptions_block", "block_number", "log_index"),)


class IndexerStateModel(Base):
    """Key/value watermark rows (key `latest_block`)."""

    __tablename__ = "indexer_state"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class PriceFeedModel(Base):
    """Price samples per named source."""

    __tablename__ = "price_feeds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (Index("idx_price_feeds_source_block", "source", "block_number"),)


class SystemSnapshotModel(Base):
    """Append-only system aggregate time series."""

    __tablename__ = "system_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collateral: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    debt: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    tcr: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    btc_price: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    musd_to_usdc_price: Mapped[Decimal | None] = mapped_column(Numeric(38, 18), nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (Index("idx_system_snapshots_recorded_at", "recorded_at"),)


class SystemMetricsDailyModel(Base):
    """One aggregate row per UTC day (last write of the day wins)."""

    __tablename__ = "system_metrics_daily"

    day: Mapped[date] = mapped_column(Date, primary_key=True)
    trove_count: Mapped[int] = mapped_column(Integer, nullable=False)
    collateral: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    debt: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    tcr: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    btc_price: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class BridgeAssetModel(Base):
    """Bridge custody balance per bridged token."""

    __tablename__ = "bridge_assets"

    token_symbol: Mapped[str] = mapped_column(String(32), primary_key=True)
    ethereum_symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    mezo_address: Mapped[str] = mapped_column(String(42), nullable=False)
    ethereum_address: Mapped[str] = mapped_column(String(42), nullable=False)
    bridge_address: Mapped[str] = mapped_column(String(42), nullable=False)
    decimals: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_raw: Mapped[Decimal] = mapped_column(Numeric(78, 0), nullable=False)
    balance_formatted: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class GaugeStateModel(Base):
    """Singleton (key `current`) epoch and voting-power summary."""

    __tablename__ = "gauge_state"

    key: Mapped[str] = mapped_column(String(32), primary_key=True)
    epoch_end: Mapped[int] = mapped_column(BigInteger, nullable=False)
    vote_end: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # Raw uint256 voting-power values.
    ve_supply_live: Mapped[Decimal] = mapped_column(Numeric(78, 0), nullable=False)
    total_votes_snapshot: Mapped[Decimal] = mapped_column(Numeric(78, 0), nullable=False)
    total_votes_tracked: Mapped[Decimal] = mapped_column(Numeric(78, 0), nullable=False)
    ve_supply_epoch_start: Mapped[Decimal] = mapped_column(Numeric(78, 0), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class GaugeModel(Base):
    """Per-gauge vote weight and bribe rewards, overwritten each pass."""

    __tablename__ = "gauges"

    gauge: Mapped[str] = mapped_column(String(42), primary_key=True)
    pool: Mapped[str] = mapped_column(String(42), nullable=False)
    pool_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    bribe: Mapped[str | None] = mapped_column(String(42), nullable=True)
    votes: Mapped[Decimal] = mapped_column(Numeric(78, 0), nullable=False)
    duration: Mapped[int] = mapped_column(BigInteger, nullable=False)
    epoch_start: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # JSON list of {token, amount, epoch_start, previous_epoch_amount?, next_epoch_amount?}
    bribes_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (Index("idx_gauges_pool", "pool"),)
