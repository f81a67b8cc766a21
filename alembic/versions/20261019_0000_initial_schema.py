"""Initial schema for troves, events, price feeds, snapshots, gauges and bridge assets.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _amount() -> sa.Numeric:
    return sa.Numeric(38, 18)


def _uint256() -> sa.Numeric:
    return sa.Numeric(78, 0)


def upgrade() -> None:
    # Current trove universe
    op.create_table(
        "troves",
        sa.Column("owner", sa.String(42), nullable=False),
        sa.Column("collateral", _amount(), nullable=False),
        sa.Column("principal_debt", _amount(), nullable=False),
        sa.Column("interest", _amount(), nullable=False),
        sa.Column("collateralization_ratio", _amount(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("owner"),
    )
    op.create_index("idx_troves_ratio", "troves", ["collateralization_ratio"])

    # Events keyed by tx_hash:log_index
    op.create_table(
        "liquidations",
        sa.Column("id", sa.String(80), nullable=False),
        sa.Column("borrower", sa.String(42), nullable=False),
        sa.Column("debt", _amount(), nullable=False),
        sa.Column("collateral", _amount(), nullable=False),
        sa.Column("operation", sa.Integer(), nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("block_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tx_status", sa.String(10), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_liquidations_block", "liquidations", ["block_number", "log_index"])
    op.create_index("idx_liquidations_borrower", "liquidations", ["borrower"])

    op.create_table(
        "redemptions",
        sa.Column("id", sa.String(80), nullable=False),
        sa.Column("attempted_amount", _amount(), nullable=False),
        sa.Column("actual_amount", _amount(), nullable=False),
        sa.Column("collateral_sent", _amount(), nullable=False),
        sa.Column("collateral_fee", _amount(), nullable=False),
        sa.Column("affected_borrowers_json", sa.Text(), nullable=True),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("block_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tx_status", sa.String(10), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_redemptions_block", "redemptions", ["block_number", "log_index"])

    # Watermark
    op.create_table(
        "indexer_state",
        sa.Column("key", sa.String(64), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )

    # Price samples
    op.create_table(
        "price_feeds",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("price", _amount(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_price_feeds_source_block", "price_feeds", ["source", "block_number"])

    # System aggregates
    op.create_table(
        "system_snapshots",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("collateral", _amount(), nullable=False),
        sa.Column("debt", _amount(), nullable=False),
        sa.Column("tcr", _amount(), nullable=False),
        sa.Column("btc_price", _amount(), nullable=False),
        sa.Column("musd_to_usdc_price", _amount(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_system_snapshots_recorded_at", "system_snapshots", ["recorded_at"])

    op.create_table(
        "system_metrics_daily",
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("trove_count", sa.Integer(), nullable=False),
        sa.Column("collateral", _amount(), nullable=False),
        sa.Column("debt", _amount(), nullable=False),
        sa.Column("tcr", _amount(), nullable=False),
        sa.Column("btc_price", _amount(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("day"),
    )

    # Bridge custody balances
    op.create_table(
        "bridge_assets",
        sa.Column("token_symbol", sa.String(32), nullable=False),
        sa.Column("ethereum_symbol", sa.String(32), nullable=False),
        sa.Column("mezo_address", sa.String(42), nullable=False),
        sa.Column("ethereum_address", sa.String(42), nullable=False),
        sa.Column("bridge_address", sa.String(42), nullable=False),
        sa.Column("decimals", sa.Integer(), nullable=False),
        sa.Column("balance_raw", _uint256(), nullable=False),
        sa.Column("balance_formatted", _amount(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("token_symbol"),
    )

    # Gauges
    op.create_table(
        "gauge_state",
        sa.Column("key", sa.String(32), nullable=False),
        sa.Column("epoch_end", sa.BigInteger(), nullable=False),
        sa.Column("vote_end", sa.BigInteger(), nullable=False),
        sa.Column("ve_supply_live", _uint256(), nullable=False),
        sa.Column("total_votes_snapshot", _uint256(), nullable=False),
        sa.Column("total_votes_tracked", _uint256(), nullable=False),
        sa.Column("ve_supply_epoch_start", _uint256(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "gauges",
        sa.Column("gauge", sa.String(42), nullable=False),
        sa.Column("pool", sa.String(42), nullable=False),
        sa.Column("pool_name", sa.String(128), nullable=True),
        sa.Column("bribe", sa.String(42), nullable=True),
        sa.Column("votes", _uint256(), nullable=False),
        sa.Column("duration", sa.BigInteger(), nullable=False),
        sa.Column("epoch_start", sa.BigInteger(), nullable=False),
        sa.Column("bribes_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("gauge"),
    )
    op.create_index("idx_gauges_pool", "gauges", ["pool"])


def downgrade() -> None:
    op.drop_index("idx_gauges_pool", table_name="gauges")
    op.drop_table("gauges")
    op.drop_table("gauge_state")
    op.drop_table("bridge_assets")
    op.drop_table("system_metrics_daily")
    op.drop_index("idx_system_snapshots_recorded_at", table_name="system_snapshots")
    op.drop_table("system_snapshots")
    op.drop_index("idx_price_feeds_source_block", table_name="price_feeds")
    op.drop_table("price_feeds")
    op.drop_table("indexer_state")
    op.drop_index("idx_redemptions_block", table_name="redemptions")
    op.drop_table("redemptions")
    op.drop_index("idx_liquidations_borrower", table_name="liquidations")
    op.drop_index("idx_liquidations_block", table_name="liquidations")
    op.drop_table("liquidations")
    op.drop_index("idx_troves_ratio", table_name="troves")
    op.drop_table("troves")
