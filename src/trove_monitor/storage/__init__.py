"""Storage layer - Database schemas and repositories."""

from trove_monitor.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
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
from trove_monitor.storage.repos import (
    GaugeStateDTO,
    PriceFeedDTO,
    SnapshotRepository,
    TroveDTO,
)

__all__ = [
    "Base",
    "BridgeAssetModel",
    "DatabaseManager",
    "GaugeModel",
    "GaugeStateDTO",
    "GaugeStateModel",
    "IndexerStateModel",
    "LiquidationModel",
    "PriceFeedDTO",
    "PriceFeedModel",
    "RedemptionModel",
    "SnapshotRepository",
    "SystemMetricsDailyModel",
    "SystemSnapshotModel",
    "TroveDTO",
    "TroveModel",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
