"""ORM models for the settlement engine."""

from settlement_engine.db.models.accounting import Account, LedgerEntry
from settlement_engine.db.models.alerts import Alert
from settlement_engine.db.models.enums import (
    AlertKind,
    AlertSeverity,
    AlertStatus,
    BatchStatus,
    LedgerRefType,
    OwnerType,
    PoolSource,
    ReconcileMetric,
    ReconcileStatus,
)
from settlement_engine.db.models.pool import (
    ExchangeRate,
    PoolBalanceSnapshot,
    PoolPayout,
    ReconcileReport,
    WorkerPayhash,
)
from settlement_engine.db.models.settlement import (
    CommissionRecord,
    PlatformCommission,
    SettlementBatch,
    SettlementItem,
)
from settlement_engine.db.models.users import User

__all__ = [
    "Account",
    "Alert",
    "AlertKind",
    "AlertSeverity",
    "AlertStatus",
    "BatchStatus",
    "CommissionRecord",
    "ExchangeRate",
    "LedgerEntry",
    "LedgerRefType",
    "OwnerType",
    "PlatformCommission",
    "PoolBalanceSnapshot",
    "PoolPayout",
    "PoolSource",
    "ReconcileMetric",
    "ReconcileReport",
    "ReconcileStatus",
    "SettlementBatch",
    "SettlementItem",
    "User",
    "WorkerPayhash",
]
