from enum import Enum


class PoolSource(str, Enum):
    F2POOL = "f2pool"
    ANTPOOL = "antpool"
    C3POOL = "c3pool"


class OwnerType(str, Enum):
    USER = "user"
    SYSTEM = "system"


class BatchStatus(str, Enum):
    PROCESSING = "processing"
    SETTLED = "settled"
    EMPTY = "empty"
    SKIPPED = "skipped"
    FAILED = "failed"


class LedgerRefType(str, Enum):
    MINING_PAYOUT = "mining_payout"
    INVITE_COMMISSION = "invite_commission"
    WITHDRAWAL = "withdrawal"


class AlertStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARN = "warn"
    CRITICAL = "critical"


class AlertKind(str, Enum):
    RECONCILE_HASHRATE = "reconcile_hashrate"
    RECONCILE_REVENUE = "reconcile_revenue"
    PAYHASH_MISSING = "payhash_missing"
    RATE_MISSING = "rate_missing"
    CONSERVATION_VIOLATION = "conservation_violation"
    HOURLY_EARNING_SPIKE = "hourly_earning_spike"
    SNAPSHOT_MISSING = "snapshot_missing"


class ReconcileMetric(str, Enum):
    HASHRATE = "hashrate"
    REVENUE = "revenue"


class ReconcileStatus(str, Enum):
    OK = "ok"
    WARN = "warn"


def enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]
