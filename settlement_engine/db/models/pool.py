from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, DateTime, Index, Numeric, String, UniqueConstraint
from sqlalchemy import Enum as SqlEnum
from sqlalchemy.orm import Mapped, mapped_column

from settlement_engine.db.models.enums import ReconcileMetric, ReconcileStatus, enum_values
from settlement_engine.db.models.mixins import TimestampMixin
from settlement_engine.db.session import Base


class WorkerPayhash(TimestampMixin, Base):
    """Per-minute work score of one raw pool worker."""

    __tablename__ = "worker_payhash"

    id: Mapped[int] = mapped_column(primary_key=True)
    pool_source: Mapped[str] = mapped_column(String(32), nullable=False)
    account: Mapped[str] = mapped_column(String(128), nullable=False)
    coin: Mapped[str] = mapped_column(String(16), nullable=False)
    bucket_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    worker_id: Mapped[str] = mapped_column(String(255), nullable=False)
    hashrate_mhs: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    payhash: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "pool_source", "account", "coin", "bucket_time", "worker_id", name="uq_worker_payhash_bucket"
        ),
        Index("ix_worker_payhash_scope_time", "pool_source", "account", "coin", "bucket_time"),
    )


class PoolBalanceSnapshot(TimestampMixin, Base):
    """Pool-reported account totals at one poll."""

    __tablename__ = "pool_balance_snapshot"

    id: Mapped[int] = mapped_column(primary_key=True)
    pool_source: Mapped[str] = mapped_column(String(32), nullable=False)
    account: Mapped[str] = mapped_column(String(128), nullable=False)
    coin: Mapped[str] = mapped_column(String(16), nullable=False)
    captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    income_total: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    balance: Mapped[Decimal | None] = mapped_column(Numeric(28, 8), nullable=True)
    paid_total: Mapped[Decimal | None] = mapped_column(Numeric(28, 8), nullable=True)
    hashrate_mhs: Mapped[Decimal | None] = mapped_column(Numeric(28, 8), nullable=True)
    active_workers: Mapped[int | None] = mapped_column(nullable=True)

    __table_args__ = (Index("ix_pool_balance_snapshot_scope_time", "pool_source", "account", "coin", "captured_at"),)


class PoolPayout(TimestampMixin, Base):
    __tablename__ = "pool_payout"

    id: Mapped[int] = mapped_column(primary_key=True)
    pool_source: Mapped[str] = mapped_column(String(32), nullable=False)
    account: Mapped[str] = mapped_column(String(128), nullable=False)
    coin: Mapped[str] = mapped_column(String(16), nullable=False)
    payout_key: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("pool_source", "account", "coin", "payout_key", name="uq_pool_payout_key"),
    )


class ExchangeRate(TimestampMixin, Base):
    __tablename__ = "exchange_rate"

    id: Mapped[int] = mapped_column(primary_key=True)
    base_currency: Mapped[str] = mapped_column(String(16), nullable=False)
    quote_currency: Mapped[str] = mapped_column(String(16), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_exchange_rate_pair_time", "base_currency", "quote_currency", "observed_at"),)


class ReconcileReport(TimestampMixin, Base):
    __tablename__ = "reconcile_report"

    id: Mapped[int] = mapped_column(primary_key=True)
    pool_source: Mapped[str] = mapped_column(String(32), nullable=False)
    account: Mapped[str] = mapped_column(String(128), nullable=False)
    coin: Mapped[str] = mapped_column(String(16), nullable=False)
    metric: Mapped[ReconcileMetric] = mapped_column(
        SqlEnum(ReconcileMetric, name="reconcile_metric_enum", native_enum=False, values_callable=enum_values),
        nullable=False,
    )
    ref_key: Mapped[str] = mapped_column(String(255), nullable=False)
    baseline: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    observed: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    diff_ratio: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    threshold: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    status: Mapped[ReconcileStatus] = mapped_column(
        SqlEnum(ReconcileStatus, name="reconcile_status_enum", native_enum=False, values_callable=enum_values),
        nullable=False,
    )
    trace_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (Index("ix_reconcile_report_scope", "pool_source", "account", "coin", "metric"),)
