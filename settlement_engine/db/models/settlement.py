from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Numeric, String, UniqueConstraint
from sqlalchemy import Enum as SqlEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from settlement_engine.db.models.enums import BatchStatus, enum_values
from settlement_engine.db.models.mixins import TimestampMixin
from settlement_engine.db.session import Base


class SettlementBatch(TimestampMixin, Base):
    __tablename__ = "settlement_batch"

    id: Mapped[int] = mapped_column(primary_key=True)
    batch_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    pool_source: Mapped[str] = mapped_column(String(32), nullable=False)
    account: Mapped[str] = mapped_column(String(128), nullable=False)
    coin: Mapped[str] = mapped_column(String(16), nullable=False)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[BatchStatus] = mapped_column(
        SqlEnum(BatchStatus, name="batch_status_enum", native_enum=False, values_callable=enum_values),
        nullable=False,
    )
    gross_amount_native: Mapped[Decimal | None] = mapped_column(Numeric(28, 8), nullable=True)
    gross_amount_accounting: Mapped[Decimal | None] = mapped_column(Numeric(28, 8), nullable=True)
    accounting_unit: Mapped[str | None] = mapped_column(String(12), nullable=True)
    coin_to_accounting_rate: Mapped[Decimal | None] = mapped_column(Numeric(28, 8), nullable=True)
    accounting_to_display_rate: Mapped[Decimal | None] = mapped_column(Numeric(28, 8), nullable=True)
    rate_source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    commission_rate: Mapped[Decimal | None] = mapped_column(Numeric(10, 6), nullable=True)
    total_score: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    unclaimed_score: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    start_snapshot_id: Mapped[int | None] = mapped_column(
        ForeignKey("pool_balance_snapshot.id", ondelete="SET NULL"), nullable=True
    )
    end_snapshot_id: Mapped[int | None] = mapped_column(
        ForeignKey("pool_balance_snapshot.id", ondelete="SET NULL"), nullable=True
    )
    trace_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    remark: Mapped[str | None] = mapped_column(String(255), nullable=True)

    items: Mapped[list[SettlementItem]] = relationship(
        back_populates="batch", cascade="all, delete-orphan", order_by="SettlementItem.user_id"
    )

    __table_args__ = (
        UniqueConstraint(
            "pool_source", "account", "coin", "window_start", "window_end", name="uq_settlement_batch_window"
        ),
        Index("ix_settlement_batch_status", "status"),
        Index("ix_settlement_batch_scope_end", "pool_source", "account", "coin", "window_end"),
    )


class SettlementItem(TimestampMixin, Base):
    __tablename__ = "settlement_item"

    id: Mapped[int] = mapped_column(primary_key=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey("settlement_batch.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(nullable=False)
    score: Mapped[int] = mapped_column(BigInteger, nullable=False)
    gross_share: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    commission_share: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    net_share: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)

    batch: Mapped[SettlementBatch] = relationship(back_populates="items")

    __table_args__ = (
        UniqueConstraint("batch_id", "user_id", name="uq_settlement_item_batch_user"),
        Index("ix_settlement_item_user_id", "user_id"),
    )


class CommissionRecord(TimestampMixin, Base):
    """Inviter share carved out of an invitee's platform commission."""

    __tablename__ = "commission_record"

    id: Mapped[int] = mapped_column(primary_key=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey("settlement_batch.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(nullable=False)
    invitee_id: Mapped[int] = mapped_column(nullable=False)
    source_amount: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(10, 6), nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    currency: Mapped[str] = mapped_column(String(12), nullable=False)

    __table_args__ = (
        UniqueConstraint("batch_id", "invitee_id", name="uq_commission_record_batch_invitee"),
        Index("ix_commission_record_user_id", "user_id"),
    )


class PlatformCommission(TimestampMixin, Base):
    __tablename__ = "platform_commission"

    id: Mapped[int] = mapped_column(primary_key=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey("settlement_batch.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(nullable=False)
    original_amount: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    platform_rate: Mapped[Decimal] = mapped_column(Numeric(10, 6), nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    inviter_amount: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False, server_default="0")
    platform_amount: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    currency: Mapped[str] = mapped_column(String(12), nullable=False)

    __table_args__ = (UniqueConstraint("batch_id", "user_id", name="uq_platform_commission_batch_user"),)
