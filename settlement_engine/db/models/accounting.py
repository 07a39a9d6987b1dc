from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Index, Numeric, String, UniqueConstraint
from sqlalchemy import Enum as SqlEnum
from sqlalchemy.orm import Mapped, mapped_column

from settlement_engine.db.models.enums import LedgerRefType, OwnerType, enum_values
from settlement_engine.db.models.mixins import TimestampMixin
from settlement_engine.db.session import Base


class Account(TimestampMixin, Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(primary_key=True)
    owner_type: Mapped[OwnerType] = mapped_column(
        SqlEnum(OwnerType, name="owner_type_enum", native_enum=False, values_callable=enum_values),
        nullable=False,
    )
    owner_id: Mapped[int] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(12), nullable=False)
    balance: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False, server_default="0")

    __table_args__ = (
        UniqueConstraint("owner_type", "owner_id", "currency", name="uq_accounts_owner_currency"),
        Index("ix_accounts_owner_lookup", "owner_type", "owner_id"),
    )


class LedgerEntry(TimestampMixin, Base):
    """Append-only user asset movement; never updated or deleted."""

    __tablename__ = "asset_ledger"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(nullable=False)
    ref_type: Mapped[LedgerRefType] = mapped_column(
        SqlEnum(LedgerRefType, name="ledger_ref_type_enum", native_enum=False, values_callable=enum_values),
        nullable=False,
    )
    ref_id: Mapped[str] = mapped_column(String(255), nullable=False)
    currency: Mapped[str] = mapped_column(String(12), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    amount_native: Mapped[Decimal | None] = mapped_column(Numeric(28, 8), nullable=True)
    amount_display: Mapped[Decimal | None] = mapped_column(Numeric(28, 8), nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    remark: Mapped[str | None] = mapped_column(String(255), nullable=True)
    event_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "ref_type", "ref_id", name="uq_asset_ledger_ref"),
        Index("ix_asset_ledger_user_id", "user_id"),
        Index("ix_asset_ledger_tx_hash", "tx_hash"),
    )
