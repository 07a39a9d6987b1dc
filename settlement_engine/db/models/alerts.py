from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text, UniqueConstraint
from sqlalchemy import Enum as SqlEnum
from sqlalchemy.orm import Mapped, mapped_column

from settlement_engine.db.models.enums import AlertKind, AlertSeverity, AlertStatus, enum_values
from settlement_engine.db.models.mixins import TimestampMixin
from settlement_engine.db.session import Base


class Alert(TimestampMixin, Base):
    __tablename__ = "risk_alert"

    id: Mapped[int] = mapped_column(primary_key=True)
    pool_source: Mapped[str] = mapped_column(String(32), nullable=False)
    account: Mapped[str] = mapped_column(String(128), nullable=False)
    coin: Mapped[str] = mapped_column(String(16), nullable=False)
    user_id: Mapped[int | None] = mapped_column(nullable=True)
    kind: Mapped[AlertKind] = mapped_column(
        SqlEnum(AlertKind, name="alert_kind_enum", native_enum=False, values_callable=enum_values),
        nullable=False,
    )
    severity: Mapped[AlertSeverity] = mapped_column(
        SqlEnum(AlertSeverity, name="alert_severity_enum", native_enum=False, values_callable=enum_values),
        nullable=False,
    )
    status: Mapped[AlertStatus] = mapped_column(
        SqlEnum(AlertStatus, name="alert_status_enum", native_enum=False, values_callable=enum_values),
        nullable=False,
    )
    ref_key: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    trace_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    __table_args__ = (
        UniqueConstraint("pool_source", "account", "coin", "kind", "ref_key", name="uq_risk_alert_ref"),
        Index("ix_risk_alert_status", "status"),
        Index("ix_risk_alert_user_status", "user_id", "status"),
    )
