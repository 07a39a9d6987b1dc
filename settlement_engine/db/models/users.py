from __future__ import annotations

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from settlement_engine.db.models.mixins import TimestampMixin
from settlement_engine.db.session import Base


class User(TimestampMixin, Base):
    """Platform user as seen by the engine: the worker binding and the inviter link."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    worker_id: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    inviter_id: Mapped[int | None] = mapped_column(nullable=True)
    is_active: Mapped[bool] = mapped_column(nullable=False, server_default="true")

    __table_args__ = (Index("ix_users_inviter_id", "inviter_id"),)
