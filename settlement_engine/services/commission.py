from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from settlement_engine.core.config import CommissionTier
from settlement_engine.db.models.users import User


class CommissionService:
    """Inviter commission rate, tiered by the number of invited users."""

    def __init__(self, tiers: Iterable[CommissionTier], *, default_rate: Decimal = Decimal("0")) -> None:
        self.tiers = sorted(tiers, key=lambda tier: tier.min_invitees, reverse=True)
        self.default_rate = default_rate

    def invitee_count(self, db: Session, user_id: int) -> int:
        return int(db.scalar(select(func.count()).select_from(User).where(User.inviter_id == user_id)) or 0)

    def rate_for_count(self, invitee_count: int) -> Decimal:
        for tier in self.tiers:
            if invitee_count >= tier.min_invitees:
                return tier.rate
        return self.default_rate

    def rate_for_user(self, db: Session, user_id: int) -> Decimal:
        return self.rate_for_count(self.invitee_count(db, user_id))
