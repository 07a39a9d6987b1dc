from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement_engine.core.errors import InsufficientBalance, WithdrawalBlocked
from settlement_engine.db.models.accounting import Account, LedgerEntry
from settlement_engine.db.models.enums import LedgerRefType, OwnerType
from settlement_engine.services.alerts import AlertService
from settlement_engine.services.ledger import append_ledger_entry, ensure_account

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WithdrawalResult:
    user_id: int
    currency: str
    amount: Decimal
    balance_after: Decimal
    duplicate: bool


class WithdrawalService:
    """Debit path guarded by the open-alert check; the caller commits."""

    def __init__(self, alerts: AlertService) -> None:
        self.alerts = alerts

    def request_withdrawal(
        self,
        db: Session,
        *,
        user_id: int,
        currency: str,
        amount: Decimal,
        ref_id: str,
    ) -> WithdrawalResult:
        if amount <= 0:
            raise ValueError("withdrawal amount must be positive")

        ensure_account(db, owner_type=OwnerType.USER, owner_id=user_id, currency=currency)
        account = db.scalar(
            select(Account)
            .where(
                Account.owner_type == OwnerType.USER,
                Account.owner_id == user_id,
                Account.currency == currency,
            )
            .with_for_update()
        )
        if account is None:
            raise RuntimeError(f"account for user {user_id} vanished")
        db.refresh(account)

        existing = db.scalar(
            select(LedgerEntry).where(
                LedgerEntry.user_id == user_id,
                LedgerEntry.ref_type == LedgerRefType.WITHDRAWAL,
                LedgerEntry.ref_id == ref_id,
            )
        )
        if existing is not None:
            return WithdrawalResult(
                user_id=user_id,
                currency=currency,
                amount=-existing.amount,
                balance_after=account.balance,
                duplicate=True,
            )

        if self.alerts.has_open_alerts(db, user_id):
            logger.warning("withdrawal blocked by open alert user_id=%s ref_id=%s", user_id, ref_id)
            raise WithdrawalBlocked(f"user {user_id} has open risk alerts")
        if account.balance < amount:
            raise InsufficientBalance(f"balance {account.balance} is below {amount}")

        account.balance = account.balance - amount
        append_ledger_entry(
            db,
            user_id=user_id,
            ref_type=LedgerRefType.WITHDRAWAL,
            ref_id=ref_id,
            currency=currency,
            amount=-amount,
            event_time=datetime.now(UTC),
            remark="withdrawal request",
        )
        db.flush()
        logger.info("withdrawal applied user_id=%s amount=%s currency=%s", user_id, amount, currency)
        return WithdrawalResult(
            user_id=user_id,
            currency=currency,
            amount=amount,
            balance_after=account.balance,
            duplicate=False,
        )
