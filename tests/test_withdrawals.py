from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from settlement_engine.core.context import SettlementContext
from settlement_engine.core.errors import InsufficientBalance, WithdrawalBlocked
from settlement_engine.db.models import Account, AlertKind, LedgerEntry, LedgerRefType, OwnerType
from settlement_engine.services.alerts import AlertService
from settlement_engine.services.ledger import credit_account
from settlement_engine.services.withdrawals import WithdrawalService


def _fund(db: Session, user_id: int, amount: str) -> None:
    credit_account(db, owner_type=OwnerType.USER, owner_id=user_id, currency="CAL", amount=Decimal(amount))
    db.commit()


def _balance(db: Session, user_id: int) -> Decimal:
    db.expire_all()
    return db.scalar(
        select(Account.balance).where(Account.owner_type == OwnerType.USER, Account.owner_id == user_id)
    )


def test_withdrawal_debits_balance_and_writes_negative_entry(db_session: Session) -> None:
    _fund(db_session, 7, "10")

    result = WithdrawalService(AlertService()).request_withdrawal(
        db_session, user_id=7, currency="CAL", amount=Decimal("4"), ref_id="wd-1"
    )
    db_session.commit()

    assert result.duplicate is False
    assert result.balance_after == Decimal("6")
    assert _balance(db_session, 7) == Decimal("6")
    entry = db_session.scalar(select(LedgerEntry).where(LedgerEntry.ref_type == LedgerRefType.WITHDRAWAL))
    assert entry.amount == Decimal("-4")
    assert entry.ref_id == "wd-1"


def test_repeated_request_id_is_not_debited_twice(db_session: Session) -> None:
    _fund(db_session, 7, "10")
    service = WithdrawalService(AlertService())

    service.request_withdrawal(db_session, user_id=7, currency="CAL", amount=Decimal("4"), ref_id="wd-1")
    db_session.commit()
    again = service.request_withdrawal(db_session, user_id=7, currency="CAL", amount=Decimal("4"), ref_id="wd-1")
    db_session.commit()

    assert again.duplicate is True
    assert _balance(db_session, 7) == Decimal("6")
    assert db_session.scalar(select(func.count()).select_from(LedgerEntry)) == 1


def test_open_alert_blocks_withdrawal(db_session: Session, ctx: SettlementContext) -> None:
    _fund(db_session, 7, "10")
    alerts = AlertService()
    alerts.raise_alert(
        db_session, ctx, kind=AlertKind.HOURLY_EARNING_SPIKE, ref_key="user:7", message="spike", user_id=7
    )
    db_session.commit()

    with pytest.raises(WithdrawalBlocked):
        WithdrawalService(alerts).request_withdrawal(
            db_session, user_id=7, currency="CAL", amount=Decimal("1"), ref_id="wd-1"
        )
    db_session.rollback()

    assert _balance(db_session, 7) == Decimal("10")


def test_resolved_alert_no_longer_blocks(db_session: Session, ctx: SettlementContext) -> None:
    _fund(db_session, 7, "10")
    alerts = AlertService()
    raised = alerts.raise_alert(
        db_session, ctx, kind=AlertKind.HOURLY_EARNING_SPIKE, ref_key="user:7", message="spike", user_id=7
    )
    alerts.resolve(db_session, raised.alert.id, resolved_by="ops")
    db_session.commit()

    result = WithdrawalService(alerts).request_withdrawal(
        db_session, user_id=7, currency="CAL", amount=Decimal("1"), ref_id="wd-1"
    )

    assert result.balance_after == Decimal("9")


def test_insufficient_balance(db_session: Session) -> None:
    _fund(db_session, 7, "1")

    with pytest.raises(InsufficientBalance):
        WithdrawalService(AlertService()).request_withdrawal(
            db_session, user_id=7, currency="CAL", amount=Decimal("2"), ref_id="wd-1"
        )


def test_non_positive_amount_is_rejected(db_session: Session) -> None:
    with pytest.raises(ValueError):
        WithdrawalService(AlertService()).request_withdrawal(
            db_session, user_id=7, currency="CAL", amount=Decimal("0"), ref_id="wd-1"
        )
