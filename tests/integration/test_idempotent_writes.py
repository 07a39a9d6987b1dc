from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from settlement_engine.core.context import SettlementContext
from settlement_engine.db.models import Alert, AlertKind, LedgerEntry, LedgerRefType, OwnerType, WorkerPayhash
from settlement_engine.pools.samples import WorkerSample
from settlement_engine.services.alerts import AlertService
from settlement_engine.services.ledger import append_ledger_entry, credit_account
from settlement_engine.services.payhash import PayhashIngestionService
from settlement_engine.services.withdrawals import WithdrawalService

NOW = datetime(2026, 3, 1, 12, 0, 30, tzinfo=UTC)
CTX = SettlementContext(trace_id="trace-int", pool_source="f2pool", account="acct-1", coin="XMR")


def test_conflicting_inserts_are_noops_on_postgres(db_session: Session) -> None:
    alerts = AlertService()
    first = alerts.raise_alert(db_session, CTX, kind=AlertKind.RATE_MISSING, ref_key="w-1", message="no rate")
    second = alerts.raise_alert(db_session, CTX, kind=AlertKind.RATE_MISSING, ref_key="w-1", message="no rate")
    entry_args = {
        "user_id": 7,
        "ref_type": LedgerRefType.MINING_PAYOUT,
        "ref_id": "batch-1",
        "currency": "CAL",
        "amount": Decimal("1.5"),
        "event_time": NOW,
    }
    inserted = append_ledger_entry(db_session, **entry_args)
    repeated = append_ledger_entry(db_session, **entry_args)
    db_session.commit()

    assert (first.created, second.created) == (True, False)
    assert first.alert.id == second.alert.id
    assert (inserted, repeated) == (True, False)
    assert db_session.scalar(select(func.count()).select_from(Alert)) == 1
    assert db_session.scalar(select(func.count()).select_from(LedgerEntry)) == 1


def test_payhash_upsert_replaces_bucket_row(db_session: Session) -> None:
    ingestion = PayhashIngestionService()

    for hashrate in ("1", "2"):
        sample = WorkerSample(
            pool_source="f2pool",
            account="acct-1",
            coin="XMR",
            raw_worker_id="alice.rig1",
            hash_now=Decimal(hashrate),
            hash_avg=Decimal(hashrate),
            last_share_at=NOW,
        )
        ingestion.record(db_session, CTX, [sample], now=NOW)
    db_session.commit()

    row = db_session.scalar(select(WorkerPayhash))
    assert row.payhash == 120
    assert row.hashrate_mhs == Decimal("2.00000000")


def test_withdrawal_debits_locked_account(db_session: Session) -> None:
    credit_account(db_session, owner_type=OwnerType.USER, owner_id=7, currency="CAL", amount=Decimal("10"))
    db_session.commit()

    result = WithdrawalService(AlertService()).request_withdrawal(
        db_session, user_id=7, currency="CAL", amount=Decimal("2.5"), ref_id="wd-1"
    )
    db_session.commit()

    assert result.balance_after == Decimal("7.50000000")
    assert result.duplicate is False
