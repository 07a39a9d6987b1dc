from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from settlement_engine.core.config import CommissionTier
from settlement_engine.core.context import SettlementContext
from settlement_engine.core.errors import ConservationViolation, ValuationUnavailable, WithdrawalBlocked
from settlement_engine.db.models import (
    Account,
    Alert,
    AlertKind,
    AlertSeverity,
    BatchStatus,
    CommissionRecord,
    LedgerEntry,
    LedgerRefType,
    OwnerType,
    PlatformCommission,
    PoolBalanceSnapshot,
    ReconcileMetric,
    ReconcileReport,
    ReconcileStatus,
    SettlementBatch,
    SettlementItem,
    User,
)
from settlement_engine.pools.samples import WorkerSample
from settlement_engine.services.alerts import AlertService
from settlement_engine.services.commission import CommissionService
from settlement_engine.services.ledger import LedgerWriter
from settlement_engine.services.ownership import SqlWorkerBindingLookup, WorkerOwnershipResolver
from settlement_engine.services.payhash import PayhashIngestionService, PayhashWindowScoreService
from settlement_engine.services.reconcile import ReconcileService
from settlement_engine.services.settlement import SettlementPipeline, batch_key_for, floor_to_window
from settlement_engine.services.valuation import ValuationService, record_rate
from settlement_engine.services.withdrawals import WithdrawalService

WINDOW_START = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
WINDOW_END = WINDOW_START + timedelta(hours=1)
PREVIOUS_START = WINDOW_START - timedelta(hours=1)


class RecordingNotifier:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []

    def notify(self, subject: str, body: str) -> None:
        self.messages.append((subject, body))


class FailingLedger:
    def commit_batch(self, db, ctx, **kwargs) -> None:
        raise ConservationViolation("item gross sum 49.99999999 != batch gross 50.00000000")


def _pipeline(
    db: Session,
    *,
    unclaimed_user_id: int = 1,
    alerts: AlertService | None = None,
    ledger=None,
) -> SettlementPipeline:
    alerts = alerts or AlertService()
    return SettlementPipeline(
        score_service=PayhashWindowScoreService(WorkerOwnershipResolver(SqlWorkerBindingLookup(db))),
        valuation=ValuationService(accounting_unit="CAL", display_currency="CNY"),
        ledger=ledger
        or LedgerWriter(
            CommissionService(
                [
                    CommissionTier(min_invitees=1, rate=Decimal("0.05")),
                    CommissionTier(min_invitees=10, rate=Decimal("0.10")),
                ]
            )
        ),
        reconcile=ReconcileService(alerts),
        alerts=alerts,
        commission_rate=Decimal("0.30"),
        unclaimed_user_id=unclaimed_user_id,
    )


def _snapshot(db: Session, ctx: SettlementContext, captured_at: datetime, income_total: str) -> None:
    db.add(
        PoolBalanceSnapshot(
            pool_source=ctx.pool_source,
            account=ctx.account,
            coin=ctx.coin,
            captured_at=captured_at,
            income_total=Decimal(income_total),
        )
    )
    db.commit()


def _rates(db: Session, observed_at: datetime = WINDOW_END - timedelta(minutes=5)) -> None:
    record_rate(
        db, base_currency="CAL", quote_currency="CNY", rate=Decimal("2"), source="feed", observed_at=observed_at
    )
    record_rate(
        db, base_currency="XMR", quote_currency="CNY", rate=Decimal("1000"), source="feed", observed_at=observed_at
    )
    db.commit()


def _work(db: Session, ctx: SettlementContext, worker_ids: list[str], minutes: int = 2) -> None:
    ingestion = PayhashIngestionService()
    for minute in range(minutes):
        ingestion.record(
            db,
            ctx,
            [
                WorkerSample(
                    pool_source=ctx.pool_source,
                    account=ctx.account,
                    coin=ctx.coin,
                    raw_worker_id=worker_id,
                    hash_now=Decimal("1"),
                    hash_avg=Decimal("1"),
                    last_share_at=None,
                )
                for worker_id in worker_ids
            ],
            now=WINDOW_START + timedelta(minutes=minute),
        )
    db.commit()


def _balance(db: Session, owner_type: OwnerType, owner_id: int) -> Decimal | None:
    return db.scalar(
        select(Account.balance).where(
            Account.owner_type == owner_type, Account.owner_id == owner_id, Account.currency == "CAL"
        )
    )


def _count(db: Session, model) -> int:
    return db.scalar(select(func.count()).select_from(model))


@pytest.fixture
def funded_window(db_session: Session, ctx: SettlementContext, create_user: Callable[..., User]) -> None:
    create_user(user_id=10, worker_id="alice")
    create_user(user_id=11, worker_id="bob", inviter_id=10)
    _work(db_session, ctx, ["alice.rig1", "bob.rig1"])
    _snapshot(db_session, ctx, WINDOW_START - timedelta(minutes=2), "10.00000000")
    _snapshot(db_session, ctx, WINDOW_END - timedelta(minutes=1), "10.10000000")
    _rates(db_session)


def test_window_settles_items_commissions_and_balances(
    db_session: Session, ctx: SettlementContext, funded_window: None
) -> None:
    outcome = _pipeline(db_session).run_window(db_session, ctx, window_start=WINDOW_START, window_end=WINDOW_END)

    assert outcome.status is BatchStatus.SETTLED
    assert outcome.replayed is False
    assert outcome.item_count == 2
    assert outcome.batch_key == batch_key_for(ctx, WINDOW_START, WINDOW_END)

    batch = db_session.get(SettlementBatch, outcome.batch_id)
    assert batch.gross_amount_native == Decimal("0.10000000")
    assert batch.gross_amount_accounting == Decimal("50.00000000")
    assert batch.coin_to_accounting_rate == Decimal("500.00000000")
    assert batch.total_score == 240

    items = db_session.scalars(select(SettlementItem).order_by(SettlementItem.user_id)).all()
    assert [(item.user_id, item.gross_share, item.commission_share, item.net_share) for item in items] == [
        (10, Decimal("25.00000000"), Decimal("7.50000000"), Decimal("17.50000000")),
        (11, Decimal("25.00000000"), Decimal("7.50000000"), Decimal("17.50000000")),
    ]

    commission = db_session.scalar(select(CommissionRecord))
    assert (commission.user_id, commission.invitee_id, commission.commission_amount) == (10, 11, Decimal("1.25000000"))
    platform_rows = {
        row.user_id: row.platform_amount for row in db_session.scalars(select(PlatformCommission)).all()
    }
    assert platform_rows == {10: Decimal("7.50000000"), 11: Decimal("6.25000000")}

    db_session.expire_all()
    assert _balance(db_session, OwnerType.USER, 10) == Decimal("18.75")
    assert _balance(db_session, OwnerType.USER, 11) == Decimal("17.5")
    assert _balance(db_session, OwnerType.SYSTEM, 1) == Decimal("13.75")

    payout = db_session.scalar(
        select(LedgerEntry).where(LedgerEntry.user_id == 11, LedgerEntry.ref_type == LedgerRefType.MINING_PAYOUT)
    )
    assert payout.tx_hash == outcome.batch_key
    assert payout.amount_native == Decimal("0.03500000")
    assert payout.amount_display == Decimal("35.00000000")
    assert _count(db_session, Alert) == 0


def test_rerunning_a_settled_window_changes_nothing(
    db_session: Session, ctx: SettlementContext, funded_window: None
) -> None:
    pipeline = _pipeline(db_session)
    first = pipeline.run_window(db_session, ctx, window_start=WINDOW_START, window_end=WINDOW_END)
    ledger_rows = _count(db_session, LedgerEntry)

    second = pipeline.run_window(db_session, ctx, window_start=WINDOW_START, window_end=WINDOW_END)

    assert second.replayed is True
    assert second.batch_id == first.batch_id
    assert _count(db_session, LedgerEntry) == ledger_rows
    assert _count(db_session, SettlementItem) == 2
    db_session.expire_all()
    assert _balance(db_session, OwnerType.USER, 11) == Decimal("17.5")


def test_unclaimed_work_is_credited_to_the_sink_account(
    db_session: Session, ctx: SettlementContext, create_user: Callable[..., User]
) -> None:
    create_user(user_id=10, worker_id="alice")
    _work(db_session, ctx, ["alice", "stranger"])
    _snapshot(db_session, ctx, WINDOW_START, "1.00000000")
    _snapshot(db_session, ctx, WINDOW_END, "1.10000000")
    _rates(db_session)

    outcome = _pipeline(db_session, unclaimed_user_id=1).run_window(
        db_session, ctx, window_start=WINDOW_START, window_end=WINDOW_END
    )

    assert outcome.status is BatchStatus.SETTLED
    items = {item.user_id: item.gross_share for item in db_session.scalars(select(SettlementItem)).all()}
    assert items == {1: Decimal("25.00000000"), 10: Decimal("25.00000000")}
    assert db_session.get(SettlementBatch, outcome.batch_id).unclaimed_score == 120


def test_missing_snapshot_skips_the_window_with_an_alert(db_session: Session, ctx: SettlementContext) -> None:
    outcome = _pipeline(db_session).run_window(db_session, ctx, window_start=WINDOW_START, window_end=WINDOW_END)

    assert outcome.status is BatchStatus.SKIPPED
    assert outcome.remark == "SNAPSHOT_MISSING"
    alert = db_session.scalar(select(Alert))
    assert alert.kind is AlertKind.SNAPSHOT_MISSING


def test_no_pool_increment_skips_without_items(db_session: Session, ctx: SettlementContext) -> None:
    _snapshot(db_session, ctx, WINDOW_START, "5.00000000")
    _snapshot(db_session, ctx, WINDOW_END, "5.00000000")

    outcome = _pipeline(db_session).run_window(db_session, ctx, window_start=WINDOW_START, window_end=WINDOW_END)

    assert outcome.status is BatchStatus.SKIPPED
    assert outcome.remark == "NO_POOL_INCREMENT"
    assert _count(db_session, SettlementItem) == 0
    assert _count(db_session, Alert) == 0


def test_income_without_payhash_closes_empty_with_an_alert(db_session: Session, ctx: SettlementContext) -> None:
    _snapshot(db_session, ctx, WINDOW_START, "1.00000000")
    _snapshot(db_session, ctx, WINDOW_END, "1.50000000")
    _rates(db_session)

    outcome = _pipeline(db_session).run_window(db_session, ctx, window_start=WINDOW_START, window_end=WINDOW_END)

    assert outcome.status is BatchStatus.EMPTY
    assert _count(db_session, LedgerEntry) == 0
    assert db_session.scalar(select(Alert.kind)) is AlertKind.PAYHASH_MISSING


def test_missing_rate_aborts_before_any_write(
    db_session: Session, ctx: SettlementContext, create_user: Callable[..., User]
) -> None:
    create_user(user_id=10, worker_id="alice")
    _work(db_session, ctx, ["alice"])
    _snapshot(db_session, ctx, WINDOW_START, "1.00000000")
    _snapshot(db_session, ctx, WINDOW_END, "1.50000000")

    with pytest.raises(ValuationUnavailable):
        _pipeline(db_session).run_window(db_session, ctx, window_start=WINDOW_START, window_end=WINDOW_END)

    assert _count(db_session, SettlementBatch) == 0
    assert _count(db_session, LedgerEntry) == 0
    assert db_session.scalar(select(Alert.kind)) is AlertKind.RATE_MISSING


def test_next_window_starts_from_the_previous_end_snapshot(
    db_session: Session, ctx: SettlementContext, funded_window: None
) -> None:
    pipeline = _pipeline(db_session)
    first = pipeline.run_window(db_session, ctx, window_start=WINDOW_START, window_end=WINDOW_END)
    _snapshot(db_session, ctx, WINDOW_END + timedelta(minutes=59), "10.30000000")

    revenue = pipeline.window_revenue(
        db_session, ctx, window_start=WINDOW_END, window_end=WINDOW_END + timedelta(hours=1)
    )

    assert revenue is not None
    assert revenue.start_snapshot_id == db_session.get(SettlementBatch, first.batch_id).end_snapshot_id
    assert revenue.gross_native == Decimal("0.20000000")


def test_pending_windows_lists_closed_windows_after_the_last_final_batch(
    db_session: Session, ctx: SettlementContext
) -> None:
    pipeline = _pipeline(db_session)
    now = WINDOW_END + timedelta(minutes=6)

    assert pipeline.pending_windows(db_session, ctx, now=now) == [(WINDOW_START, WINDOW_END)]
    assert pipeline.pending_windows(db_session, ctx, now=WINDOW_END + timedelta(minutes=2)) == [
        (WINDOW_START - timedelta(hours=1), WINDOW_START)
    ]

    pipeline.run_window(
        db_session,
        ctx,
        window_start=WINDOW_START - timedelta(hours=2),
        window_end=WINDOW_START - timedelta(hours=1),
    )
    assert pipeline.pending_windows(db_session, ctx, now=now) == [
        (WINDOW_START - timedelta(hours=1), WINDOW_START),
        (WINDOW_START, WINDOW_END),
    ]


def test_floor_to_window_aligns_on_epoch() -> None:
    assert floor_to_window(datetime(2026, 3, 1, 12, 59, 59, tzinfo=UTC), timedelta(hours=1)) == WINDOW_START


def test_revenue_matching_the_pool_records_an_ok_report(
    db_session: Session, ctx: SettlementContext, funded_window: None
) -> None:
    _pipeline(db_session).run_window(db_session, ctx, window_start=WINDOW_START, window_end=WINDOW_END)

    report = db_session.scalar(select(ReconcileReport).where(ReconcileReport.metric == ReconcileMetric.REVENUE))
    assert (report.baseline, report.observed, report.status) == (
        Decimal("0.10000000"),
        Decimal("0.10000000"),
        ReconcileStatus.OK,
    )


def test_unsettled_pool_income_opens_revenue_alert_and_blocks_credited_users(
    db_session: Session, ctx: SettlementContext, create_user: Callable[..., User]
) -> None:
    create_user(user_id=10, worker_id="alice")
    create_user(user_id=11, worker_id="bob")
    create_user(user_id=12, worker_id="carol")
    _work(db_session, ctx, ["alice.rig1", "bob.rig1"])
    _snapshot(db_session, ctx, PREVIOUS_START, "10.00000000")
    _snapshot(db_session, ctx, WINDOW_START, "10.01000000")
    _snapshot(db_session, ctx, WINDOW_END, "10.11000000")
    _rates(db_session, observed_at=WINDOW_START - timedelta(minutes=5))
    _rates(db_session)
    alerts = AlertService()
    pipeline = _pipeline(db_session, alerts=alerts)

    previous = pipeline.run_window(db_session, ctx, window_start=PREVIOUS_START, window_end=WINDOW_START)
    current = pipeline.run_window(db_session, ctx, window_start=WINDOW_START, window_end=WINDOW_END)

    assert previous.status is BatchStatus.EMPTY
    assert current.status is BatchStatus.SETTLED
    report = db_session.scalar(select(ReconcileReport).where(ReconcileReport.metric == ReconcileMetric.REVENUE))
    assert (report.baseline, report.observed) == (Decimal("0.11000000"), Decimal("0.10000000"))
    assert report.diff_ratio == Decimal("0.090909")
    assert report.status is ReconcileStatus.WARN
    revenue_alert = db_session.scalar(select(Alert).where(Alert.kind == AlertKind.RECONCILE_REVENUE))
    assert revenue_alert.ref_key == current.batch_key
    assert revenue_alert.user_id is None

    assert alerts.has_open_alerts(db_session, 11) is True
    assert alerts.has_open_alerts(db_session, 12) is False
    with pytest.raises(WithdrawalBlocked):
        WithdrawalService(alerts).request_withdrawal(
            db_session, user_id=11, currency="CAL", amount=Decimal("1"), ref_id="wd-1"
        )
    db_session.rollback()

    alerts.resolve(db_session, revenue_alert.id, resolved_by="ops")
    db_session.commit()

    # the payhash gap alert stays open but does not put the account under review
    assert db_session.scalar(select(Alert.status).where(Alert.kind == AlertKind.PAYHASH_MISSING)).value == "open"
    assert alerts.has_open_alerts(db_session, 11) is False


def test_conservation_violation_fails_the_batch_and_notifies(
    db_session: Session, ctx: SettlementContext, funded_window: None
) -> None:
    notifier = RecordingNotifier()
    pipeline = _pipeline(db_session, alerts=AlertService(notifier=notifier), ledger=FailingLedger())

    with pytest.raises(ConservationViolation):
        pipeline.run_window(db_session, ctx, window_start=WINDOW_START, window_end=WINDOW_END)

    batch = db_session.scalar(select(SettlementBatch))
    assert batch.status is BatchStatus.FAILED
    assert batch.remark.startswith("item gross sum")
    assert _count(db_session, SettlementItem) == 0
    assert _count(db_session, LedgerEntry) == 0
    alert = db_session.scalar(select(Alert))
    assert (alert.kind, alert.severity) == (AlertKind.CONSERVATION_VIOLATION, AlertSeverity.CRITICAL)
    assert alert.ref_key == batch_key_for(ctx, WINDOW_START, WINDOW_END)
    assert [subject for subject, _ in notifier.messages] == ["[CRITICAL] conservation_violation f2pool/acct-1/XMR"]
    assert pipeline.pending_windows(db_session, ctx, now=WINDOW_END + timedelta(minutes=6)) == [
        (WINDOW_START, WINDOW_END)
    ]


def test_hashrate_and_revenue_drift_in_one_run_open_a_single_alert(
    db_session: Session, ctx: SettlementContext, create_user: Callable[..., User]
) -> None:
    create_user(user_id=10, worker_id="alice")
    create_user(user_id=11, worker_id="bob")
    _work(db_session, ctx, ["alice.rig1", "bob.rig1"])
    # a small income correction in the previous window leaves the span about 1% apart
    _snapshot(db_session, ctx, PREVIOUS_START, "10.00000000")
    _snapshot(db_session, ctx, WINDOW_START, "9.99900000")
    _snapshot(db_session, ctx, WINDOW_END, "10.09900000")
    _rates(db_session)
    alerts = AlertService()
    pipeline = _pipeline(db_session, alerts=alerts)

    hashrate = pipeline.reconcile.check_hashrate(
        db_session,
        ctx,
        pool_hashrate=Decimal("100"),
        engine_hashrate=Decimal("94"),
        ref_key=WINDOW_START.isoformat(),
    )
    db_session.commit()
    previous = pipeline.run_window(db_session, ctx, window_start=PREVIOUS_START, window_end=WINDOW_START)
    current = pipeline.run_window(db_session, ctx, window_start=WINDOW_START, window_end=WINDOW_END)

    assert previous.remark == "NO_POOL_INCREMENT"
    assert current.status is BatchStatus.SETTLED
    assert hashrate.status is ReconcileStatus.WARN
    revenue = db_session.scalar(select(ReconcileReport).where(ReconcileReport.metric == ReconcileMetric.REVENUE))
    assert revenue.diff_ratio == Decimal("0.010101")
    assert revenue.status is ReconcileStatus.OK
    assert db_session.scalars(select(Alert.kind)).all() == [AlertKind.RECONCILE_HASHRATE]
