from __future__ import annotations

from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from settlement_engine.core.context import SettlementContext
from settlement_engine.db.models import Alert, AlertKind, ReconcileReport, ReconcileStatus
from settlement_engine.services.alerts import AlertService
from settlement_engine.services.reconcile import ReconcileService, relative_diff


def _service() -> ReconcileService:
    return ReconcileService(AlertService(), hashrate_threshold=Decimal("0.05"), revenue_threshold=Decimal("0.02"))


def test_relative_diff_is_rounded_to_six_places() -> None:
    assert relative_diff(Decimal("3"), Decimal("2")) == Decimal("0.333333")
    assert relative_diff(Decimal("100"), Decimal("106")) == Decimal("0.060000")


def test_hashrate_drift_above_threshold_opens_one_alert(db_session: Session, ctx: SettlementContext) -> None:
    service = _service()

    outcome = service.check_hashrate(
        db_session, ctx, pool_hashrate=Decimal("100"), engine_hashrate=Decimal("94"), ref_key="2026-03-01T12:00:00"
    )
    service.check_hashrate(
        db_session, ctx, pool_hashrate=Decimal("100"), engine_hashrate=Decimal("94"), ref_key="2026-03-01T12:00:00"
    )
    db_session.commit()

    assert outcome is not None
    assert outcome.status is ReconcileStatus.WARN
    assert outcome.diff_ratio == Decimal("0.060000")
    alerts = db_session.scalars(select(Alert)).all()
    assert len(alerts) == 1
    assert alerts[0].kind is AlertKind.RECONCILE_HASHRATE
    assert outcome.alert_id == alerts[0].id
    assert db_session.scalar(select(func.count()).select_from(ReconcileReport)) == 2


def test_revenue_drift_within_threshold_records_ok_without_alert(db_session: Session, ctx: SettlementContext) -> None:
    outcome = _service().check_revenue(
        db_session, ctx, pool_revenue=Decimal("1.00"), engine_revenue=Decimal("0.99"), ref_key="batch-1"
    )
    db_session.commit()

    assert outcome is not None
    assert outcome.status is ReconcileStatus.OK
    assert outcome.alert_id is None
    assert db_session.scalar(select(func.count()).select_from(Alert)) == 0
    report = db_session.scalar(select(ReconcileReport))
    assert report.status is ReconcileStatus.OK


def test_zero_baseline_is_not_compared(db_session: Session, ctx: SettlementContext) -> None:
    outcome = _service().check_revenue(
        db_session, ctx, pool_revenue=Decimal("0"), engine_revenue=Decimal("5"), ref_key="batch-1"
    )

    assert outcome is None
    assert db_session.scalar(select(func.count()).select_from(ReconcileReport)) == 0
