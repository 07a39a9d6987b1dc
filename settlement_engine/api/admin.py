from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from settlement_engine.api.dependencies.auth import get_db, require_operator
from settlement_engine.core.errors import AlertNotFound
from settlement_engine.db.models.alerts import Alert
from settlement_engine.db.models.enums import AlertKind, AlertStatus, BatchStatus
from settlement_engine.db.models.settlement import SettlementBatch, SettlementItem
from settlement_engine.schemas.admin import (
    AlertItem,
    AlertResolveRequest,
    AlertsResponse,
    SettlementBatchItem,
    SettlementsResponse,
)
from settlement_engine.services.alerts import AlertService

router = APIRouter(tags=["admin"])


def _alert_item(alert: Alert) -> AlertItem:
    return AlertItem(
        id=alert.id,
        pool_source=alert.pool_source,
        account=alert.account,
        coin=alert.coin,
        user_id=alert.user_id,
        kind=alert.kind.value,
        severity=alert.severity.value,
        status=alert.status.value,
        ref_key=alert.ref_key,
        message=alert.message,
        trace_id=alert.trace_id,
        opened_at=alert.opened_at,
        resolved_at=alert.resolved_at,
        resolved_by=alert.resolved_by,
    )


@router.get("/admin/alerts", response_model=AlertsResponse)
def list_alerts(
    status: AlertStatus | None = Query(default=None),
    kind: AlertKind | None = Query(default=None),
    _: str = Depends(require_operator),
    db: Session = Depends(get_db),
) -> AlertsResponse:
    alerts = AlertService().list_alerts(db, status=status, kind=kind)
    return AlertsResponse(alerts=[_alert_item(alert) for alert in alerts])


@router.post("/admin/alerts/{alert_id}/resolve", response_model=AlertItem)
def resolve_alert(
    alert_id: int,
    payload: AlertResolveRequest,
    _: str = Depends(require_operator),
    db: Session = Depends(get_db),
) -> AlertItem:
    try:
        alert = AlertService().resolve(db, alert_id, resolved_by=payload.resolved_by)
    except AlertNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found") from exc
    db.commit()
    db.refresh(alert)
    return _alert_item(alert)


@router.get("/admin/settlements", response_model=SettlementsResponse)
def list_settlements(
    status: BatchStatus | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    _: str = Depends(require_operator),
    db: Session = Depends(get_db),
) -> SettlementsResponse:
    query = select(SettlementBatch).order_by(SettlementBatch.window_end.desc(), SettlementBatch.id.desc()).limit(limit)
    if status is not None:
        query = query.where(SettlementBatch.status == status)
    batches = db.scalars(query).all()

    item_counts = {
        batch_id: count
        for batch_id, count in db.execute(
            select(SettlementItem.batch_id, func.count(SettlementItem.id))
            .where(SettlementItem.batch_id.in_([batch.id for batch in batches]))
            .group_by(SettlementItem.batch_id)
        ).all()
    }
    return SettlementsResponse(
        settlements=[
            SettlementBatchItem(
                id=batch.id,
                batch_key=batch.batch_key,
                pool_source=batch.pool_source,
                account=batch.account,
                coin=batch.coin,
                window_start=batch.window_start,
                window_end=batch.window_end,
                status=batch.status.value,
                gross_amount_native=batch.gross_amount_native,
                gross_amount_accounting=batch.gross_amount_accounting,
                accounting_unit=batch.accounting_unit,
                coin_to_accounting_rate=batch.coin_to_accounting_rate,
                commission_rate=batch.commission_rate,
                total_score=batch.total_score,
                unclaimed_score=batch.unclaimed_score,
                item_count=item_counts.get(batch.id, 0),
                remark=batch.remark,
                trace_id=batch.trace_id,
            )
            for batch in batches
        ]
    )
