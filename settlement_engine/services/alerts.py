from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from settlement_engine.core.context import SettlementContext
from settlement_engine.core.errors import AlertNotFound
from settlement_engine.core.observability import PrometheusMetrics
from settlement_engine.db.models.alerts import Alert
from settlement_engine.db.models.enums import AlertKind, AlertSeverity, AlertStatus
from settlement_engine.db.models.settlement import SettlementBatch, SettlementItem
from settlement_engine.db.session import insert_if_absent

logger = logging.getLogger(__name__)

ACCOUNT_REVIEW_KINDS = (
    AlertKind.RECONCILE_HASHRATE,
    AlertKind.RECONCILE_REVENUE,
    AlertKind.HOURLY_EARNING_SPIKE,
    AlertKind.CONSERVATION_VIOLATION,
)


class Notifier(Protocol):
    def notify(self, subject: str, body: str) -> None: ...


class LogNotifier:
    """Delivers critical notifications to the operations log stream."""

    def __init__(self, logger_name: str = "settlement_engine.notifications") -> None:
        self._logger = logging.getLogger(logger_name)

    def notify(self, subject: str, body: str) -> None:
        self._logger.error("%s", subject, extra={"notification_body": body})


@dataclass(frozen=True)
class RaisedAlert:
    alert: Alert
    created: bool


class AlertService:
    def __init__(self, *, notifier: Notifier | None = None, metrics: PrometheusMetrics | None = None) -> None:
        self.notifier = notifier or LogNotifier()
        self.metrics = metrics

    def raise_alert(
        self,
        db: Session,
        ctx: SettlementContext,
        *,
        kind: AlertKind,
        ref_key: str,
        message: str,
        severity: AlertSeverity = AlertSeverity.WARN,
        user_id: int | None = None,
    ) -> RaisedAlert:
        """Open an alert once per (scope, kind, ref_key); repeats return the existing row."""

        now = datetime.now(UTC)
        created = insert_if_absent(
            db,
            Alert,
            {
                "pool_source": ctx.pool_source,
                "account": ctx.account,
                "coin": ctx.coin,
                "user_id": user_id,
                "kind": kind,
                "severity": severity,
                "status": AlertStatus.OPEN,
                "ref_key": ref_key,
                "message": message,
                "trace_id": ctx.trace_id,
                "opened_at": now,
            },
            conflict_columns=("pool_source", "account", "coin", "kind", "ref_key"),
        )
        alert = db.scalar(
            select(Alert).where(
                Alert.pool_source == ctx.pool_source,
                Alert.account == ctx.account,
                Alert.coin == ctx.coin,
                Alert.kind == kind,
                Alert.ref_key == ref_key,
            )
        )
        if alert is None:
            raise RuntimeError("alert row vanished after insert")

        if created:
            logger.warning(
                "alert opened kind=%s severity=%s ref_key=%s message=%s",
                kind.value,
                severity.value,
                ref_key,
                message,
                extra=ctx.log_extra(),
            )
            if self.metrics is not None:
                self.metrics.record_alert(kind.value)
            if severity is AlertSeverity.CRITICAL:
                self.notifier.notify(
                    f"[{severity.value.upper()}] {kind.value} {ctx.pool_source}/{ctx.account}/{ctx.coin}",
                    f"{message}\nref_key={ref_key}\ntrace_id={ctx.trace_id}",
                )
        return RaisedAlert(alert=alert, created=created)

    def has_open_alerts(self, db: Session, user_id: int) -> bool:
        """True while the user, or a pool account that credited the user, is under review.

        Account-scoped alerts only count for the kinds in ``ACCOUNT_REVIEW_KINDS``.
        """

        credited_by_account = (
            select(SettlementItem.id)
            .join(SettlementBatch, SettlementBatch.id == SettlementItem.batch_id)
            .where(
                SettlementItem.user_id == user_id,
                SettlementBatch.pool_source == Alert.pool_source,
                SettlementBatch.account == Alert.account,
                SettlementBatch.coin == Alert.coin,
            )
            .exists()
        )
        count = db.scalar(
            select(func.count())
            .select_from(Alert)
            .where(
                Alert.status == AlertStatus.OPEN,
                or_(
                    Alert.user_id == user_id,
                    and_(
                        Alert.user_id.is_(None),
                        Alert.kind.in_(ACCOUNT_REVIEW_KINDS),
                        credited_by_account,
                    ),
                ),
            )
        )
        return bool(count)

    def resolve(self, db: Session, alert_id: int, *, resolved_by: str) -> Alert:
        alert = db.get(Alert, alert_id)
        if alert is None:
            raise AlertNotFound(f"alert {alert_id} does not exist")
        if alert.status is AlertStatus.RESOLVED:
            return alert
        alert.status = AlertStatus.RESOLVED
        alert.resolved_at = datetime.now(UTC)
        alert.resolved_by = resolved_by
        db.flush()
        logger.info("alert resolved alert_id=%s kind=%s resolved_by=%s", alert.id, alert.kind.value, resolved_by)
        return alert

    def list_alerts(
        self,
        db: Session,
        *,
        status: AlertStatus | None = None,
        kind: AlertKind | None = None,
        limit: int = 200,
    ) -> list[Alert]:
        query = select(Alert).order_by(Alert.opened_at.desc(), Alert.id.desc()).limit(limit)
        if status is not None:
            query = query.where(Alert.status == status)
        if kind is not None:
            query = query.where(Alert.kind == kind)
        return list(db.scalars(query).all())
