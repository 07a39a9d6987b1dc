from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.orm import Session

from settlement_engine.core.context import SettlementContext
from settlement_engine.db.models.enums import AlertKind, ReconcileMetric, ReconcileStatus
from settlement_engine.db.models.pool import ReconcileReport
from settlement_engine.services.alerts import AlertService

logger = logging.getLogger(__name__)

DIFF_QUANTUM = Decimal("0.000001")

_ALERT_KINDS = {
    ReconcileMetric.HASHRATE: AlertKind.RECONCILE_HASHRATE,
    ReconcileMetric.REVENUE: AlertKind.RECONCILE_REVENUE,
}


def relative_diff(baseline: Decimal, observed: Decimal) -> Decimal:
    return (abs(baseline - observed) / baseline).quantize(DIFF_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ReconcileOutcome:
    metric: ReconcileMetric
    status: ReconcileStatus
    diff_ratio: Decimal
    alert_id: int | None


class ReconcileService:
    """Compares engine aggregates with what the pool reports for the same window.

    Drift is recorded and alerted; it never blocks the settlement commit.
    """

    def __init__(
        self,
        alerts: AlertService,
        *,
        hashrate_threshold: Decimal = Decimal("0.05"),
        revenue_threshold: Decimal = Decimal("0.02"),
    ) -> None:
        self.alerts = alerts
        self.thresholds = {
            ReconcileMetric.HASHRATE: hashrate_threshold,
            ReconcileMetric.REVENUE: revenue_threshold,
        }

    def check_hashrate(
        self,
        db: Session,
        ctx: SettlementContext,
        *,
        pool_hashrate: Decimal,
        engine_hashrate: Decimal,
        ref_key: str,
    ) -> ReconcileOutcome | None:
        return self._check(
            db, ctx, metric=ReconcileMetric.HASHRATE, baseline=pool_hashrate, observed=engine_hashrate, ref_key=ref_key
        )

    def check_revenue(
        self,
        db: Session,
        ctx: SettlementContext,
        *,
        pool_revenue: Decimal,
        engine_revenue: Decimal,
        ref_key: str,
    ) -> ReconcileOutcome | None:
        return self._check(
            db, ctx, metric=ReconcileMetric.REVENUE, baseline=pool_revenue, observed=engine_revenue, ref_key=ref_key
        )

    def _check(
        self,
        db: Session,
        ctx: SettlementContext,
        *,
        metric: ReconcileMetric,
        baseline: Decimal,
        observed: Decimal,
        ref_key: str,
    ) -> ReconcileOutcome | None:
        if baseline <= 0:
            logger.info("reconcile skipped metric=%s baseline=%s", metric.value, baseline, extra=ctx.log_extra())
            return None

        threshold = self.thresholds[metric]
        diff_ratio = relative_diff(baseline, observed)
        status = ReconcileStatus.WARN if diff_ratio > threshold else ReconcileStatus.OK
        db.add(
            ReconcileReport(
                pool_source=ctx.pool_source,
                account=ctx.account,
                coin=ctx.coin,
                metric=metric,
                ref_key=ref_key,
                baseline=baseline,
                observed=observed,
                diff_ratio=diff_ratio,
                threshold=threshold,
                status=status,
                trace_id=ctx.trace_id,
            )
        )
        db.flush()

        alert_id = None
        if status is ReconcileStatus.WARN:
            raised = self.alerts.raise_alert(
                db,
                ctx,
                kind=_ALERT_KINDS[metric],
                ref_key=ref_key,
                message=(
                    f"{metric.value} drift {diff_ratio} exceeds {threshold}: "
                    f"pool={baseline} engine={observed}"
                ),
            )
            alert_id = raised.alert.id
        logger.info(
            "reconcile metric=%s status=%s diff=%s threshold=%s",
            metric.value,
            status.value,
            diff_ratio,
            threshold,
            extra=ctx.log_extra(),
        )
        return ReconcileOutcome(metric=metric, status=status, diff_ratio=diff_ratio, alert_id=alert_id)
