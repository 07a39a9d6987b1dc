from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import ROUND_DOWN, Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement_engine.core.context import SettlementContext
from settlement_engine.core.errors import ConservationViolation, InvalidAllocationInput, ValuationUnavailable
from settlement_engine.core.logging import context_logger
from settlement_engine.core.observability import PrometheusMetrics
from settlement_engine.db.models.enums import AlertKind, AlertSeverity, BatchStatus
from settlement_engine.db.models.pool import PoolBalanceSnapshot
from settlement_engine.db.models.settlement import SettlementBatch
from settlement_engine.services.alerts import AlertService
from settlement_engine.services.allocation import LEDGER_QUANTUM, allocate
from settlement_engine.services.ledger import LedgerWriter
from settlement_engine.services.payhash import PayhashWindowScoreService
from settlement_engine.services.reconcile import ReconcileService
from settlement_engine.services.valuation import RateSnapshot, ValuationService, as_utc

logger = logging.getLogger(__name__)

FINAL_STATUSES = (BatchStatus.SETTLED, BatchStatus.EMPTY, BatchStatus.SKIPPED)
REMARK_NO_POOL_INCREMENT = "NO_POOL_INCREMENT"
REMARK_SNAPSHOT_MISSING = "SNAPSHOT_MISSING"
REMARK_PAYHASH_MISSING = "PAYHASH_MISSING"
MAX_CATCHUP_WINDOWS = 24


def batch_key_for(ctx: SettlementContext, window_start: datetime, window_end: datetime) -> str:
    return (
        f"{ctx.pool_source}:payhash:{ctx.coin.lower()}:{ctx.account}:"
        f"{int(window_start.timestamp())}-{int(window_end.timestamp())}"
    )


def floor_to_window(moment: datetime, window: timedelta) -> datetime:
    seconds = int(window.total_seconds())
    epoch = int(moment.timestamp())
    return datetime.fromtimestamp(epoch - epoch % seconds, tz=UTC)


@dataclass(frozen=True)
class WindowRevenue:
    gross_native: Decimal
    start_snapshot_id: int
    end_snapshot_id: int


@dataclass(frozen=True)
class SpanRevenue:
    pool_income: Decimal
    settled_gross: Decimal
    windows: int


@dataclass(frozen=True)
class SettlementOutcome:
    batch_key: str
    status: BatchStatus
    batch_id: int | None = None
    replayed: bool = False
    remark: str | None = None
    item_count: int = 0


class SettlementPipeline:
    """Settles one pool account/coin window at a time.

    Steps: replay check, pool revenue delta, rate snapshot, window scores,
    allocation, ledger commit. Reconciliation and spike detection run after
    the commit in their own transaction.
    """

    def __init__(
        self,
        *,
        score_service: PayhashWindowScoreService,
        valuation: ValuationService,
        ledger: LedgerWriter,
        reconcile: ReconcileService,
        alerts: AlertService,
        commission_rate: Decimal,
        unclaimed_user_id: int,
        window: timedelta = timedelta(hours=1),
        settle_delay: timedelta = timedelta(minutes=5),
        max_snapshot_lag: timedelta = timedelta(minutes=10),
        spike_factor: Decimal = Decimal("10"),
        spike_lookback: timedelta = timedelta(days=7),
        spike_min_samples: int = 24,
        revenue_span_windows: int = 24,
        metrics: PrometheusMetrics | None = None,
    ) -> None:
        self.score_service = score_service
        self.valuation = valuation
        self.ledger = ledger
        self.reconcile = reconcile
        self.alerts = alerts
        self.commission_rate = commission_rate
        self.unclaimed_user_id = unclaimed_user_id
        self.window = window
        self.settle_delay = settle_delay
        self.max_snapshot_lag = max_snapshot_lag
        self.spike_factor = spike_factor
        self.spike_lookback = spike_lookback
        self.spike_min_samples = spike_min_samples
        self.revenue_span_windows = revenue_span_windows
        self.metrics = metrics

    def find_batch(
        self, db: Session, ctx: SettlementContext, *, window_start: datetime, window_end: datetime
    ) -> SettlementBatch | None:
        return db.scalar(
            select(SettlementBatch).where(
                SettlementBatch.pool_source == ctx.pool_source,
                SettlementBatch.account == ctx.account,
                SettlementBatch.coin == ctx.coin,
                SettlementBatch.window_start == window_start,
                SettlementBatch.window_end == window_end,
            )
        )

    def pending_windows(self, db: Session, ctx: SettlementContext, *, now: datetime) -> list[tuple[datetime, datetime]]:
        """Closed windows after the last final batch, oldest first."""

        latest_end = floor_to_window(now - self.settle_delay, self.window)
        last_final_end = db.scalar(
            select(SettlementBatch.window_end)
            .where(
                SettlementBatch.pool_source == ctx.pool_source,
                SettlementBatch.account == ctx.account,
                SettlementBatch.coin == ctx.coin,
                SettlementBatch.status.in_(FINAL_STATUSES),
            )
            .order_by(SettlementBatch.window_end.desc())
            .limit(1)
        )
        if last_final_end is None:
            cursor = latest_end - self.window
        else:
            cursor = max(as_utc(last_final_end), latest_end - self.window * MAX_CATCHUP_WINDOWS)

        windows: list[tuple[datetime, datetime]] = []
        while cursor + self.window <= latest_end:
            windows.append((cursor, cursor + self.window))
            cursor += self.window
        return windows

    def _snapshot_near(self, db: Session, ctx: SettlementContext, boundary: datetime) -> PoolBalanceSnapshot | None:
        return db.scalar(
            select(PoolBalanceSnapshot)
            .where(
                PoolBalanceSnapshot.pool_source == ctx.pool_source,
                PoolBalanceSnapshot.account == ctx.account,
                PoolBalanceSnapshot.coin == ctx.coin,
                PoolBalanceSnapshot.captured_at <= boundary,
                PoolBalanceSnapshot.captured_at >= boundary - self.max_snapshot_lag,
            )
            .order_by(PoolBalanceSnapshot.captured_at.desc(), PoolBalanceSnapshot.id.desc())
            .limit(1)
        )

    def window_revenue(
        self, db: Session, ctx: SettlementContext, *, window_start: datetime, window_end: datetime
    ) -> WindowRevenue | None:
        """Pool income accrued in the window, from cumulative balance snapshots."""

        end_snapshot = self._snapshot_near(db, ctx, window_end)
        if end_snapshot is None:
            return None

        start_snapshot = None
        previous_end_id = db.scalar(
            select(SettlementBatch.end_snapshot_id).where(
                SettlementBatch.pool_source == ctx.pool_source,
                SettlementBatch.account == ctx.account,
                SettlementBatch.coin == ctx.coin,
                SettlementBatch.window_end == window_start,
                SettlementBatch.end_snapshot_id.is_not(None),
            )
        )
        if previous_end_id is not None:
            start_snapshot = db.get(PoolBalanceSnapshot, previous_end_id)
        if start_snapshot is None:
            start_snapshot = self._snapshot_near(db, ctx, window_start)
        if start_snapshot is None:
            return None

        delta = (end_snapshot.income_total - start_snapshot.income_total).quantize(LEDGER_QUANTUM, rounding=ROUND_DOWN)
        return WindowRevenue(gross_native=delta, start_snapshot_id=start_snapshot.id, end_snapshot_id=end_snapshot.id)

    def run_window(
        self,
        db: Session,
        ctx: SettlementContext,
        *,
        window_start: datetime,
        window_end: datetime,
    ) -> SettlementOutcome:
        ctx = ctx.for_window(window_start, window_end)
        log = context_logger(__name__, ctx)
        batch_key = batch_key_for(ctx, window_start, window_end)

        batch = self.find_batch(db, ctx, window_start=window_start, window_end=window_end)
        if batch is not None and batch.status in FINAL_STATUSES:
            log.info("settlement window already final status=%s", batch.status.value)
            db.rollback()
            return SettlementOutcome(
                batch_key=batch_key,
                status=batch.status,
                batch_id=batch.id,
                replayed=True,
                remark=batch.remark,
            )

        revenue = self.window_revenue(db, ctx, window_start=window_start, window_end=window_end)
        if batch is None:
            batch = SettlementBatch(
                batch_key=batch_key,
                pool_source=ctx.pool_source,
                account=ctx.account,
                coin=ctx.coin,
                window_start=window_start,
                window_end=window_end,
                status=BatchStatus.PROCESSING,
            )
        batch.trace_id = ctx.trace_id

        if revenue is None:
            return self._close_without_items(
                db,
                ctx,
                batch,
                status=BatchStatus.SKIPPED,
                remark=REMARK_SNAPSHOT_MISSING,
                alert_kind=AlertKind.SNAPSHOT_MISSING,
                alert_message=f"no pool balance snapshot within {self.max_snapshot_lag} of the window bounds",
            )

        batch.gross_amount_native = revenue.gross_native
        batch.start_snapshot_id = revenue.start_snapshot_id
        batch.end_snapshot_id = revenue.end_snapshot_id
        if revenue.gross_native <= 0:
            return self._close_without_items(
                db, ctx, batch, status=BatchStatus.SKIPPED, remark=REMARK_NO_POOL_INCREMENT
            )

        try:
            snapshot = self.valuation.snapshot(db, coin=ctx.coin, at=window_end)
        except ValuationUnavailable as exc:
            db.rollback()
            log.warning("settlement aborted before writes: %s", exc)
            self.alerts.raise_alert(db, ctx, kind=AlertKind.RATE_MISSING, ref_key=batch_key, message=str(exc))
            db.commit()
            raise

        scores = self.score_service.window_scores(db, ctx, window_start=window_start, window_end=window_end)
        batch.total_score = scores.total_score
        batch.unclaimed_score = scores.unclaimed_score
        self._apply_snapshot(batch, snapshot)
        batch.gross_amount_accounting = snapshot.to_accounting(revenue.gross_native)

        if scores.total_score == 0:
            return self._close_without_items(
                db,
                ctx,
                batch,
                status=BatchStatus.EMPTY,
                remark=REMARK_PAYHASH_MISSING,
                alert_kind=AlertKind.PAYHASH_MISSING,
                alert_message=f"pool income {revenue.gross_native} {ctx.coin} but no payhash recorded in the window",
            )

        allocation_scores = dict(scores.user_scores)
        if scores.unclaimed_score > 0:
            allocation_scores[self.unclaimed_user_id] = (
                allocation_scores.get(self.unclaimed_user_id, 0) + scores.unclaimed_score
            )

        try:
            allocation = allocate(batch.gross_amount_accounting, allocation_scores, self.commission_rate)
            db.add(batch)
            db.flush()
            self.ledger.commit_batch(
                db,
                ctx,
                batch=batch,
                allocation=allocation,
                snapshot=snapshot,
                event_time=window_end,
            )
            batch.status = BatchStatus.SETTLED
            batch.remark = None
            db.commit()
        except (ConservationViolation, InvalidAllocationInput) as exc:
            db.rollback()
            self._mark_failed(db, ctx, batch_key=batch_key, window_start=window_start, window_end=window_end, error=exc)
            raise

        self._record_batch(ctx, BatchStatus.SETTLED)
        log.info(
            "settlement window settled gross_native=%s gross_accounting=%s items=%s unclaimed_score=%s",
            revenue.gross_native,
            allocation.gross_amount,
            len(allocation.items),
            scores.unclaimed_score,
        )
        self._after_commit(db, ctx, batch=batch)
        return SettlementOutcome(
            batch_key=batch_key,
            status=BatchStatus.SETTLED,
            batch_id=batch.id,
            item_count=len(allocation.items),
        )

    def _apply_snapshot(self, batch: SettlementBatch, snapshot: RateSnapshot) -> None:
        batch.accounting_unit = snapshot.accounting_unit
        batch.coin_to_accounting_rate = snapshot.coin_to_accounting
        batch.accounting_to_display_rate = snapshot.accounting_to_display
        batch.rate_source = snapshot.source
        batch.commission_rate = self.commission_rate

    def _close_without_items(
        self,
        db: Session,
        ctx: SettlementContext,
        batch: SettlementBatch,
        *,
        status: BatchStatus,
        remark: str,
        alert_kind: AlertKind | None = None,
        alert_message: str | None = None,
    ) -> SettlementOutcome:
        batch.status = status
        batch.remark = remark
        db.add(batch)
        db.flush()
        if alert_kind is not None:
            self.alerts.raise_alert(
                db, ctx, kind=alert_kind, ref_key=batch.batch_key, message=alert_message or remark
            )
        db.commit()
        self._record_batch(ctx, status)
        context_logger(__name__, ctx).info("settlement window closed status=%s remark=%s", status.value, remark)
        return SettlementOutcome(batch_key=batch.batch_key, status=status, batch_id=batch.id, remark=remark)

    def _mark_failed(
        self,
        db: Session,
        ctx: SettlementContext,
        *,
        batch_key: str,
        window_start: datetime,
        window_end: datetime,
        error: Exception,
    ) -> None:
        context_logger(__name__, ctx).error("settlement window failed: %s", error)
        batch = self.find_batch(db, ctx, window_start=window_start, window_end=window_end)
        if batch is None:
            batch = SettlementBatch(
                batch_key=batch_key,
                pool_source=ctx.pool_source,
                account=ctx.account,
                coin=ctx.coin,
                window_start=window_start,
                window_end=window_end,
                status=BatchStatus.FAILED,
            )
            db.add(batch)
        batch.status = BatchStatus.FAILED
        batch.remark = str(error)[:255]
        batch.trace_id = ctx.trace_id
        db.flush()
        self.alerts.raise_alert(
            db,
            ctx,
            kind=AlertKind.CONSERVATION_VIOLATION,
            ref_key=batch_key,
            message=str(error),
            severity=AlertSeverity.CRITICAL,
        )
        db.commit()
        self._record_batch(ctx, BatchStatus.FAILED)

    def span_revenue(self, db: Session, ctx: SettlementContext, *, batch: SettlementBatch) -> SpanRevenue | None:
        """Pool income against settled gross over the trailing windows ending at ``batch``.

        Income the pool reported for windows that closed EMPTY, SKIPPED or
        FAILED, or that fell between snapshots, shows up as a shortfall.
        """

        if batch.end_snapshot_id is None:
            return None
        span_start = batch.window_end - self.window * self.revenue_span_windows
        batches = db.scalars(
            select(SettlementBatch)
            .where(
                SettlementBatch.pool_source == ctx.pool_source,
                SettlementBatch.account == ctx.account,
                SettlementBatch.coin == ctx.coin,
                SettlementBatch.window_start >= span_start,
                SettlementBatch.window_end <= batch.window_end,
            )
            .order_by(SettlementBatch.window_start)
        ).all()
        first = next((row for row in batches if row.start_snapshot_id is not None), None)
        if first is None:
            return None
        start_snapshot = db.get(PoolBalanceSnapshot, first.start_snapshot_id)
        end_snapshot = db.get(PoolBalanceSnapshot, batch.end_snapshot_id)
        if start_snapshot is None or end_snapshot is None:
            return None

        covered = [row for row in batches if row.window_start >= first.window_start]
        settled_gross = sum(
            (row.gross_amount_native or Decimal("0") for row in covered if row.status == BatchStatus.SETTLED),
            Decimal("0"),
        )
        pool_income = (end_snapshot.income_total - start_snapshot.income_total).quantize(
            LEDGER_QUANTUM, rounding=ROUND_DOWN
        )
        return SpanRevenue(pool_income=pool_income, settled_gross=settled_gross, windows=len(covered))

    def _after_commit(self, db: Session, ctx: SettlementContext, *, batch: SettlementBatch) -> None:
        try:
            span = self.span_revenue(db, ctx, batch=batch)
            if span is not None:
                self.reconcile.check_revenue(
                    db,
                    ctx,
                    pool_revenue=span.pool_income,
                    engine_revenue=span.settled_gross,
                    ref_key=batch.batch_key,
                )
            self._check_spike(db, ctx, batch=batch)
            db.commit()
        except Exception:  # noqa: BLE001
            db.rollback()
            context_logger(__name__, ctx).exception("post-settlement checks failed")

    def _check_spike(self, db: Session, ctx: SettlementContext, *, batch: SettlementBatch) -> None:
        amount = batch.gross_amount_native or Decimal("0")
        history = db.scalars(
            select(SettlementBatch.gross_amount_native).where(
                SettlementBatch.pool_source == ctx.pool_source,
                SettlementBatch.account == ctx.account,
                SettlementBatch.coin == ctx.coin,
                SettlementBatch.status == BatchStatus.SETTLED,
                SettlementBatch.id != batch.id,
                SettlementBatch.window_end > batch.window_start - self.spike_lookback,
                SettlementBatch.window_end <= batch.window_start,
            )
        ).all()
        samples = [value for value in history if value is not None and value > 0]
        if len(samples) < self.spike_min_samples:
            return
        average = sum(samples, Decimal("0")) / len(samples)
        if amount > average * self.spike_factor:
            self.alerts.raise_alert(
                db,
                ctx,
                kind=AlertKind.HOURLY_EARNING_SPIKE,
                ref_key=batch.batch_key,
                message=(
                    f"window income {amount} {ctx.coin} exceeds {self.spike_factor}x "
                    f"the {len(samples)}-window average {average.quantize(LEDGER_QUANTUM)}"
                ),
            )

    def _record_batch(self, ctx: SettlementContext, status: BatchStatus) -> None:
        if self.metrics is not None:
            self.metrics.record_batch(ctx.pool_source, status.value)
