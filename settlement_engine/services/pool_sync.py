from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from settlement_engine.core.context import SettlementContext
from settlement_engine.core.errors import ParseError, PoolApiError, TransientFetchError
from settlement_engine.core.logging import context_logger
from settlement_engine.core.observability import PrometheusMetrics
from settlement_engine.db.models.pool import PoolBalanceSnapshot, PoolPayout
from settlement_engine.db.session import insert_if_absent
from settlement_engine.pools.registry import PoolClient
from settlement_engine.services.payhash import PayhashIngestionService
from settlement_engine.services.reconcile import ReconcileService
from settlement_engine.services.settlement import floor_to_window

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncResult:
    workers_seen: int
    payhash_rows: int
    snapshot_id: int
    payouts_recorded: int


class PoolSyncService:
    """One poll of a pool account: worker payhash, balance snapshot, payouts, hashrate check."""

    def __init__(
        self,
        *,
        ingestion: PayhashIngestionService,
        reconcile: ReconcileService,
        window: timedelta = timedelta(hours=1),
        metrics: PrometheusMetrics | None = None,
    ) -> None:
        self.ingestion = ingestion
        self.reconcile = reconcile
        self.window = window
        self.metrics = metrics

    def sync_account(self, db: Session, ctx: SettlementContext, client: PoolClient, *, now: datetime) -> SyncResult:
        log = context_logger(__name__, ctx)
        try:
            samples = client.fetch_workers()
            overview = client.fetch_overview()
            payouts = client.fetch_payouts()
        except (TransientFetchError, PoolApiError, ParseError) as exc:
            self._record_fetch(ctx, type(exc).__name__)
            log.warning("pool poll failed: %s", exc)
            raise
        self._record_fetch(ctx, "ok")

        ingestion = self.ingestion.record(db, ctx, samples, now=now)

        snapshot = PoolBalanceSnapshot(
            pool_source=ctx.pool_source,
            account=ctx.account,
            coin=ctx.coin,
            captured_at=now,
            income_total=overview.income_total,
            balance=overview.balance,
            paid_total=overview.paid_total,
            hashrate_mhs=overview.hashrate_mhs,
            active_workers=overview.active_workers,
        )
        db.add(snapshot)
        db.flush()

        payouts_recorded = 0
        for payout in payouts:
            if insert_if_absent(
                db,
                PoolPayout,
                {
                    "pool_source": ctx.pool_source,
                    "account": ctx.account,
                    "coin": ctx.coin,
                    "payout_key": payout.payout_key,
                    "amount": payout.amount,
                    "paid_at": payout.paid_at,
                },
                conflict_columns=("pool_source", "account", "coin", "payout_key"),
            ):
                payouts_recorded += 1

        if overview.hashrate_mhs is not None:
            engine_hashrate = sum(
                (
                    self.ingestion.hashrate_for(sample)
                    for sample in samples
                    if not self.ingestion.is_stale(sample, now=now)
                ),
                Decimal("0"),
            )
            self.reconcile.check_hashrate(
                db,
                ctx,
                pool_hashrate=overview.hashrate_mhs,
                engine_hashrate=engine_hashrate,
                ref_key=floor_to_window(now, self.window).isoformat(),
            )

        log.info(
            "pool account synced workers=%s payhash_rows=%s payouts=%s income_total=%s",
            len(samples),
            ingestion.written,
            payouts_recorded,
            overview.income_total,
        )
        return SyncResult(
            workers_seen=len(samples),
            payhash_rows=ingestion.written,
            snapshot_id=snapshot.id,
            payouts_recorded=payouts_recorded,
        )

    def _record_fetch(self, ctx: SettlementContext, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_fetch(ctx.pool_source, outcome)
