from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from settlement_engine.core.config import PoolAccountConfig
from settlement_engine.core.context import SettlementContext
from settlement_engine.core.errors import TransientFetchError
from settlement_engine.core.observability import PrometheusMetrics
from settlement_engine.db.models import Alert, AlertKind, PoolBalanceSnapshot, PoolPayout, WorkerPayhash
from settlement_engine.pools.samples import AccountOverview, WorkerSample
from settlement_engine.pools.samples import PoolPayout as PolledPayout
from settlement_engine.services.alerts import AlertService
from settlement_engine.services.payhash import PayhashIngestionService
from settlement_engine.services.pool_sync import PoolSyncService
from settlement_engine.services.reconcile import ReconcileService

NOW = datetime(2026, 3, 1, 12, 0, 30, tzinfo=UTC)


def _sample(worker_id: str, hashrate: str, *, last_share_at: datetime | None = NOW) -> WorkerSample:
    return WorkerSample(
        pool_source="f2pool",
        account="acct-1",
        coin="XMR",
        raw_worker_id=worker_id,
        hash_now=Decimal(hashrate),
        hash_avg=Decimal(hashrate),
        last_share_at=last_share_at,
    )


@dataclass
class FakePoolClient:
    overview: AccountOverview
    samples: list[WorkerSample] = field(default_factory=list)
    payouts: list[PolledPayout] = field(default_factory=list)
    error: Exception | None = None
    account: PoolAccountConfig = field(
        default_factory=lambda: PoolAccountConfig(
            pool_source="f2pool", name="acct-1", coin="XMR", base_url="https://api.f2pool.test"
        )
    )

    def fetch_workers(self) -> list[WorkerSample]:
        return list(self.samples)

    def fetch_overview(self) -> AccountOverview:
        if self.error is not None:
            raise self.error
        return self.overview

    def fetch_payouts(self) -> list[PolledPayout]:
        return list(self.payouts)


def _service(metrics: PrometheusMetrics | None = None) -> PoolSyncService:
    return PoolSyncService(
        ingestion=PayhashIngestionService(derive_seconds=60, prefer_current=True, stale_seconds=600),
        reconcile=ReconcileService(AlertService(), hashrate_threshold=Decimal("0.05")),
        metrics=metrics,
    )


def test_sync_records_payhash_snapshot_and_payouts(db_session: Session, ctx: SettlementContext) -> None:
    client = FakePoolClient(
        overview=AccountOverview(income_total=Decimal("12.5"), hashrate_mhs=Decimal("2.5"), balance=Decimal("0.5")),
        samples=[
            _sample("alice.rig1", "1.5"),
            _sample("bob", "1.0"),
            _sample("stale", "9", last_share_at=NOW - timedelta(hours=1)),
        ],
        payouts=[PolledPayout(payout_key="tx-1", amount=Decimal("1"), paid_at=NOW)],
    )

    result = _service().sync_account(db_session, ctx, client, now=NOW)
    db_session.commit()

    assert result.workers_seen == 3
    assert result.payhash_rows == 2
    assert result.payouts_recorded == 1
    rows = db_session.scalars(select(WorkerPayhash).order_by(WorkerPayhash.worker_id)).all()
    assert [(row.worker_id, row.payhash) for row in rows] == [("alice.rig1", 90), ("bob", 60)]
    snapshot = db_session.get(PoolBalanceSnapshot, result.snapshot_id)
    assert snapshot.income_total == Decimal("12.5")
    assert db_session.scalar(select(func.count()).select_from(Alert)) == 0


def test_repeated_poll_in_the_same_minute_is_idempotent(db_session: Session, ctx: SettlementContext) -> None:
    client = FakePoolClient(
        overview=AccountOverview(income_total=Decimal("12.5")),
        samples=[_sample("alice.rig1", "1.5")],
        payouts=[PolledPayout(payout_key="tx-1", amount=Decimal("1"), paid_at=NOW)],
    )
    service = _service()

    service.sync_account(db_session, ctx, client, now=NOW)
    second = service.sync_account(db_session, ctx, client, now=NOW + timedelta(seconds=10))
    db_session.commit()

    assert second.payouts_recorded == 0
    assert db_session.scalar(select(func.count()).select_from(WorkerPayhash)) == 1
    assert db_session.scalar(select(func.count()).select_from(PoolPayout)) == 1
    assert db_session.scalar(select(func.count()).select_from(PoolBalanceSnapshot)) == 2


def test_pool_hashrate_drift_opens_reconcile_alert(db_session: Session, ctx: SettlementContext) -> None:
    client = FakePoolClient(
        overview=AccountOverview(income_total=Decimal("1"), hashrate_mhs=Decimal("4")),
        samples=[_sample("alice.rig1", "1.5"), _sample("bob", "1.0")],
    )

    _service().sync_account(db_session, ctx, client, now=NOW)
    db_session.commit()

    alert = db_session.scalar(select(Alert))
    assert alert is not None
    assert alert.kind is AlertKind.RECONCILE_HASHRATE
    assert alert.ref_key == "2026-03-01T12:00:00+00:00"


def test_persistent_hashrate_drift_opens_one_alert_per_settlement_window(
    db_session: Session, ctx: SettlementContext
) -> None:
    client = FakePoolClient(
        overview=AccountOverview(income_total=Decimal("1"), hashrate_mhs=Decimal("2.66")),
        samples=[_sample("alice.rig1", "1.5", last_share_at=None), _sample("bob", "1.0", last_share_at=None)],
    )
    service = _service()

    for minute in (0, 1, 2, 60):
        service.sync_account(db_session, ctx, client, now=NOW + timedelta(minutes=minute))
        db_session.commit()

    alerts = db_session.scalars(select(Alert).order_by(Alert.ref_key)).all()
    assert [(alert.kind, alert.ref_key) for alert in alerts] == [
        (AlertKind.RECONCILE_HASHRATE, "2026-03-01T12:00:00+00:00"),
        (AlertKind.RECONCILE_HASHRATE, "2026-03-01T13:00:00+00:00"),
    ]


def test_fetch_failure_is_counted_and_reraised(db_session: Session, ctx: SettlementContext) -> None:
    metrics = PrometheusMetrics(enabled=True)
    client = FakePoolClient(
        overview=AccountOverview(income_total=Decimal("1")),
        samples=[_sample("alice.rig1", "1.5")],
        error=TransientFetchError("GET https://api.f2pool.test returned 503"),
    )

    with pytest.raises(TransientFetchError):
        _service(metrics).sync_account(db_session, ctx, client, now=NOW)

    assert db_session.scalar(select(func.count()).select_from(PoolBalanceSnapshot)) == 0
    assert 'pool_fetch_total{pool_source="f2pool",outcome="TransientFetchError"} 1' in metrics.render()
