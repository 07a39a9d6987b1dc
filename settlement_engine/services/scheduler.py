from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

from fastapi import FastAPI
from sqlalchemy.orm import Session, sessionmaker

from settlement_engine.core.config import Settings, settings
from settlement_engine.core.context import SettlementContext
from settlement_engine.core.errors import SettlementError
from settlement_engine.core.logging import context_logger
from settlement_engine.core.observability import PrometheusMetrics
from settlement_engine.core.rate_limit import HostRateLimiter
from settlement_engine.db.session import SessionLocal, transactional_session
from settlement_engine.pools.http import PoolHttpClient
from settlement_engine.pools.registry import PoolClient, build_pool_client
from settlement_engine.services.alerts import AlertService, Notifier
from settlement_engine.services.commission import CommissionService
from settlement_engine.services.ledger import LedgerWriter
from settlement_engine.services.ownership import SqlWorkerBindingLookup, WorkerOwnershipResolver
from settlement_engine.services.payhash import PayhashIngestionService, PayhashWindowScoreService
from settlement_engine.services.pool_sync import PoolSyncService
from settlement_engine.services.rate_feed import RateFeedClient
from settlement_engine.services.reconcile import ReconcileService
from settlement_engine.services.settlement import SettlementOutcome, SettlementPipeline
from settlement_engine.services.valuation import ValuationService
from settlement_engine.services.whitelist import WorkerWhitelistService, load_active_worker_ids
from settlement_engine.services.worker_ids import WorkerIdNormalizer

logger = logging.getLogger(__name__)


class SettlementRuntime:
    """Long-lived collaborators shared by every pool account loop."""

    def __init__(
        self,
        config: Settings,
        *,
        session_factory: sessionmaker[Session] = SessionLocal,
        metrics: PrometheusMetrics | None = None,
        notifier: Notifier | None = None,
        http: PoolHttpClient | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.config = config
        self.session_factory = session_factory
        self.metrics = metrics
        self.clock = clock
        self.http = http or PoolHttpClient(
            rate_limiter=HostRateLimiter(qps=config.pool_per_host_qps),
            timeout_seconds=config.pool_timeout_ms / 1000,
            max_retries=config.pool_max_retries,
            backoff_seconds=config.pool_retry_backoff_seconds,
        )
        self.normalizer = WorkerIdNormalizer(strip_prefix=config.worker_id_strip_prefix)
        self.whitelist = WorkerWhitelistService(
            lambda: load_active_worker_ids(session_factory),
            refresh_seconds=config.whitelist_refresh_seconds,
        )
        self.alerts = AlertService(notifier=notifier, metrics=metrics)
        self.reconcile = ReconcileService(
            self.alerts,
            hashrate_threshold=config.reconcile_hashrate_threshold,
            revenue_threshold=config.reconcile_revenue_threshold,
        )
        self.sync = PoolSyncService(
            ingestion=PayhashIngestionService(
                derive_seconds=config.payhash_derive_seconds,
                prefer_current=config.payhash_prefer_current,
                stale_seconds=config.worker_stale_seconds,
            ),
            reconcile=self.reconcile,
            window=timedelta(seconds=config.settlement_window_seconds),
            metrics=metrics,
        )
        self.valuation = ValuationService(
            accounting_unit=config.accounting_unit,
            display_currency=config.display_currency,
            manual_rates=config.manual_coin_rates,
            max_age=timedelta(minutes=config.rate_max_age_minutes),
        )
        self.ledger = LedgerWriter(CommissionService(config.commission_tiers))
        self.clients: list[PoolClient] = [
            build_pool_client(account, self.http) for account in config.pool_accounts if account.enabled
        ]
        self.rate_feed: RateFeedClient | None = None
        if config.rate_feed_url:
            self.rate_feed = RateFeedClient(
                self.http,
                url=config.rate_feed_url,
                pairs=config.rate_feed_pairs,
                accounting_unit=config.accounting_unit,
                display_currency=config.display_currency,
                peg_coin=config.accounting_peg_coin,
                units_per_peg_coin=config.accounting_units_per_peg_coin,
            )

    def close(self) -> None:
        self.http.close()

    def pipeline(self, db: Session) -> SettlementPipeline:
        resolver = WorkerOwnershipResolver(
            SqlWorkerBindingLookup(db),
            normalizer=self.normalizer,
            whitelist=self.whitelist,
            allow_synthetic=self.config.allow_synthetic_user_id,
        )
        return SettlementPipeline(
            score_service=PayhashWindowScoreService(resolver),
            valuation=self.valuation,
            ledger=self.ledger,
            reconcile=self.reconcile,
            alerts=self.alerts,
            commission_rate=self.config.platform_commission_rate,
            unclaimed_user_id=self.config.unclaimed_user_id,
            window=timedelta(seconds=self.config.settlement_window_seconds),
            settle_delay=timedelta(seconds=self.config.settlement_delay_seconds),
            max_snapshot_lag=timedelta(minutes=self.config.max_snapshot_lag_minutes),
            spike_factor=self.config.spike_factor,
            spike_lookback=timedelta(days=self.config.spike_lookback_days),
            spike_min_samples=self.config.spike_min_samples,
            revenue_span_windows=self.config.reconcile_revenue_span_windows,
            metrics=self.metrics,
        )

    def run_account_tick(self, client: PoolClient, *, now: datetime | None = None) -> list[SettlementOutcome]:
        """Poll one account, then settle its closed windows in order.

        A failed poll leaves pending windows for the next tick. Settlement
        stops at the first window that raises, so later windows never settle
        ahead of an earlier one.
        """

        now = now or self.clock()
        account = client.account
        ctx = SettlementContext.new(pool_source=account.pool_source, account=account.name, coin=account.coin)
        log = context_logger(__name__, ctx)
        outcomes: list[SettlementOutcome] = []
        with self.session_factory() as db:
            try:
                self.sync.sync_account(db, ctx, client, now=now)
                db.commit()
            except SettlementError:
                db.rollback()
                return outcomes

            pipeline = self.pipeline(db)
            for window_start, window_end in pipeline.pending_windows(db, ctx, now=now):
                try:
                    outcomes.append(pipeline.run_window(db, ctx, window_start=window_start, window_end=window_end))
                except SettlementError as exc:
                    log.warning("settlement halted at window_start=%s: %s", window_start.isoformat(), exc)
                    break
        return outcomes

    def refresh_rates(self, *, now: datetime | None = None) -> int:
        if self.rate_feed is None:
            return 0
        try:
            with transactional_session(self.session_factory) as db:
                return self.rate_feed.refresh(db, now=now or self.clock())
        except SettlementError as exc:
            logger.warning("exchange rate refresh failed: %s", exc)
            return 0


async def _account_loop(
    runtime: SettlementRuntime, client: PoolClient, stop_event: asyncio.Event, *, interval_seconds: float
) -> None:
    while not stop_event.is_set():
        try:
            await asyncio.to_thread(runtime.run_account_tick, client)
        except Exception:  # noqa: BLE001
            logger.exception(
                "pool account loop failed",
                extra={"pool_source": client.account.pool_source, "account": client.account.name},
            )
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except TimeoutError:
            continue


async def _whitelist_loop(runtime: SettlementRuntime, stop_event: asyncio.Event, *, interval_seconds: float) -> None:
    while not stop_event.is_set():
        try:
            await asyncio.to_thread(runtime.whitelist.refresh)
        except Exception:  # noqa: BLE001
            logger.exception("worker whitelist refresh failed")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except TimeoutError:
            continue


async def _rate_feed_loop(runtime: SettlementRuntime, stop_event: asyncio.Event, *, interval_seconds: float) -> None:
    while not stop_event.is_set():
        try:
            await asyncio.to_thread(runtime.refresh_rates)
        except Exception:  # noqa: BLE001
            logger.exception("exchange rate loop failed")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except TimeoutError:
            continue


@asynccontextmanager
async def scheduler_lifespan(app: FastAPI) -> AsyncIterator[None]:
    if os.getenv("PYTEST_CURRENT_TEST") or not settings.enable_scheduler:
        yield
        return

    runtime = SettlementRuntime(settings, metrics=getattr(app.state, "metrics", None))
    stop_event = asyncio.Event()
    tasks = [
        asyncio.create_task(_whitelist_loop(runtime, stop_event, interval_seconds=settings.whitelist_refresh_seconds))
    ]
    if runtime.rate_feed is not None:
        tasks.append(
            asyncio.create_task(
                _rate_feed_loop(runtime, stop_event, interval_seconds=settings.rate_feed_interval_seconds)
            )
        )
    for client in runtime.clients:
        tasks.append(
            asyncio.create_task(
                _account_loop(runtime, client, stop_event, interval_seconds=settings.sync_interval_seconds)
            )
        )
    logger.info("settlement scheduler started accounts=%s", len(runtime.clients))
    app.state.scheduler_stop_event = stop_event
    app.state.scheduler_tasks = tasks
    app.state.settlement_runtime = runtime
    try:
        yield
    finally:
        stop_event.set()
        await asyncio.gather(*tasks, return_exceptions=True)
        runtime.close()
