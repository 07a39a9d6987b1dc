from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from settlement_engine.core.context import SettlementContext
from settlement_engine.db.models.pool import WorkerPayhash
from settlement_engine.db.session import upsert
from settlement_engine.pools.samples import WorkerSample
from settlement_engine.services.ownership import WorkerOwnershipResolver

logger = logging.getLogger(__name__)

HASHRATE_QUANTUM = Decimal("0.00000001")


def floor_to_minute(moment: datetime) -> datetime:
    return moment.replace(second=0, microsecond=0)


@dataclass(frozen=True)
class IngestionResult:
    bucket_time: datetime
    written: int
    skipped_stale: int
    skipped_idle: int


class PayhashIngestionService:
    """Turns polled worker samples into per-minute payhash rows."""

    def __init__(self, *, derive_seconds: int = 60, prefer_current: bool = True, stale_seconds: int = 600) -> None:
        self.derive_seconds = derive_seconds
        self.prefer_current = prefer_current
        self.stale_seconds = stale_seconds

    def hashrate_for(self, sample: WorkerSample) -> Decimal:
        if self.prefer_current and sample.hash_now > 0:
            return sample.hash_now
        if sample.hash_avg > 0:
            return sample.hash_avg
        return sample.hash_now

    def payhash_for(self, hashrate_mhs: Decimal) -> int:
        if hashrate_mhs <= 0:
            return 0
        return int((hashrate_mhs * self.derive_seconds).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def is_stale(self, sample: WorkerSample, *, now: datetime) -> bool:
        if sample.last_share_at is None:
            return False
        return now - sample.last_share_at > timedelta(seconds=self.stale_seconds)

    def record(
        self,
        db: Session,
        ctx: SettlementContext,
        samples: Iterable[WorkerSample],
        *,
        now: datetime,
    ) -> IngestionResult:
        bucket_time = floor_to_minute(now)
        written = skipped_stale = skipped_idle = 0
        rows: dict[str, tuple[Decimal, int]] = {}
        for sample in samples:
            if self.is_stale(sample, now=now):
                skipped_stale += 1
                continue
            hashrate = self.hashrate_for(sample)
            payhash = self.payhash_for(hashrate)
            if payhash <= 0:
                skipped_idle += 1
                continue
            previous = rows.get(sample.raw_worker_id)
            if previous is not None:
                hashrate, payhash = previous[0] + hashrate, previous[1] + payhash
            rows[sample.raw_worker_id] = (hashrate, payhash)

        for worker_id, (hashrate, payhash) in sorted(rows.items()):
            upsert(
                db,
                WorkerPayhash,
                {
                    "pool_source": ctx.pool_source,
                    "account": ctx.account,
                    "coin": ctx.coin,
                    "bucket_time": bucket_time,
                    "worker_id": worker_id,
                    "hashrate_mhs": hashrate.quantize(HASHRATE_QUANTUM, rounding=ROUND_HALF_UP),
                    "payhash": payhash,
                },
                conflict_columns=("pool_source", "account", "coin", "bucket_time", "worker_id"),
                update_columns=("hashrate_mhs", "payhash"),
            )
            written += 1

        logger.info(
            "payhash bucket recorded written=%s stale=%s idle=%s",
            written,
            skipped_stale,
            skipped_idle,
            extra={**ctx.log_extra(), "bucket_time": bucket_time.isoformat()},
        )
        return IngestionResult(
            bucket_time=bucket_time,
            written=written,
            skipped_stale=skipped_stale,
            skipped_idle=skipped_idle,
        )


@dataclass(frozen=True)
class WindowScores:
    user_scores: dict[int, int] = field(default_factory=dict)
    unclaimed_score: int = 0
    unclaimed_workers: tuple[str, ...] = ()
    worker_count: int = 0

    @property
    def total_score(self) -> int:
        return sum(self.user_scores.values()) + self.unclaimed_score


class PayhashWindowScoreService:
    def __init__(self, resolver: WorkerOwnershipResolver) -> None:
        self.resolver = resolver

    def worker_totals(
        self,
        db: Session,
        ctx: SettlementContext,
        *,
        window_start: datetime,
        window_end: datetime,
    ) -> list[tuple[str, int]]:
        total = func.sum(WorkerPayhash.payhash)
        rows = db.execute(
            select(WorkerPayhash.worker_id, total)
            .where(
                WorkerPayhash.pool_source == ctx.pool_source,
                WorkerPayhash.account == ctx.account,
                WorkerPayhash.coin == ctx.coin,
                WorkerPayhash.bucket_time >= window_start,
                WorkerPayhash.bucket_time < window_end,
            )
            .group_by(WorkerPayhash.worker_id)
            .having(total > 0)
            .order_by(WorkerPayhash.worker_id)
        ).all()
        return [(worker_id, int(score)) for worker_id, score in rows]

    def window_scores(
        self,
        db: Session,
        ctx: SettlementContext,
        *,
        window_start: datetime,
        window_end: datetime,
    ) -> WindowScores:
        totals = self.worker_totals(db, ctx, window_start=window_start, window_end=window_end)
        owners = self.resolver.resolve(worker_id for worker_id, _ in totals)

        user_scores: dict[int, int] = {}
        unclaimed_score = 0
        unclaimed_workers: list[str] = []
        for worker_id, score in totals:
            user_id = owners.get(worker_id)
            if user_id is None:
                unclaimed_score += score
                unclaimed_workers.append(worker_id)
                continue
            user_scores[user_id] = user_scores.get(user_id, 0) + score

        scores = WindowScores(
            user_scores=dict(sorted(user_scores.items())),
            unclaimed_score=unclaimed_score,
            unclaimed_workers=tuple(unclaimed_workers),
            worker_count=len(totals),
        )
        logger.info(
            "window scores computed users=%s workers=%s unclaimed_workers=%s total=%s",
            len(scores.user_scores),
            scores.worker_count,
            len(unclaimed_workers),
            scores.total_score,
            extra=ctx.log_extra(),
        )
        return scores
