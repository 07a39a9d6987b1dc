from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from settlement_engine.db.models.users import User

logger = logging.getLogger(__name__)


def load_active_worker_ids(session_factory: sessionmaker[Session]) -> set[str]:
    with session_factory() as db:
        rows = db.scalars(
            select(User.worker_id).where(User.is_active.is_(True), User.worker_id.is_not(None))
        ).all()
    return {row.strip() for row in rows if row and row.strip()}


class WorkerWhitelistService:
    """Cached set of worker ids that belong to active platform users."""

    def __init__(
        self,
        loader: Callable[[], Iterable[str]],
        *,
        refresh_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._refresh_seconds = refresh_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._worker_ids: frozenset[str] = frozenset()
        self._loaded_at: float | None = None

    def refresh(self) -> int:
        worker_ids = frozenset(worker_id.strip() for worker_id in self._loader() if worker_id and worker_id.strip())
        with self._lock:
            self._worker_ids = worker_ids
            self._loaded_at = self._clock()
        logger.info("worker whitelist refreshed size=%s", len(worker_ids))
        return len(worker_ids)

    def _is_stale(self) -> bool:
        with self._lock:
            return self._loaded_at is None or self._clock() - self._loaded_at >= self._refresh_seconds

    def is_valid(self, worker_id: str | None) -> bool:
        if worker_id is None or not worker_id.strip():
            return False
        if self._is_stale():
            self.refresh()
        with self._lock:
            return worker_id.strip() in self._worker_ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._worker_ids)
