from __future__ import annotations

import logging
import re
from collections.abc import Collection, Iterable
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement_engine.db.models.users import User
from settlement_engine.services.whitelist import WorkerWhitelistService
from settlement_engine.services.worker_ids import WorkerIdNormalizer

logger = logging.getLogger(__name__)

SYNTHETIC_USER_RE = re.compile(r"^usr-(\d+)$", re.IGNORECASE)


class WorkerBindingLookup(Protocol):
    def lookup(self, worker_ids: Collection[str]) -> dict[str, int]: ...


class SqlWorkerBindingLookup:
    """Bulk worker -> user lookup against the user store."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def lookup(self, worker_ids: Collection[str]) -> dict[str, int]:
        if not worker_ids:
            return {}
        rows = self.db.execute(
            select(User.worker_id, User.id).where(
                User.worker_id.in_(sorted(worker_ids)),
                User.is_active.is_(True),
            )
        ).all()
        return {worker_id: user_id for worker_id, user_id in rows if worker_id is not None}


@dataclass(frozen=True)
class _Candidate:
    trimmed: str
    stripped: str | None
    prefixed: bool
    base: str | None


def parse_synthetic_user_id(worker_id: str | None) -> int | None:
    if worker_id is None:
        return None
    match = SYNTHETIC_USER_RE.match(worker_id.strip())
    if match is None:
        return None
    user_id = int(match.group(1))
    return user_id if user_id > 0 else None


class WorkerOwnershipResolver:
    """Maps raw pool worker ids to platform user ids.

    Resolution is a pure function of the ids, the binding lookup and the
    whitelist snapshot. Unresolved workers are simply absent from the result.
    """

    def __init__(
        self,
        bindings: WorkerBindingLookup,
        *,
        normalizer: WorkerIdNormalizer | None = None,
        whitelist: WorkerWhitelistService | None = None,
        allow_synthetic: bool = False,
    ) -> None:
        self.bindings = bindings
        self.normalizer = normalizer or WorkerIdNormalizer()
        self.whitelist = whitelist
        self.allow_synthetic = allow_synthetic

    def _candidate(self, raw_worker_id: str) -> _Candidate:
        trimmed = raw_worker_id.strip()
        prefixed = self.normalizer.has_prefix(trimmed)
        stripped = self.normalizer.strip(trimmed)
        return _Candidate(
            trimmed=trimmed,
            stripped=stripped,
            prefixed=prefixed,
            base=self.normalizer.base_id(stripped),
        )

    def resolve(self, raw_worker_ids: Iterable[str]) -> dict[str, int]:
        candidates = {
            raw: self._candidate(raw)
            for raw in raw_worker_ids
            if raw is not None and raw.strip()
        }
        lookup_ids: set[str] = set()
        for candidate in candidates.values():
            lookup_ids.update(
                value for value in (candidate.trimmed, candidate.stripped, candidate.base) if value
            )
        bindings = self.bindings.lookup(lookup_ids)

        resolved: dict[str, int] = {}
        for raw, candidate in candidates.items():
            user_id = self._resolve_one(candidate, bindings)
            if user_id is not None:
                resolved[raw] = user_id
        logger.debug("worker ownership resolved=%s total=%s", len(resolved), len(candidates))
        return resolved

    def _resolve_one(self, candidate: _Candidate, bindings: dict[str, int]) -> int | None:
        if candidate.prefixed:
            # Platform-issued names: only the exact stripped id is trusted.
            if candidate.stripped is None:
                return None
            return bindings.get(candidate.stripped)

        for worker_id in (candidate.trimmed, candidate.base):
            if worker_id and worker_id in bindings:
                return bindings[worker_id]

        if not self.allow_synthetic or self.whitelist is None:
            return None
        for worker_id in (candidate.base, candidate.trimmed):
            if worker_id and self.whitelist.is_valid(worker_id):
                user_id = parse_synthetic_user_id(worker_id)
                if user_id is not None:
                    return user_id
        return None
