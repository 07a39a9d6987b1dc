from __future__ import annotations

from dataclasses import dataclass

BASE_ID_SEPARATORS = (".", ":", "/")


@dataclass(frozen=True)
class WorkerIdNormalizer:
    """Strips the platform's mining-account prefix from raw pool worker names."""

    strip_prefix: str = "suanlibao."

    def strip(self, raw_worker_id: str | None) -> str | None:
        """Return the id without the configured prefix, or ``None`` if nothing remains."""

        if raw_worker_id is None:
            return None
        trimmed = raw_worker_id.strip()
        if not trimmed:
            return None
        prefix = self.strip_prefix.strip()
        if prefix and trimmed.lower().startswith(prefix.lower()):
            stripped = trimmed[len(prefix):].strip()
            return stripped or None
        return trimmed

    def has_prefix(self, raw_worker_id: str | None) -> bool:
        prefix = self.strip_prefix.strip()
        if raw_worker_id is None or not prefix:
            return False
        return raw_worker_id.strip().lower().startswith(prefix.lower())

    @staticmethod
    def base_id(worker_id: str | None) -> str | None:
        """Cut a rig suffix such as ``user.rig1`` or ``user:rig1`` down to ``user``."""

        if worker_id is None:
            return None
        trimmed = worker_id.strip()
        if not trimmed:
            return None
        positions = [trimmed.find(separator) for separator in BASE_ID_SEPARATORS]
        cut = min((position for position in positions if position >= 0), default=-1)
        if cut <= 0:
            return trimmed
        return trimmed[:cut]
