from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class SettlementContext:
    """Trace scope for one account/coin, optionally narrowed to a settlement window.

    The context is handed down explicitly from the scheduler to every service
    call so that log records and alerts of one run share the same trace id.
    """

    trace_id: str
    pool_source: str
    account: str
    coin: str
    window_start: datetime | None = None
    window_end: datetime | None = None

    @classmethod
    def new(cls, *, pool_source: str, account: str, coin: str) -> SettlementContext:
        return cls(trace_id=uuid.uuid4().hex, pool_source=pool_source, account=account, coin=coin)

    def for_window(self, window_start: datetime, window_end: datetime) -> SettlementContext:
        return replace(self, window_start=window_start, window_end=window_end)

    def log_extra(self) -> dict[str, Any]:
        extra: dict[str, Any] = {
            "trace_id": self.trace_id,
            "pool_source": self.pool_source,
            "account": self.account,
            "coin": self.coin,
        }
        if self.window_start is not None:
            extra["window_start"] = self.window_start.isoformat()
        if self.window_end is not None:
            extra["window_end"] = self.window_end.isoformat()
        return extra
