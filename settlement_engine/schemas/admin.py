from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class AlertItem(BaseModel):
    id: int
    pool_source: str
    account: str
    coin: str
    user_id: int | None
    kind: str
    severity: str
    status: str
    ref_key: str
    message: str
    trace_id: str | None
    opened_at: datetime
    resolved_at: datetime | None
    resolved_by: str | None


class AlertsResponse(BaseModel):
    alerts: list[AlertItem]


class AlertResolveRequest(BaseModel):
    resolved_by: str = Field(min_length=1, max_length=128)


class SettlementBatchItem(BaseModel):
    id: int
    batch_key: str
    pool_source: str
    account: str
    coin: str
    window_start: datetime
    window_end: datetime
    status: str
    gross_amount_native: Decimal | None
    gross_amount_accounting: Decimal | None
    accounting_unit: str | None
    coin_to_accounting_rate: Decimal | None
    commission_rate: Decimal | None
    total_score: int | None
    unclaimed_score: int | None
    item_count: int
    remark: str | None
    trace_id: str | None


class SettlementsResponse(BaseModel):
    settlements: list[SettlementBatchItem]
