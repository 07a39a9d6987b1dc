from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation

_UNIT_TO_MHS = {
    "EH/S": Decimal("1000000000000"),
    "PH/S": Decimal("1000000000"),
    "TH/S": Decimal("1000000"),
    "GH/S": Decimal("1000"),
    "MH/S": Decimal("1"),
    "KH/S": Decimal("0.001"),
    "H/S": Decimal("0.000001"),
}


@dataclass(frozen=True)
class WorkerSample:
    """One worker as reported by one poll; hashrates are in MH/s."""

    pool_source: str
    account: str
    coin: str
    raw_worker_id: str
    hash_now: Decimal
    hash_avg: Decimal
    last_share_at: datetime | None


@dataclass(frozen=True)
class AccountOverview:
    income_total: Decimal
    hashrate_mhs: Decimal | None = None
    balance: Decimal | None = None
    paid_total: Decimal | None = None
    active_workers: int | None = None


@dataclass(frozen=True)
class PoolPayout:
    payout_key: str
    amount: Decimal
    paid_at: datetime | None


def to_decimal(value: object) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    text = str(value).strip()
    if not text:
        return None
    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None
    # NaN and Infinity count as missing
    return amount if amount.is_finite() else None


def to_mhs(value: object, unit: str | None) -> Decimal:
    """Normalize a hashrate to MH/s; a missing unit means H/s."""

    amount = to_decimal(value)
    if amount is None:
        return Decimal("0")
    normalized_unit = (unit or "H/S").strip().upper()
    if not normalized_unit.endswith("/S"):
        normalized_unit = f"{normalized_unit}/S"
    factor = _UNIT_TO_MHS.get(normalized_unit)
    if factor is None:
        factor = _UNIT_TO_MHS["H/S"]
    return amount * factor


def to_datetime(value: object) -> datetime | None:
    """Accept epoch seconds, epoch milliseconds or ISO-8601 strings."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, int | float | Decimal):
        epoch = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            epoch = float(text)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    if not math.isfinite(epoch) or epoch <= 0:
        return None
    if epoch > 1e12:
        epoch /= 1000
    return datetime.fromtimestamp(epoch, tz=UTC)
