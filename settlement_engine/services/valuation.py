from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement_engine.core.errors import ValuationUnavailable
from settlement_engine.db.models.pool import ExchangeRate

logger = logging.getLogger(__name__)

RATE_QUANTUM = Decimal("0.00000001")
SOURCE_IDENTITY = "identity"
SOURCE_MANUAL = "manual"
SOURCE_DERIVED = "derived"


def as_utc(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)


@dataclass(frozen=True)
class RateSnapshot:
    """Rates frozen for one settlement run."""

    coin: str
    accounting_unit: str
    display_currency: str
    coin_to_accounting: Decimal
    accounting_to_display: Decimal
    source: str
    captured_at: datetime

    @property
    def coin_to_display(self) -> Decimal:
        return (self.coin_to_accounting * self.accounting_to_display).quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP)

    def to_accounting(self, amount_native: Decimal) -> Decimal:
        return (amount_native * self.coin_to_accounting).quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP)

    def to_native(self, amount_accounting: Decimal) -> Decimal:
        return (amount_accounting / self.coin_to_accounting).quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP)

    def to_display(self, amount_accounting: Decimal) -> Decimal:
        return (amount_accounting * self.accounting_to_display).quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP)


def record_rate(
    db: Session,
    *,
    base_currency: str,
    quote_currency: str,
    rate: Decimal,
    source: str,
    observed_at: datetime,
) -> ExchangeRate:
    if rate <= 0:
        raise ValueError("exchange rate must be positive")
    row = ExchangeRate(
        base_currency=base_currency.upper(),
        quote_currency=quote_currency.upper(),
        rate=rate,
        source=source,
        observed_at=observed_at,
    )
    db.add(row)
    db.flush()
    return row


class ValuationService:
    def __init__(
        self,
        *,
        accounting_unit: str = "CAL",
        display_currency: str = "CNY",
        manual_rates: Mapping[str, Decimal] | None = None,
        max_age: timedelta = timedelta(minutes=60),
    ) -> None:
        self.accounting_unit = accounting_unit.upper()
        self.display_currency = display_currency.upper()
        self.manual_rates = {coin.upper(): Decimal(rate) for coin, rate in (manual_rates or {}).items()}
        self.max_age = max_age

    def latest_rate(self, db: Session, *, base: str, quote: str, at: datetime) -> Decimal | None:
        row = db.scalar(
            select(ExchangeRate)
            .where(
                ExchangeRate.base_currency == base.upper(),
                ExchangeRate.quote_currency == quote.upper(),
                ExchangeRate.observed_at <= at,
            )
            .order_by(ExchangeRate.observed_at.desc(), ExchangeRate.id.desc())
            .limit(1)
        )
        if row is None or at - as_utc(row.observed_at) > self.max_age:
            return None
        return row.rate

    def snapshot(self, db: Session, *, coin: str, at: datetime) -> RateSnapshot:
        """Build the single rate snapshot used by every item of one run."""

        coin = coin.upper()
        accounting_to_display = self.latest_rate(db, base=self.accounting_unit, quote=self.display_currency, at=at)
        if accounting_to_display is None or accounting_to_display <= 0:
            raise ValuationUnavailable(f"no fresh {self.accounting_unit}/{self.display_currency} rate")

        if coin == self.accounting_unit:
            coin_to_accounting, source = Decimal("1"), SOURCE_IDENTITY
        elif coin in self.manual_rates:
            coin_to_accounting, source = self.manual_rates[coin], SOURCE_MANUAL
        else:
            coin_to_display = self.latest_rate(db, base=coin, quote=self.display_currency, at=at)
            if coin_to_display is None or coin_to_display <= 0:
                raise ValuationUnavailable(f"no fresh {coin}/{self.display_currency} rate")
            coin_to_accounting = (coin_to_display / accounting_to_display).quantize(
                RATE_QUANTUM, rounding=ROUND_HALF_UP
            )
            source = SOURCE_DERIVED

        if coin_to_accounting <= 0:
            raise ValuationUnavailable(f"{coin}/{self.accounting_unit} rate is not positive")

        snapshot = RateSnapshot(
            coin=coin,
            accounting_unit=self.accounting_unit,
            display_currency=self.display_currency,
            coin_to_accounting=coin_to_accounting,
            accounting_to_display=accounting_to_display,
            source=source,
            captured_at=at,
        )
        logger.info(
            "rate snapshot coin=%s coin_to_accounting=%s accounting_to_display=%s source=%s",
            coin,
            coin_to_accounting,
            accounting_to_display,
            source,
        )
        return snapshot
