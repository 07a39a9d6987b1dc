from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.orm import Session

from settlement_engine.core.errors import ParseError
from settlement_engine.pools.http import PoolHttpClient
from settlement_engine.pools.jsonpath import read_path
from settlement_engine.pools.samples import to_decimal
from settlement_engine.services.valuation import RATE_QUANTUM, record_rate

logger = logging.getLogger(__name__)


class RateFeedClient:
    """Pulls market prices and stores them as exchange-rate observations.

    ``pairs`` maps ``"BASE/QUOTE"`` to a path in the feed response. The
    accounting unit is pegged to one coin, so its display rate is derived
    from that coin's price.
    """

    def __init__(
        self,
        http: PoolHttpClient,
        *,
        url: str,
        pairs: Mapping[str, str],
        accounting_unit: str,
        display_currency: str,
        peg_coin: str,
        units_per_peg_coin: Decimal,
        source: str = "market-feed",
    ) -> None:
        self.http = http
        self.url = url
        self.pairs = dict(pairs)
        self.accounting_unit = accounting_unit.upper()
        self.display_currency = display_currency.upper()
        self.peg_coin = peg_coin.upper()
        self.units_per_peg_coin = units_per_peg_coin
        self.source = source

    def parse(self, payload: object) -> dict[tuple[str, str], Decimal]:
        rates: dict[tuple[str, str], Decimal] = {}
        for pair, path in self.pairs.items():
            base, _, quote = pair.upper().partition("/")
            if not base or not quote:
                raise ValueError(f"rate pair {pair!r} is not BASE/QUOTE")
            value = to_decimal(read_path(payload, path))
            if value is None or value <= 0:
                logger.warning("rate feed has no usable value pair=%s path=%s", pair, path)
                continue
            rates[(base, quote)] = value
        if not rates:
            raise ParseError("rate feed response had none of the configured pairs")

        peg_price = rates.get((self.peg_coin, self.display_currency))
        if peg_price is not None and self.units_per_peg_coin > 0:
            rates[(self.accounting_unit, self.display_currency)] = (peg_price / self.units_per_peg_coin).quantize(
                RATE_QUANTUM, rounding=ROUND_HALF_UP
            )
        return rates

    def refresh(self, db: Session, *, now: datetime) -> int:
        rates = self.parse(self.http.get_json(self.url))
        for (base, quote), rate in sorted(rates.items()):
            record_rate(db, base_currency=base, quote_currency=quote, rate=rate, source=self.source, observed_at=now)
        logger.info("exchange rates recorded count=%s", len(rates))
        return len(rates)
