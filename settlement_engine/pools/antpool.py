from __future__ import annotations

import hashlib
import hmac
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from settlement_engine.core.config import PoolAccountConfig
from settlement_engine.core.errors import ParseError
from settlement_engine.pools.http import PoolHttpClient
from settlement_engine.pools.jsonpath import first_path, read_path
from settlement_engine.pools.samples import (
    AccountOverview,
    PoolPayout,
    WorkerSample,
    to_datetime,
    to_decimal,
    to_mhs,
)

logger = logging.getLogger(__name__)

_HASHRATE_RE = re.compile(r"^([0-9]+(?:\.[0-9]+)?)([A-Z]+/S)?$")
WORKER_ROW_PATHS = ("$.data.result.rows", "$.data.rows", "$.rows")
PAYOUT_ROW_PATHS = ("$.data.rows", "$.data.result.rows", "$.rows")
HASHRATE_FIELDS = ("hsLast10min", "hsLast1h", "hsLast1hour")


def parse_hashrate_text(raw: object) -> Decimal | None:
    """Parse strings such as ``12.5MH/s``; a bare number is already MH/s."""

    if raw is None or isinstance(raw, bool):
        return None
    normalized = re.sub(r"\s+", "", str(raw)).upper()
    match = _HASHRATE_RE.match(normalized)
    if match is None:
        return None
    return to_mhs(match.group(1), match.group(2) or "MH/S")


def sign_request(*, user_id: str, api_key: str, api_secret: str, nonce: int) -> str:
    message = f"{user_id}{api_key}{nonce}".encode()
    return hmac.new(api_secret.encode(), message, hashlib.sha256).hexdigest().upper()


@dataclass(frozen=True)
class WorkerPage:
    samples: list[WorkerSample]
    total_pages: int


class AntpoolParser:
    def __init__(self, *, pool_source: str, account: str, coin: str) -> None:
        self.pool_source = pool_source
        self.account = account
        self.coin = coin

    def parse_workers(self, payload: Any) -> WorkerPage:
        rows = first_path(payload, WORKER_ROW_PATHS)
        if rows is not None and not isinstance(rows, list):
            raise ParseError("antpool worker rows are not an array")
        samples: list[WorkerSample] = []
        for row in rows or []:
            if not isinstance(row, dict):
                continue
            worker_id = row.get("workerId") or row.get("worker")
            if worker_id is None or not str(worker_id).strip():
                continue
            hashrate = None
            for field_name in HASHRATE_FIELDS:
                hashrate = parse_hashrate_text(row.get(field_name))
                if hashrate is not None:
                    break
            if hashrate is None:
                hashrate = to_decimal(row.get("last10m")) or Decimal("0")
            samples.append(
                WorkerSample(
                    pool_source=self.pool_source,
                    account=self.account,
                    coin=self.coin,
                    raw_worker_id=str(worker_id).strip(),
                    hash_now=hashrate,
                    hash_avg=hashrate,
                    last_share_at=None,
                )
            )
        paging = read_path(payload, "$.data.result")
        if not isinstance(paging, dict):
            paging = read_path(payload, "$.data")
        return WorkerPage(samples=samples, total_pages=self.total_pages(paging))

    @staticmethod
    def total_pages(paging: Any) -> int:
        if not isinstance(paging, dict):
            return 0
        for key in ("pageCount", "totalPage", "totalPages"):
            value = to_decimal(paging.get(key))
            if value is not None and value > 0:
                return int(value)
        total = to_decimal(paging.get("total"))
        page_size = to_decimal(paging.get("pageSize"))
        if total and page_size and total > 0 and page_size > 0:
            return int((total + page_size - 1) // page_size)
        return 0

    def parse_account(self, payload: Any) -> AccountOverview:
        data = read_path(payload, "$.data")
        if not isinstance(data, dict):
            raise ParseError("antpool account payload has no data object")
        income_total = to_decimal(data.get("earnTotal"))
        if income_total is None:
            raise ParseError("antpool account payload has no earnTotal")
        return AccountOverview(
            income_total=income_total,
            balance=to_decimal(data.get("balance")),
            paid_total=to_decimal(data.get("paidOut")),
        )

    def parse_payouts(self, payload: Any) -> list[PoolPayout]:
        rows = first_path(payload, PAYOUT_ROW_PATHS)
        if not isinstance(rows, list):
            return []
        payouts: list[PoolPayout] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            amount = to_decimal(row.get("amount"))
            if amount is None:
                continue
            paid_at = to_datetime(row.get("timestamp"))
            tx_id = row.get("txId")
            payout_key = str(tx_id) if tx_id else f"{row.get('timestamp')}:{amount}"
            payouts.append(PoolPayout(payout_key=payout_key, amount=amount, paid_at=paid_at))
        return payouts


class AntpoolClient:
    page_size = 100
    max_pages = 50

    def __init__(
        self,
        account: PoolAccountConfig,
        http: PoolHttpClient,
        *,
        nonce_factory: Callable[[], int] | None = None,
    ) -> None:
        self.account = account
        self.http = http
        self.parser = AntpoolParser(pool_source=account.pool_source, account=account.name, coin=account.coin)
        self._nonce_factory = nonce_factory or (lambda: time.time_ns() // 1_000_000)

    @property
    def sub_account(self) -> str:
        return self.account.user_id or self.account.name

    def _post(self, endpoint: str, params: dict[str, str]) -> Any:
        nonce = self._nonce_factory()
        form = {
            **params,
            "key": self.account.api_key,
            "nonce": str(nonce),
            "signature": sign_request(
                user_id=self.sub_account,
                api_key=self.account.api_key,
                api_secret=self.account.api_secret,
                nonce=nonce,
            ),
        }
        return self.http.post_json(f"{self.account.base_url.rstrip('/')}/api/{endpoint}", form=form)

    def fetch_workers(self) -> list[WorkerSample]:
        samples: list[WorkerSample] = []
        page = 1
        while page <= self.max_pages:
            payload = self._post(
                "userWorkerList.htm",
                {
                    "coinType": self.account.coin.upper(),
                    "userId": self.sub_account,
                    "workerStatus": "0",
                    "page": str(page),
                    "pageSize": str(self.page_size),
                },
            )
            parsed = self.parser.parse_workers(payload)
            samples.extend(parsed.samples)
            if not parsed.samples or page >= parsed.total_pages:
                break
            page += 1
        return samples

    def fetch_overview(self) -> AccountOverview:
        payload = self._post("account.htm", {"coin": self.account.coin.upper(), "userId": self.sub_account})
        return self.parser.parse_account(payload)

    def fetch_payouts(self) -> list[PoolPayout]:
        payload = self._post(
            "paymentHistoryV2.htm",
            {
                "coin": self.account.coin.upper(),
                "userId": self.sub_account,
                "type": "payout",
                "pageEnable": "1",
                "page": "1",
                "pageSize": str(self.page_size),
            },
        )
        return self.parser.parse_payouts(payload)
