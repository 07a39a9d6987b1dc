from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
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


class WorkerListShape(str, Enum):
    LIST_OF_LISTS = "list_of_lists"
    LIST_OF_OBJECTS = "list_of_objects"
    MAP_OF_OBJECTS = "map_of_objects"


@dataclass(frozen=True)
class F2PoolFieldMapping:
    """Path expressions for the v1 payload; positions are used for list-of-lists rows."""

    workers_path: str = "$.workers"
    worker_id: str = "$.worker_name"
    worker_hashrate: str = "$.hashrate"
    worker_hashrate_avg: str = "$.hashrate_avg"
    worker_hashrate_unit: str = "$.hashrate_unit"
    worker_last_share: str = "$.last_share_time"
    index_worker_id: int = 0
    index_hashrate: int = 1
    index_hashrate_unit: int = 2
    index_last_share: int = 3
    account_hashrate: str = "$.hashrate"
    account_hashrate_unit: str = "$.hashrate_unit"
    account_active_workers: str = "$.active_workers"
    account_income_total: str = "$.value"
    account_balance: str = "$.balance"
    account_paid: str = "$.paid"
    payout_array: str = "$.payout_history"
    payout_amount: str = "$.amount"
    payout_timestamp: str = "$.timestamp"
    payout_tx_id: str = "$.txid"


V2_WORKER_LIST_PATHS = ("$.data.list", "$.data.workers", "$.rows", "$.workers", "$.worker_list", "$.list")
V2_WORKER_ID_PATHS = ("$.worker_name", "$.worker_id", "$.name", "$.hash_rate_info.name")
V2_HASHRATE_PATHS = ("$.hashrate", "$.hash_rate", "$.cur_hashrate", "$.hash_rate_info.hash_rate")
V2_HASHRATE_AVG_PATHS = (
    "$.h1_hash_rate",
    "$.hash_rate_info.h1_hash_rate",
    "$.h24_hash_rate",
    "$.hash_rate_info.h24_hash_rate",
)
V2_LAST_SHARE_PATHS = ("$.last_share_time", "$.last_share", "$.last_share_at")
V2_BALANCE_INFO_PATHS = ("$.data.balance_info", "$.balance_info")


@dataclass
class F2PoolParser:
    pool_source: str
    account: str
    coin: str
    mapping: F2PoolFieldMapping = field(default_factory=F2PoolFieldMapping)

    def detect_shape(self, workers: Any) -> WorkerListShape:
        if isinstance(workers, dict):
            return WorkerListShape.MAP_OF_OBJECTS
        if isinstance(workers, list):
            if all(isinstance(row, list) for row in workers):
                return WorkerListShape.LIST_OF_LISTS
            if all(isinstance(row, dict) for row in workers):
                return WorkerListShape.LIST_OF_OBJECTS
        raise ParseError(f"unsupported f2pool worker list of type {type(workers).__name__}")

    def parse_workers(self, payload: Any) -> list[WorkerSample]:
        workers = read_path(payload, self.mapping.workers_path)
        if workers is None:
            return []
        shape = self.detect_shape(workers)
        if shape is WorkerListShape.LIST_OF_LISTS:
            samples = [self._from_row(row) for row in workers]
        elif shape is WorkerListShape.LIST_OF_OBJECTS:
            samples = [self._from_object(item, fallback_id=None) for item in workers]
        else:
            samples = [
                self._from_object(item, fallback_id=str(key))
                for key, item in workers.items()
                if isinstance(item, dict)
            ]
        return [sample for sample in samples if sample is not None]

    def parse_workers_v2(self, payload: Any) -> list[WorkerSample]:
        workers = first_path(payload, V2_WORKER_LIST_PATHS)
        if workers is None:
            return []
        if not isinstance(workers, list):
            raise ParseError("f2pool v2 worker list is not an array")
        samples: list[WorkerSample] = []
        for item in workers:
            if not isinstance(item, dict):
                continue
            worker_id = first_path(item, V2_WORKER_ID_PATHS)
            if worker_id is None or not str(worker_id).strip():
                continue
            hash_now = to_mhs(first_path(item, V2_HASHRATE_PATHS), None)
            avg_raw = first_path(item, V2_HASHRATE_AVG_PATHS)
            hash_avg = to_mhs(avg_raw, None) if avg_raw is not None else hash_now
            samples.append(
                self._sample(
                    worker_id=str(worker_id),
                    hash_now=hash_now,
                    hash_avg=hash_avg,
                    last_share=first_path(item, V2_LAST_SHARE_PATHS),
                )
            )
        return samples

    def parse_overview(self, payload: Any) -> AccountOverview:
        if not isinstance(payload, dict):
            raise ParseError("f2pool account payload is not an object")
        income_total = to_decimal(read_path(payload, self.mapping.account_income_total))
        if income_total is None:
            raise ParseError("f2pool account payload has no income total")
        hashrate = read_path(payload, self.mapping.account_hashrate)
        active = to_decimal(read_path(payload, self.mapping.account_active_workers))
        return AccountOverview(
            income_total=income_total,
            hashrate_mhs=(
                to_mhs(hashrate, read_path(payload, self.mapping.account_hashrate_unit))
                if hashrate is not None
                else None
            ),
            balance=to_decimal(read_path(payload, self.mapping.account_balance)),
            paid_total=to_decimal(read_path(payload, self.mapping.account_paid)),
            active_workers=int(active) if active is not None else None,
        )

    def parse_overview_v2(self, balance_payload: Any, hashrate_payload: Any = None) -> AccountOverview:
        balance_info = first_path(balance_payload, V2_BALANCE_INFO_PATHS)
        if not isinstance(balance_info, dict):
            raise ParseError("f2pool v2 assets payload has no balance_info")
        income_total = to_decimal(balance_info.get("total_income"))
        if income_total is None:
            raise ParseError("f2pool v2 balance_info has no total_income")
        hashrate = first_path(hashrate_payload, ("$.info.hash_rate", "$.data.info.hash_rate", "$.hash_rate"))
        return AccountOverview(
            income_total=income_total,
            hashrate_mhs=to_mhs(hashrate, None) if hashrate is not None else None,
            balance=to_decimal(balance_info.get("balance")),
            paid_total=to_decimal(balance_info.get("paid")),
        )

    def parse_payouts(self, payload: Any, *, v2: bool = False) -> list[PoolPayout]:
        if v2:
            rows = first_path(payload, ("$.transactions", "$.data.transactions"))
            amount_path, time_path, tx_path = "$.payout_extra.value", "$.payout_extra.paid_time", "$.payout_extra.tx_id"
        else:
            rows = read_path(payload, self.mapping.payout_array)
            amount_path = self.mapping.payout_amount
            time_path = self.mapping.payout_timestamp
            tx_path = self.mapping.payout_tx_id
        if not isinstance(rows, list):
            return []
        payouts: list[PoolPayout] = []
        for row in rows:
            amount = to_decimal(read_path(row, amount_path))
            if amount is None:
                continue
            paid_at = to_datetime(read_path(row, time_path))
            tx_id = read_path(row, tx_path)
            payout_key = str(tx_id) if tx_id else f"{paid_at.isoformat() if paid_at else 'unknown'}:{amount}"
            payouts.append(PoolPayout(payout_key=payout_key, amount=amount, paid_at=paid_at))
        return payouts

    def _from_row(self, row: list[Any]) -> WorkerSample | None:
        def _at(index: int) -> Any:
            return row[index] if 0 <= index < len(row) else None

        worker_id = _at(self.mapping.index_worker_id)
        if worker_id is None or not str(worker_id).strip():
            return None
        hashrate = to_mhs(_at(self.mapping.index_hashrate), _at(self.mapping.index_hashrate_unit))
        return self._sample(
            worker_id=str(worker_id),
            hash_now=hashrate,
            hash_avg=hashrate,
            last_share=_at(self.mapping.index_last_share),
        )

    def _from_object(self, item: dict[str, Any], *, fallback_id: str | None) -> WorkerSample | None:
        worker_id = read_path(item, self.mapping.worker_id) or fallback_id
        if worker_id is None or not str(worker_id).strip():
            return None
        unit = read_path(item, self.mapping.worker_hashrate_unit)
        hash_now = to_mhs(read_path(item, self.mapping.worker_hashrate), unit)
        avg_raw = read_path(item, self.mapping.worker_hashrate_avg)
        return self._sample(
            worker_id=str(worker_id),
            hash_now=hash_now,
            hash_avg=to_mhs(avg_raw, unit) if avg_raw is not None else hash_now,
            last_share=read_path(item, self.mapping.worker_last_share),
        )

    def _sample(self, *, worker_id: str, hash_now: Decimal, hash_avg: Decimal, last_share: Any) -> WorkerSample:
        return WorkerSample(
            pool_source=self.pool_source,
            account=self.account,
            coin=self.coin,
            raw_worker_id=worker_id.strip(),
            hash_now=hash_now,
            hash_avg=hash_avg,
            last_share_at=to_datetime(last_share),
        )


class F2PoolClient:
    def __init__(self, account: PoolAccountConfig, http: PoolHttpClient, *, mapping: F2PoolFieldMapping | None = None):
        self.account = account
        self.http = http
        self.parser = F2PoolParser(
            pool_source=account.pool_source,
            account=account.name,
            coin=account.coin,
            mapping=mapping or F2PoolFieldMapping(),
        )

    @property
    def is_v2(self) -> bool:
        return self.account.api_version.lower() == "v2"

    def _url(self, path: str) -> str:
        return f"{self.account.base_url.rstrip('/')}{path}"

    def _v1_path(self, suffix: str = "") -> str:
        return f"/{self.account.coin.lower()}/{self.account.name}{suffix}"

    def _v2_headers(self) -> dict[str, str]:
        return {"F2P-API-SECRET": self.account.api_secret, "Content-Type": "application/json"}

    def _v2_body(self) -> dict[str, str]:
        return {"mining_user_name": self.account.name, "currency": self.account.coin.lower()}

    def fetch_workers(self) -> list[WorkerSample]:
        if self.is_v2:
            payload = self.http.post_json(
                self._url("/v2/hash_rate/worker/list"), json_body=self._v2_body(), headers=self._v2_headers()
            )
            return self.parser.parse_workers_v2(payload)
        return self.parser.parse_workers(self.http.get_json(self._url(self._v1_path())))

    def fetch_overview(self) -> AccountOverview:
        if self.is_v2:
            balance = self.http.post_json(
                self._url("/v2/assets/balance"), json_body=self._v2_body(), headers=self._v2_headers()
            )
            hashrate = self.http.post_json(
                self._url("/v2/hash_rate/info"), json_body=self._v2_body(), headers=self._v2_headers()
            )
            return self.parser.parse_overview_v2(balance, hashrate)
        return self.parser.parse_overview(self.http.get_json(self._url(self._v1_path())))

    def fetch_payouts(self) -> list[PoolPayout]:
        if self.is_v2:
            body = {**self._v2_body(), "type": "payout"}
            payload = self.http.post_json(
                self._url("/v2/assets/transactions/list"), json_body=body, headers=self._v2_headers()
            )
            return self.parser.parse_payouts(payload, v2=True)
        return self.parser.parse_payouts(self.http.get_json(self._url(self._v1_path("/payout_history"))))
