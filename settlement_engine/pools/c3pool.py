from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from urllib.parse import quote

from settlement_engine.core.config import PoolAccountConfig
from settlement_engine.core.errors import ParseError
from settlement_engine.pools.http import PoolHttpClient
from settlement_engine.pools.jsonpath import read_path
from settlement_engine.pools.samples import (
    AccountOverview,
    PoolPayout,
    WorkerSample,
    to_datetime,
    to_decimal,
    to_mhs,
)

ATOMIC_UNITS = Decimal("1000000000000")


@dataclass(frozen=True)
class NodejsPoolMapping:
    """Field paths of a nodejs-pool deployment (C3Pool, MoneroOcean and similar)."""

    unpaid_atomic: str = "$.amtDue"
    paid_total_atomic: str = "$.amtPaid"
    hashrate_hps: str = "$.hash"
    worker_id: str = "$.identifier"
    worker_hash_now_hps: str = "$.hash"
    worker_hash_avg_hps: str = "$.hash2"
    worker_timestamp: str = "$.lts"
    payment_amount: str = "$.amount"
    payment_hash: str = "$.txnHash"
    payment_timestamp: str = "$.ts"


class C3PoolParser:
    def __init__(self, *, pool_source: str, account: str, coin: str, mapping: NodejsPoolMapping | None = None):
        self.pool_source = pool_source
        self.account = account
        self.coin = coin
        self.mapping = mapping or NodejsPoolMapping()

    def parse_stats(self, payload: Any) -> AccountOverview:
        unpaid = to_decimal(read_path(payload, self.mapping.unpaid_atomic))
        paid = to_decimal(read_path(payload, self.mapping.paid_total_atomic))
        if unpaid is None or paid is None:
            raise ParseError("nodejs-pool stats payload has no unpaid/paid totals")
        unpaid_coin = unpaid / ATOMIC_UNITS
        paid_coin = paid / ATOMIC_UNITS
        hashrate = read_path(payload, self.mapping.hashrate_hps)
        return AccountOverview(
            income_total=unpaid_coin + paid_coin,
            hashrate_mhs=to_mhs(hashrate, "H/S") if hashrate is not None else None,
            balance=unpaid_coin,
            paid_total=paid_coin,
        )

    def parse_workers(self, payload: Any) -> list[WorkerSample]:
        if not isinstance(payload, dict | list):
            raise ParseError("nodejs-pool workers payload is neither an object nor an array")
        samples: list[WorkerSample] = []
        # allWorkers may split the map; inactive workers still carry payhash for the window.
        if isinstance(payload, dict) and ("activeWorkers" in payload or "inactiveWorkers" in payload):
            samples.extend(self._parse_group(payload.get("activeWorkers")))
            samples.extend(self._parse_group(payload.get("inactiveWorkers")))
        else:
            samples.extend(self._parse_group(payload))
        return self._keep_latest(samples)

    def parse_payments(self, payload: Any) -> list[PoolPayout]:
        if isinstance(payload, list):
            rows = payload
        elif isinstance(payload, dict):
            rows = list(payload.values())
        else:
            raise ParseError("nodejs-pool payments payload is neither an object nor an array")
        payouts: list[PoolPayout] = []
        for row in rows:
            amount = to_decimal(read_path(row, self.mapping.payment_amount))
            tx_hash = read_path(row, self.mapping.payment_hash)
            if amount is None or amount <= 0 or not tx_hash:
                continue
            if amount == amount.to_integral_value():
                amount = amount / ATOMIC_UNITS
            payouts.append(
                PoolPayout(
                    payout_key=str(tx_hash),
                    amount=amount,
                    paid_at=to_datetime(read_path(row, self.mapping.payment_timestamp)),
                )
            )
        return payouts

    def _parse_group(self, group: Any) -> list[WorkerSample]:
        if isinstance(group, dict):
            entries = [(str(key), value) for key, value in group.items() if key != "global"]
        elif isinstance(group, list):
            entries = [(None, value) for value in group]
        else:
            return []
        samples: list[WorkerSample] = []
        for fallback_id, node in entries:
            if not isinstance(node, dict):
                continue
            worker_id = read_path(node, self.mapping.worker_id) or fallback_id
            if worker_id is None or not str(worker_id).strip():
                continue
            hash_now = to_mhs(read_path(node, self.mapping.worker_hash_now_hps), "H/S")
            avg_raw = read_path(node, self.mapping.worker_hash_avg_hps)
            samples.append(
                WorkerSample(
                    pool_source=self.pool_source,
                    account=self.account,
                    coin=self.coin,
                    raw_worker_id=str(worker_id).strip(),
                    hash_now=hash_now,
                    hash_avg=to_mhs(avg_raw, "H/S") if avg_raw is not None else hash_now,
                    last_share_at=to_datetime(read_path(node, self.mapping.worker_timestamp)),
                )
            )
        return samples

    @staticmethod
    def _keep_latest(samples: list[WorkerSample]) -> list[WorkerSample]:
        merged: dict[str, WorkerSample] = {}
        for sample in samples:
            current = merged.get(sample.raw_worker_id)
            if current is None or current.last_share_at is None:
                merged[sample.raw_worker_id] = sample
            elif sample.last_share_at is not None and sample.last_share_at > current.last_share_at:
                merged[sample.raw_worker_id] = sample
        return list(merged.values())


class C3PoolClient:
    def __init__(self, account: PoolAccountConfig, http: PoolHttpClient, *, mapping: NodejsPoolMapping | None = None):
        self.account = account
        self.http = http
        self.parser = C3PoolParser(
            pool_source=account.pool_source, account=account.name, coin=account.coin, mapping=mapping
        )

    def _url(self, suffix: str) -> str:
        address = quote(self.account.name, safe="")
        return f"{self.account.base_url.rstrip('/')}/miner/{address}{suffix}"

    def fetch_workers(self) -> list[WorkerSample]:
        return self.parser.parse_workers(self.http.get_json(self._url("/stats/allWorkers")))

    def fetch_overview(self) -> AccountOverview:
        return self.parser.parse_stats(self.http.get_json(self._url("/stats")))

    def fetch_payouts(self) -> list[PoolPayout]:
        return self.parser.parse_payments(self.http.get_json(self._url("/payments")))
