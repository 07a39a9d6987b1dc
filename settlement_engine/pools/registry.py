from __future__ import annotations

from typing import Protocol

from settlement_engine.core.config import PoolAccountConfig
from settlement_engine.db.models.enums import PoolSource
from settlement_engine.pools.antpool import AntpoolClient
from settlement_engine.pools.c3pool import C3PoolClient
from settlement_engine.pools.f2pool import F2PoolClient
from settlement_engine.pools.http import PoolHttpClient
from settlement_engine.pools.samples import AccountOverview, PoolPayout, WorkerSample


class PoolClient(Protocol):
    account: PoolAccountConfig

    def fetch_workers(self) -> list[WorkerSample]: ...

    def fetch_overview(self) -> AccountOverview: ...

    def fetch_payouts(self) -> list[PoolPayout]: ...


def build_pool_client(account: PoolAccountConfig, http: PoolHttpClient) -> PoolClient:
    source = PoolSource(account.pool_source.lower())
    if source is PoolSource.F2POOL:
        return F2PoolClient(account, http)
    if source is PoolSource.ANTPOOL:
        return AntpoolClient(account, http)
    return C3PoolClient(account, http)
