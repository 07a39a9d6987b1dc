from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from settlement_engine.api.dependencies.auth import get_db
from settlement_engine.core.config import get_settings
from settlement_engine.core.context import SettlementContext
from settlement_engine.db.models import User
from settlement_engine.db.session import Base
from settlement_engine.main import app


@pytest.fixture
def test_engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def db_session(test_engine) -> Generator[Session, None, None]:
    with Session(test_engine, expire_on_commit=False) as session:
        yield session


@pytest.fixture
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def operator_headers() -> dict[str, str]:
    return {"X-Operator-Token": get_settings().operator_token}


@pytest.fixture
def ctx() -> SettlementContext:
    return SettlementContext(trace_id="trace-test", pool_source="f2pool", account="acct-1", coin="XMR")


@pytest.fixture
def create_user(db_session: Session) -> Callable[..., User]:
    def _create_user(
        *,
        user_id: int | None = None,
        worker_id: str | None = None,
        inviter_id: int | None = None,
        is_active: bool = True,
    ) -> User:
        user = User(id=user_id, worker_id=worker_id, inviter_id=inviter_id, is_active=is_active)
        db_session.add(user)
        db_session.commit()
        return user

    return _create_user
