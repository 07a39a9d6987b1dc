from __future__ import annotations

import hmac
from collections.abc import Generator

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader
from sqlalchemy.orm import Session

from settlement_engine.core.config import get_settings
from settlement_engine.db.session import SessionLocal

operator_token_header = APIKeyHeader(name="X-Operator-Token", auto_error=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def require_operator(token: str | None = Depends(operator_token_header)) -> str:
    expected = get_settings().operator_token
    if not token or not hmac.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid operator token")
    return token
