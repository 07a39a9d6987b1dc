from collections.abc import Generator, Iterable, Mapping
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from settlement_engine.core.config import DATABASE_URL


class Base(DeclarativeBase):
    """Base class for ORM models."""


engine = create_engine(
    DATABASE_URL,
    pool_pre_ping=True,
)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    class_=Session,
)


@contextmanager
def transactional_session(
    session_factory: sessionmaker[Session] = SessionLocal,
) -> Generator[Session, None, None]:
    """Commit on success, roll back and re-raise on any error."""

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _dialect_insert(db: Session, model: type[Base]):
    dialect_name = db.get_bind().dialect.name
    if dialect_name == "postgresql":
        return postgresql.insert(model)
    if dialect_name == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"insert-if-absent is not supported on {dialect_name}")


def insert_if_absent(
    db: Session,
    model: type[Base],
    values: Mapping[str, Any],
    *,
    conflict_columns: Iterable[str],
) -> bool:
    """Insert one row unless a row with the same business key exists.

    Returns ``True`` only when the row was actually written, so callers can
    apply side effects such as balance credits exactly once.
    """

    statement = _dialect_insert(db, model).values(**values).on_conflict_do_nothing(
        index_elements=list(conflict_columns)
    )
    result = db.execute(statement)
    return result.rowcount == 1


def upsert(
    db: Session,
    model: type[Base],
    values: Mapping[str, Any],
    *,
    conflict_columns: Iterable[str],
    update_columns: Iterable[str],
) -> None:
    statement = _dialect_insert(db, model).values(**values)
    statement = statement.on_conflict_do_update(
        index_elements=list(conflict_columns),
        set_={column: statement.excluded[column] for column in update_columns},
    )
    db.execute(statement)
