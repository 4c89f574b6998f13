from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
import sqlite3
from typing import Any, Iterator

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.orm import Session, sessionmaker

from .config import settings
from .models import Base


def _engine_options(database_url: str) -> dict[str, Any]:
    if database_url.startswith("sqlite"):
        # Request handlers and the analysis worker share one file from several threads.
        return {"connect_args": {"check_same_thread": False, "timeout": 15}}
    return {
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_timeout": settings.db_pool_timeout,
        "pool_recycle": settings.db_pool_recycle,
    }


def _build_engine(database_url: str) -> Engine:
    return create_engine(database_url, pool_pre_ping=True, **_engine_options(database_url))


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, _connection_record) -> None:
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()


_ENGINE = _build_engine(settings.database_url)
SessionLocal = sessionmaker(
    bind=_ENGINE,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    class_=Session,
)


def get_engine() -> Engine:
    return _ENGINE


def db_backend_name() -> str:
    return _ENGINE.dialect.name


def reset_database_engine(database_url: str | None = None) -> None:
    """Rebind the session factory, e.g. to a per-test SQLite file."""
    global _ENGINE
    if database_url:
        object.__setattr__(settings, "database_url", database_url)

    _ENGINE.dispose()
    _ENGINE = _build_engine(settings.database_url)
    SessionLocal.configure(bind=_ENGINE)


@contextmanager
def get_db() -> Iterator[Session]:
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def check_db_connection() -> None:
    with _ENGINE.connect() as connection:
        connection.execute(text("SELECT 1"))


def init_db() -> None:
    """Create the service's own tables. Production deployments run Alembic instead."""
    Base.metadata.create_all(bind=_ENGINE)


def purge_resolved_security_events(older_than_days: int = 90) -> int:
    cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
    with get_db() as session:
        result = session.execute(
            text("DELETE FROM security_events WHERE resolved = :resolved AND occurred_at < :cutoff"),
            {"resolved": True, "cutoff": cutoff},
        )
    return result.rowcount or 0
