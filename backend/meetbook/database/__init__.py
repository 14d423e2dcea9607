"""
Database engine, session factory, and metadata shared across the application.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Generator, Optional, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from meetbook.core.config import settings

logger = logging.getLogger(__name__)

_DEFAULT_POOL_KWARGS: dict[str, Any] = {
    "pool_size": 5,
    "max_overflow": 10,
    # Fail fast when the pool is exhausted instead of queueing requests
    "pool_timeout": 5,
    "pool_recycle": 300,
    "pool_pre_ping": True,
    "future": True,
}


def _install_sqlite_immediate_transactions(engine: Engine) -> None:
    """
    Make every SQLite transaction take the write lock up front.

    pysqlite defers BEGIN until the first write, which lets two sessions read
    the same state before either writes. With BEGIN IMMEDIATE the second
    writer waits for the first to commit, so check-and-set sequences are
    serialized the way row locks serialize them on PostgreSQL.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for_url(db_url: str) -> Engine:
    """Build an engine with dialect-appropriate pooling and locking."""

    if db_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
        if ":memory:" in db_url or db_url.rstrip("/") == "sqlite:":
            engine = create_engine(
                db_url, future=True, poolclass=StaticPool, connect_args=connect_args
            )
        else:
            engine = create_engine(db_url, future=True, connect_args=connect_args)
        _install_sqlite_immediate_transactions(engine)
        return engine

    return create_engine(db_url, **_DEFAULT_POOL_KWARGS)


engine: Engine = create_engine_for_url(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Get database session with proper cleanup."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_dialect_name(db: Session) -> str:
    bind = db.get_bind()
    return bind.dialect.name if bind is not None else ""


T = TypeVar("T")
_RETRYABLE_ERROR_SNIPPETS = (
    "server closed the connection",
    "ssl connection has been closed unexpectedly",
    "database is locked",
    "could not serialize access",
    "deadlock detected",
)


def _operational_cause(exc: BaseException) -> Optional[OperationalError]:
    """Find an OperationalError behind repository and service wrappers."""
    seen = 0
    current: Optional[BaseException] = exc
    while current is not None and seen < 10:
        if isinstance(current, OperationalError):
            return current
        current = current.__cause__ or current.__context__
        seen += 1
    return None


def _is_retryable_db_error(exc: OperationalError) -> bool:
    message = str(exc).lower()
    return any(snippet in message for snippet in _RETRYABLE_ERROR_SNIPPETS)


def _retry_delay(attempt: int) -> float:
    base = 0.1 * (2 ** (attempt - 1))
    return base + random.uniform(0, 0.05 * attempt)


def with_db_retry(op_name: str, func: Callable[[], T], *, max_attempts: int = 3) -> T:
    """
    Execute a DB operation with retries for transient disconnects and lock contention.

    ``func`` must be safe to re-run from scratch: it is expected to open and
    finish its own transaction.
    """

    attempt = 1
    while True:
        try:
            return func()
        except Exception as exc:
            cause = _operational_cause(exc)
            if cause is None or attempt >= max_attempts or not _is_retryable_db_error(cause):
                raise

            delay = _retry_delay(attempt)
            logger.warning(
                "Transient DB failure detected, retrying",
                extra={
                    "event": "db_retry",
                    "op": op_name,
                    "attempt": attempt,
                    "delay": delay,
                    "error": str(exc),
                },
            )
            time.sleep(delay)
            attempt += 1


__all__ = [
    "Base",
    "SessionLocal",
    "create_engine_for_url",
    "engine",
    "get_db",
    "get_dialect_name",
    "with_db_retry",
]
