"""Engine construction and small helpers shared by the store modules."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import NullPool
from sqlmodel import Session, create_engine

from review_queue.errors import StoreBusyError

_BUSY_MARKERS = ("database is locked", "database is busy", "database table is locked")


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def to_db_datetime(value: datetime) -> datetime:
    """Normalize to naive UTC, the form SQLite stores."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def optional_utc(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def build_sqlite_engine(
    *,
    db_path: Path,
    busy_timeout_ms: int,
    enforce_foreign_keys: bool = True,
) -> Engine:
    """Build SQLAlchemy engine with the store's SQLite policy.

    pysqlite's implicit transaction handling is switched off and every
    transaction is opened with ``BEGIN IMMEDIATE``: DDL becomes transactional
    and writers take the write lock before reading.
    """

    db_url = f"sqlite:///{db_path}"
    engine = create_engine(
        db_url,
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )
    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: _apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=busy_timeout_ms,
            enforce_foreign_keys=enforce_foreign_keys,
        ),
    )
    event.listen(engine, "begin", _begin_immediate)
    return engine


def is_busy_error(error: OperationalError) -> bool:
    message = str(error.orig).lower() if error.orig is not None else str(error).lower()
    return any(marker in message for marker in _BUSY_MARKERS)


@contextmanager
def translate_busy_errors() -> Iterator[None]:
    """Re-raise SQLite lock timeouts as ``StoreBusyError``."""

    try:
        yield
    except OperationalError as error:
        if is_busy_error(error):
            raise StoreBusyError(str(error.orig or error)) from error
        raise


@contextmanager
def store_session(engine: Engine) -> Iterator[Session]:
    """Open a session, surfacing lock timeouts as ``StoreBusyError``."""

    with translate_busy_errors(), Session(engine) as session:
        yield session


def _begin_immediate(connection: Connection) -> None:
    connection.exec_driver_sql("BEGIN IMMEDIATE")


def _apply_sqlite_pragmas(
    dbapi_connection: sqlite3.Connection,
    *,
    busy_timeout_ms: int,
    enforce_foreign_keys: bool = True,
) -> None:
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.execute("PRAGMA foreign_keys = " + ("ON" if enforce_foreign_keys else "OFF"))
    cursor.close()
