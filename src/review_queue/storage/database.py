"""Database handle: owns the SQLite engine and the schema bootstrap."""

from __future__ import annotations

import logging
from contextlib import AbstractContextManager
from pathlib import Path
from types import TracebackType

from sqlalchemy.exc import OperationalError
from sqlmodel import Session

from review_queue.config import DEFAULT_BUSY_TIMEOUT_MS, StoreSettings
from review_queue.errors import StoreSetupError
from review_queue.storage.common import build_sqlite_engine, store_session
from review_queue.storage.schema import SchemaManager
from review_queue.storage.sqlmodel_models import DEFAULT_AGENT

logger = logging.getLogger(__name__)


class Database:
    """Explicit store handle passed to every repository object."""

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        default_agent: str = DEFAULT_AGENT,
    ) -> None:
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self.default_agent = default_agent
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    @classmethod
    def open(
        cls,
        db_path: Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        default_agent: str = DEFAULT_AGENT,
    ) -> Database:
        """Create the parent directory, connect and migrate.

        Raises ``StoreSetupError`` when the location cannot be prepared and
        ``MigrationError`` when the schema cannot be brought up to date.
        """

        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise StoreSetupError(f"Cannot create database directory {db_path.parent}") from error

        database = cls(db_path, busy_timeout_ms=busy_timeout_ms, default_agent=default_agent)
        try:
            database.check_connection()
            database.init_schema()
        except BaseException:
            database.close()
            raise
        return database

    @classmethod
    def from_settings(cls, settings: StoreSettings) -> Database:
        return cls.open(
            settings.db_path,
            busy_timeout_ms=settings.busy_timeout_ms,
            default_agent=settings.default_agent,
        )

    def check_connection(self) -> None:
        try:
            with self.engine.connect():
                pass
        except OperationalError as error:
            raise StoreSetupError(f"Cannot open database {self.db_path}: {error.orig}") from error

    def init_schema(self) -> int:
        """Run schema migrations; returns the resulting schema version."""

        migration_engine = build_sqlite_engine(
            db_path=self.db_path,
            busy_timeout_ms=self.busy_timeout_ms,
            enforce_foreign_keys=False,
        )
        try:
            version = SchemaManager(migration_engine).migrate()
        finally:
            migration_engine.dispose()
        logger.debug("Database %s at schema version %d", self.db_path, version)
        return version

    def schema_version(self) -> int:
        """Stored schema version; raises ``StoreBusyError`` on lock timeout."""

        return SchemaManager(self.engine).current_version()

    def session(self) -> AbstractContextManager[Session]:
        """Session whose lock timeouts surface as ``StoreBusyError``."""

        return store_session(self.engine)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def __enter__(self) -> Database:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()
