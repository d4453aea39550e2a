"""Forward-only schema versioning for the review queue database.

The stored generation lives in ``schema_version`` (exactly one row). Opening a
database walks it forward to ``CURRENT_SCHEMA_VERSION``:

- a pre-versioning layout (``review_jobs.commit_sha`` present) counts as
  version 1,
- an empty database (no version row) gets the full current schema,
- every other gap is closed by the ordered ``MIGRATIONS`` steps, one
  transaction per step, the version row rewritten inside that transaction.

Steps are written against Alembic's ``Operations`` bound to the live
connection. Migrations must run on an engine built with
``enforce_foreign_keys=False``: a table rewrite drops a table that other tables
reference, which SQLite only permits with enforcement off.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

import sqlalchemy as sa
from alembic.operations import Operations
from alembic.runtime.migration import MigrationContext
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import SQLModel

from review_queue.errors import MigrationError
from review_queue.storage.common import translate_busy_errors
from review_queue.storage.sqlmodel_models import (
    DEFAULT_AGENT,
    JOB_STATUS_CHECK,
    STORE_MODELS,
    SchemaVersion,
)

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 2
LEGACY_SCHEMA_VERSION = 1
LEGACY_MARKER_COLUMN = "commit_sha"

REVIEW_JOB_INDEXES = (
    ("idx_review_jobs_status", "status"),
    ("idx_review_jobs_repo", "repo_id"),
    ("idx_review_jobs_git_ref", "git_ref"),
)


@dataclass(frozen=True, slots=True)
class Migration:
    """One forward step from ``from_version`` to ``from_version + 1``."""

    from_version: int
    description: str
    apply: Callable[[Operations], None]

    @property
    def to_version(self) -> int:
        return self.from_version + 1


def _rename_commit_sha_to_git_ref(op: Operations) -> None:
    """Rename ``review_jobs.commit_sha`` to ``git_ref`` by rewriting the table."""

    if LEGACY_MARKER_COLUMN not in column_names(op.get_bind(), "review_jobs"):
        return

    op.create_table(
        "review_jobs_new",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("repo_id", sa.Integer(), sa.ForeignKey("repos.id"), nullable=False),
        sa.Column("commit_id", sa.Integer(), sa.ForeignKey("commits.id"), nullable=True),
        sa.Column("git_ref", sa.String(), nullable=False),
        sa.Column("agent", sa.String(), nullable=False, server_default=DEFAULT_AGENT),
        sa.Column("status", sa.String(), nullable=False, server_default=sa.text("'queued'")),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.CheckConstraint(JOB_STATUS_CHECK, name="ck_review_jobs_status"),
    )
    op.execute(
        sa.text(
            """
            INSERT INTO review_jobs_new (
                id, repo_id, commit_id, git_ref, agent, status,
                enqueued_at, started_at, finished_at, worker_id, error
            )
            SELECT
                id, repo_id, commit_id, commit_sha, agent, status,
                enqueued_at, started_at, finished_at, worker_id, error
            FROM review_jobs
            """,
        ),
    )
    op.drop_table("review_jobs")
    op.rename_table("review_jobs_new", "review_jobs")
    for index_name, column in REVIEW_JOB_INDEXES:
        op.create_index(index_name, "review_jobs", [column])


MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        from_version=LEGACY_SCHEMA_VERSION,
        description="rename review_jobs.commit_sha to git_ref",
        apply=_rename_commit_sha_to_git_ref,
    ),
)


class SchemaManager:
    """Detects the stored schema generation and walks it forward."""

    def __init__(
        self,
        engine: Engine,
        *,
        migrations: tuple[Migration, ...] = MIGRATIONS,
        target_version: int = CURRENT_SCHEMA_VERSION,
    ) -> None:
        self.engine = engine
        self.target_version = target_version
        self._steps = {step.from_version: step for step in migrations}
        if len(self._steps) != len(migrations):
            raise ValueError("Duplicate migration from_version entries.")

    def current_version(self) -> int:
        """Stored schema version, 0 for an uninitialized database."""

        with translate_busy_errors(), self.engine.connect() as connection:
            return read_schema_version(connection)

    def migrate(self) -> int:
        """Bring the database to ``target_version`` and return it."""

        try:
            return self._migrate()
        except MigrationError:
            raise
        except SQLAlchemyError as error:
            raise MigrationError(f"Schema migration failed: {error}") from error

    def _migrate(self) -> int:
        while True:
            with self.engine.begin() as connection:
                version = detect_schema_version(connection)
                if version >= self.target_version:
                    return version

                if version == 0:
                    ensure_current_schema(connection)
                    write_schema_version(connection, self.target_version)
                    logger.info("Created review queue schema version %d", self.target_version)
                    return self.target_version

                step = self._steps.get(version)
                if step is None:
                    raise MigrationError(
                        f"No migration registered from schema version {version}.",
                        from_version=version,
                    )
                self._apply(connection, step)

    def _apply(self, connection: Connection, step: Migration) -> None:
        logger.info(
            "Migrating schema %d -> %d: %s",
            step.from_version,
            step.to_version,
            step.description,
        )
        try:
            step.apply(Operations(MigrationContext.configure(connection)))
            if step.to_version >= self.target_version:
                ensure_current_schema(connection)
            _warn_on_dangling_references(connection)
            write_schema_version(connection, step.to_version)
        except SQLAlchemyError as error:
            raise MigrationError(
                f"Migration from schema version {step.from_version} failed: {error}",
                from_version=step.from_version,
            ) from error


def ensure_current_schema(connection: Connection) -> None:
    """Create missing tables and indexes of the current layout."""

    tables = [model.__table__ for model in STORE_MODELS]  # type: ignore[attr-defined]
    SQLModel.metadata.create_all(connection, tables=tables)
    for table in tables:
        for index in table.indexes:
            index.create(connection, checkfirst=True)


def column_names(connection: Connection, table_name: str) -> set[str]:
    inspector = sa.inspect(connection)
    if not inspector.has_table(table_name):
        return set()
    return {column["name"] for column in inspector.get_columns(table_name)}


def detect_schema_version(connection: Connection) -> int:
    """Legacy layout counts as version 1; otherwise read the version row."""

    if LEGACY_MARKER_COLUMN in column_names(connection, "review_jobs"):
        return LEGACY_SCHEMA_VERSION
    return read_schema_version(connection)


def read_schema_version(connection: Connection) -> int:
    if not sa.inspect(connection).has_table(SchemaVersion.__tablename__):
        return 0
    table = SchemaVersion.__table__  # type: ignore[attr-defined]
    version = connection.execute(sa.select(sa.func.max(table.c.version))).scalar()
    return int(version) if version is not None else 0


def write_schema_version(connection: Connection, version: int) -> None:
    """Replace the version table contents with a single row."""

    table = SchemaVersion.__table__  # type: ignore[attr-defined]
    table.create(connection, checkfirst=True)
    connection.execute(sa.delete(table))
    connection.execute(sa.insert(table).values(version=version))


def _warn_on_dangling_references(connection: Connection) -> None:
    violations = connection.exec_driver_sql("PRAGMA foreign_key_check").fetchall()
    if violations:
        logger.warning(
            "Schema migration left %d rows with dangling foreign keys",
            len(violations),
        )
