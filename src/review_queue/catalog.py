"""Idempotent registries of repositories and commits."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import PurePath

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from review_queue.models import CommitView, RepoView
from review_queue.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from review_queue.storage.database import Database
from review_queue.storage.sqlmodel_models import Commit, Repo

logger = logging.getLogger(__name__)


def repo_display_name(root_path: str) -> str:
    """Last path segment of the repository root."""

    return PurePath(root_path).name or root_path


class RepoStore:
    """Maps a filesystem root to a repository identity."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def get_or_create(self, root_path: str) -> RepoView:
        """Return the repo registered for ``root_path``, registering it if needed."""

        with self.database.session() as session:
            row = self._select_by_path(session, root_path)
            if row is not None:
                return _to_repo_view(row)

            row = Repo(
                root_path=root_path,
                name=repo_display_name(root_path),
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = self._select_by_path(session, root_path)
                if existing is None:
                    raise
                logger.warning("Repo %s registered concurrently; using existing row", root_path)
                return _to_repo_view(existing)
            session.refresh(row)
            return _to_repo_view(row)

    def get_by_path(self, root_path: str) -> RepoView | None:
        with self.database.session() as session:
            row = self._select_by_path(session, root_path)
            return _to_repo_view(row) if row is not None else None

    def get_by_id(self, repo_id: int) -> RepoView | None:
        with self.database.session() as session:
            row = session.get(Repo, repo_id)
            return _to_repo_view(row) if row is not None else None

    def _select_by_path(self, session: Session, root_path: str) -> Repo | None:
        return session.exec(select(Repo).where(Repo.root_path == root_path)).one_or_none()


class CommitStore:
    """Commit metadata keyed by hash.

    The hash is unique across the whole store, not per repository: a second
    repository registering an already-known hash gets the existing commit back.
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    def get_or_create(  # noqa: PLR0913
        self,
        *,
        repo_id: int,
        sha: str,
        author: str,
        subject: str,
        timestamp: datetime,
    ) -> CommitView:
        with self.database.session() as session:
            row = self._select_by_sha(session, sha)
            if row is not None:
                return _to_commit_view(row)

            row = Commit(
                repo_id=repo_id,
                sha=sha,
                author=author,
                subject=subject,
                timestamp=to_db_datetime(timestamp),
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = self._select_by_sha(session, sha)
                if existing is None:
                    raise
                logger.warning("Commit %s registered concurrently; using existing row", sha)
                return _to_commit_view(existing)
            session.refresh(row)
            return _to_commit_view(row)

    def get_by_sha(self, sha: str) -> CommitView | None:
        with self.database.session() as session:
            row = self._select_by_sha(session, sha)
            return _to_commit_view(row) if row is not None else None

    def get_by_id(self, commit_id: int) -> CommitView | None:
        with self.database.session() as session:
            row = session.get(Commit, commit_id)
            return _to_commit_view(row) if row is not None else None

    def _select_by_sha(self, session: Session, sha: str) -> Commit | None:
        return session.exec(select(Commit).where(Commit.sha == sha)).one_or_none()


def _to_repo_view(row: Repo) -> RepoView:
    return RepoView(
        repo_id=row.id or 0,
        root_path=row.root_path,
        name=row.name,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_commit_view(row: Commit) -> CommitView:
    return CommitView(
        commit_id=row.id or 0,
        repo_id=row.repo_id,
        sha=row.sha,
        author=row.author,
        subject=row.subject,
        timestamp=to_utc_aware_datetime(row.timestamp),
        created_at=to_utc_aware_datetime(row.created_at),
    )
