"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from pathlib import Path

import pytest

from review_queue import CommitStore, Database, JobQueue, RepoStore, RepoView, ReviewJobView


@pytest.fixture()
def database(tmp_path: Path) -> Iterator[Database]:
    db = Database.open(tmp_path / "queue.db")
    yield db
    db.close()


@pytest.fixture()
def job_queue(database: Database) -> JobQueue:
    return JobQueue(database)


@pytest.fixture()
def repo(database: Database) -> RepoView:
    return RepoStore(database).get_or_create("/tmp/test-repo")


@pytest.fixture()
def enqueue_commit(
    database: Database,
    job_queue: JobQueue,
    repo: RepoView,
) -> Callable[..., ReviewJobView]:
    """Register a commit in the default repo and enqueue a review for it."""

    commits = CommitStore(database)

    def _enqueue(sha: str, *, repo_id: int | None = None, subject: str = "Subject") -> ReviewJobView:
        commit = commits.get_or_create(
            repo_id=repo_id or repo.repo_id,
            sha=sha,
            author="Author",
            subject=subject,
            timestamp=datetime.now(tz=UTC),
        )
        return job_queue.enqueue(
            repo_id=commit.repo_id,
            commit_id=commit.commit_id,
            git_ref=sha,
            agent="codex",
        )

    return _enqueue
