"""Persistent review job queue shared by independent worker processes.

Every state change is one conditional UPDATE guarded by the prior status, run
inside a ``BEGIN IMMEDIATE`` transaction:

    queued -> running -> done | failed
    running -> queued          (reset_stale_jobs only)
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select
from sqlmodel.sql.expression import Select

from review_queue.models import JobCounts, JobStatus, ReviewJobView, ReviewView
from review_queue.outcomes import ReviewStore, add_review
from review_queue.storage.common import optional_utc, to_db_datetime, to_utc_aware_datetime, utc_now
from review_queue.storage.database import Database
from review_queue.storage.sqlmodel_models import Commit, Repo, ReviewJob

logger = logging.getLogger(__name__)


class JobQueue:
    """Queue state machine: enqueue, claim, complete, fail, recover."""

    def __init__(self, database: Database, *, default_agent: str | None = None) -> None:
        self.database = database
        self.default_agent = default_agent or database.default_agent
        self.reviews = ReviewStore(database)

    def enqueue(
        self,
        *,
        repo_id: int,
        commit_id: int | None,
        git_ref: str,
        agent: str | None = None,
    ) -> ReviewJobView:
        """Create a queued job. The same ref enqueued twice yields two jobs."""

        with self.database.session() as session:
            row = ReviewJob(
                repo_id=repo_id,
                commit_id=commit_id,
                git_ref=git_ref,
                agent=agent or self.default_agent,
                status=JobStatus.QUEUED.value,
                enqueued_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.flush()
            view = self._load_view(session, row.id or 0)
            session.commit()
        logger.debug("Enqueued job %d for %s", view.job_id, git_ref)
        return view

    def claim(self, *, worker_id: str) -> ReviewJobView | None:
        """Atomically move the oldest queued job to running for ``worker_id``.

        Returns ``None`` when nothing is queued.
        """

        oldest_queued = (
            sa_select(col(ReviewJob.id))
            .where(col(ReviewJob.status) == JobStatus.QUEUED.value)
            .order_by(col(ReviewJob.id).asc())
            .limit(1)
            .correlate(None)
            .scalar_subquery()
        )
        with self.database.session() as session:
            claimed_id = session.exec(
                sa_update(ReviewJob)
                .where(
                    col(ReviewJob.id) == oldest_queued,
                    col(ReviewJob.status) == JobStatus.QUEUED.value,
                )
                .values(
                    status=JobStatus.RUNNING.value,
                    worker_id=worker_id,
                    started_at=to_db_datetime(utc_now()),
                    finished_at=None,
                    error=None,
                )
                .returning(col(ReviewJob.id))
                .execution_options(synchronize_session=False),
            ).scalar_one_or_none()
            if claimed_id is None:
                session.rollback()
                return None
            view = self._load_view(session, claimed_id)
            session.commit()
        logger.debug("Worker %s claimed job %d", worker_id, view.job_id)
        return view

    def complete(self, *, job_id: int, agent: str, prompt: str, output: str) -> bool:
        """Mark a running job done and store its review in the same transaction.

        Returns ``False`` without changes if the job is not running.
        """

        with self.database.session() as session:
            if not self._transition(
                session,
                job_id=job_id,
                status_from=JobStatus.RUNNING,
                values={
                    "status": JobStatus.DONE.value,
                    "finished_at": to_db_datetime(utc_now()),
                },
            ):
                session.rollback()
                logger.warning("Job %d is not running; completion ignored", job_id)
                return False
            add_review(session=session, job_id=job_id, agent=agent, prompt=prompt, output=output)
            session.commit()
        logger.debug("Job %d done", job_id)
        return True

    def fail(self, *, job_id: int, error: str) -> bool:
        """Mark a running job failed with ``error``.

        Returns ``False`` without changes if the job is not running.
        """

        with self.database.session() as session:
            if not self._transition(
                session,
                job_id=job_id,
                status_from=JobStatus.RUNNING,
                values={
                    "status": JobStatus.FAILED.value,
                    "error": error,
                    "finished_at": to_db_datetime(utc_now()),
                },
            ):
                session.rollback()
                logger.warning("Job %d is not running; failure ignored", job_id)
                return False
            session.commit()
        logger.debug("Job %d failed: %s", job_id, error)
        return True

    def reset_stale_jobs(self) -> int:
        """Requeue every running job; meant for process startup.

        Running jobs of workers that are still alive are requeued as well, so
        a job may end up executed twice.
        """

        with self.database.session() as session:
            result = session.exec(
                sa_update(ReviewJob)
                .where(col(ReviewJob.status) == JobStatus.RUNNING.value)
                .values(
                    status=JobStatus.QUEUED.value,
                    worker_id=None,
                    started_at=None,
                )
                .execution_options(synchronize_session=False),
            )
            reset = result.rowcount
            session.commit()
        if reset:
            logger.warning("Requeued %d running jobs left by a previous run", reset)
        return reset

    def get_job_counts(self) -> JobCounts:
        with self.database.session() as session:
            rows = session.exec(
                select(ReviewJob.status, func.count(col(ReviewJob.id))).group_by(
                    col(ReviewJob.status),
                ),
            ).all()
        counts = JobCounts()
        for status, count in rows:
            setattr(counts, JobStatus(status).value, int(count))
        return counts

    def get_job_by_id(self, job_id: int) -> ReviewJobView | None:
        with self.database.session() as session:
            row = session.exec(_job_view_statement().where(ReviewJob.id == job_id)).one_or_none()
            return _to_job_view(*row) if row is not None else None

    def get_review_by_commit_sha(self, sha: str) -> ReviewView | None:
        return self.reviews.get_by_commit_sha(sha)

    def list_jobs(
        self,
        *,
        status: JobStatus | str | None = None,
        limit: int = 50,
    ) -> list[ReviewJobView]:
        """Recent jobs, newest first, optionally filtered by status."""

        statement = _job_view_statement().order_by(col(ReviewJob.id).desc()).limit(limit)
        if status is not None:
            statement = statement.where(ReviewJob.status == JobStatus(status).value)
        with self.database.session() as session:
            rows = session.exec(statement).all()
            return [_to_job_view(*row) for row in rows]

    def _transition(
        self,
        session: Session,
        *,
        job_id: int,
        status_from: JobStatus,
        values: dict[str, Any],
    ) -> bool:
        result = session.exec(
            sa_update(ReviewJob)
            .where(
                col(ReviewJob.id) == job_id,
                col(ReviewJob.status) == status_from.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False),
        )
        return result.rowcount == 1

    def _load_view(self, session: Session, job_id: int) -> ReviewJobView:
        row = session.exec(_job_view_statement().where(ReviewJob.id == job_id)).one()
        return _to_job_view(*row)


def _job_view_statement() -> Select[Any]:
    return (
        select(ReviewJob, Repo.name, Repo.root_path, Commit.subject)
        .join(Repo, col(Repo.id) == col(ReviewJob.repo_id), isouter=True)
        .join(Commit, col(Commit.id) == col(ReviewJob.commit_id), isouter=True)
    )


def _to_job_view(
    row: ReviewJob,
    repo_name: str | None,
    repo_path: str | None,
    commit_subject: str | None,
) -> ReviewJobView:
    return ReviewJobView(
        job_id=row.id or 0,
        repo_id=row.repo_id,
        commit_id=row.commit_id,
        git_ref=row.git_ref,
        agent=row.agent,
        status=JobStatus(row.status),
        enqueued_at=to_utc_aware_datetime(row.enqueued_at),
        started_at=optional_utc(row.started_at),
        finished_at=optional_utc(row.finished_at),
        worker_id=row.worker_id,
        error=row.error,
        repo_name=repo_name,
        repo_path=repo_path,
        commit_subject=commit_subject,
    )
