"""Append-only stores for review outcomes and follow-up responses."""

from __future__ import annotations

from sqlmodel import Session, col, select

from review_queue.models import JobStatus, ResponseView, ReviewView
from review_queue.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from review_queue.storage.database import Database
from review_queue.storage.sqlmodel_models import Commit, Response, Review, ReviewJob


class ReviewStore:
    """Reads the single review written when a job completes.

    Reviews are only created by ``JobQueue.complete``; there is no update or
    delete path.
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    def get_by_job_id(self, job_id: int) -> ReviewView | None:
        with self.database.session() as session:
            row = session.exec(select(Review).where(Review.job_id == job_id)).one_or_none()
            return _to_review_view(row) if row is not None else None

    def get_by_commit_sha(self, sha: str) -> ReviewView | None:
        """Review of the most recently completed job for the commit ``sha``."""

        with self.database.session() as session:
            row = session.exec(
                select(Review)
                .join(ReviewJob, col(ReviewJob.id) == col(Review.job_id))
                .join(Commit, col(Commit.id) == col(ReviewJob.commit_id))
                .where(
                    Commit.sha == sha,
                    ReviewJob.status == JobStatus.DONE.value,
                )
                .order_by(col(Review.id).desc())
                .limit(1),
            ).one_or_none()
            return _to_review_view(row) if row is not None else None


def add_review(  # noqa: PLR0913
    *,
    session: Session,
    job_id: int,
    agent: str,
    prompt: str,
    output: str,
) -> None:
    """Stage the review row for a job completing inside ``session``."""

    session.add(
        Review(
            job_id=job_id,
            agent=agent,
            prompt=prompt,
            output=output,
            created_at=to_db_datetime(utc_now()),
        ),
    )


class ResponseStore:
    """Follow-up responses left by people or agents on a commit."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def add(self, *, commit_id: int, responder: str, response: str) -> ResponseView:
        with self.database.session() as session:
            row = Response(
                commit_id=commit_id,
                responder=responder,
                response=response,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_response_view(row)

    def list_for_commit(self, commit_id: int) -> list[ResponseView]:
        """Responses for a commit, oldest first."""

        with self.database.session() as session:
            rows = session.exec(
                select(Response)
                .where(Response.commit_id == commit_id)
                .order_by(col(Response.id).asc()),
            ).all()
            return [_to_response_view(row) for row in rows]

    def list_for_commit_sha(self, sha: str) -> list[ResponseView]:
        with self.database.session() as session:
            rows = session.exec(
                select(Response)
                .join(Commit, col(Commit.id) == col(Response.commit_id))
                .where(Commit.sha == sha)
                .order_by(col(Response.id).asc()),
            ).all()
            return [_to_response_view(row) for row in rows]


def _to_review_view(row: Review) -> ReviewView:
    return ReviewView(
        review_id=row.id or 0,
        job_id=row.job_id,
        agent=row.agent,
        prompt=row.prompt,
        output=row.output,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_response_view(row: Response) -> ResponseView:
    return ResponseView(
        response_id=row.id or 0,
        commit_id=row.commit_id,
        responder=row.responder,
        response=row.response,
        created_at=to_utc_aware_datetime(row.created_at),
    )
