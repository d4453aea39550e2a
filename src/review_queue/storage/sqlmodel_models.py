"""SQLModel ORM tables for the review queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel

DEFAULT_AGENT = "codex"
JOB_STATUS_CHECK = "status IN ('queued','running','done','failed')"


class SchemaVersion(SQLModel, table=True):
    __tablename__ = "schema_version"  # type: ignore[bad-override]

    version: int = Field(sa_column=Column(Integer, primary_key=True, autoincrement=False))


class Repo(SQLModel, table=True):
    __tablename__ = "repos"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("root_path", name="uq_repos_root_path"),)

    id: int | None = Field(default=None, primary_key=True)
    root_path: str = Field(sa_column=Column(String, nullable=False))
    name: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Commit(SQLModel, table=True):
    __tablename__ = "commits"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("sha", name="uq_commits_sha"),
        Index("idx_commits_sha", "sha"),
    )

    id: int | None = Field(default=None, primary_key=True)
    repo_id: int = Field(
        sa_column=Column(Integer, ForeignKey("repos.id"), nullable=False),
    )
    sha: str = Field(sa_column=Column(String, nullable=False))
    author: str
    subject: str = Field(sa_column=Column(Text, nullable=False))
    timestamp: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ReviewJob(SQLModel, table=True):
    __tablename__ = "review_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(JOB_STATUS_CHECK, name="ck_review_jobs_status"),
        Index("idx_review_jobs_status", "status"),
        Index("idx_review_jobs_repo", "repo_id"),
        Index("idx_review_jobs_git_ref", "git_ref"),
    )

    id: int | None = Field(default=None, primary_key=True)
    repo_id: int = Field(
        sa_column=Column(Integer, ForeignKey("repos.id"), nullable=False),
    )
    commit_id: int | None = Field(
        default=None,
        sa_column=Column(Integer, ForeignKey("commits.id"), nullable=True),
    )
    git_ref: str = Field(sa_column=Column(String, nullable=False))
    agent: str = Field(
        default=DEFAULT_AGENT,
        sa_column=Column(String, nullable=False, server_default=DEFAULT_AGENT),
    )
    status: str = Field(
        sa_column=Column(String, nullable=False, server_default=text("'queued'")),
    )
    enqueued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    worker_id: str | None = None
    error: str | None = Field(default=None, sa_column=Column(Text))


class Review(SQLModel, table=True):
    __tablename__ = "reviews"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("job_id", name="uq_reviews_job_id"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: int = Field(
        sa_column=Column(Integer, ForeignKey("review_jobs.id"), nullable=False),
    )
    agent: str
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    output: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Response(SQLModel, table=True):
    __tablename__ = "responses"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    commit_id: int = Field(
        sa_column=Column(Integer, ForeignKey("commits.id"), nullable=False, index=True),
    )
    responder: str
    response: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


STORE_MODELS: tuple[type[SQLModel], ...] = (SchemaVersion, Repo, Commit, ReviewJob, Review, Response)
