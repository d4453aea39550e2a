"""Domain models for the review job queue."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class JobStatus(str, Enum):
    """Durable review job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True)
class RepoView:
    """Registered repository."""

    repo_id: int
    root_path: str
    name: str
    created_at: datetime


@dataclass(slots=True)
class CommitView:
    """Commit metadata; immutable once stored."""

    commit_id: int
    repo_id: int
    sha: str
    author: str
    subject: str
    timestamp: datetime
    created_at: datetime


@dataclass(slots=True)
class ReviewJobView:
    """Readable job view for workers and status listings."""

    job_id: int
    repo_id: int
    commit_id: int | None
    git_ref: str
    agent: str
    status: JobStatus
    enqueued_at: datetime
    started_at: datetime | None
    finished_at: datetime | None
    worker_id: str | None
    error: str | None
    repo_name: str | None = None
    repo_path: str | None = None
    commit_subject: str | None = None


@dataclass(slots=True)
class ReviewView:
    """Outcome of a completed job."""

    review_id: int
    job_id: int
    agent: str
    prompt: str
    output: str
    created_at: datetime


@dataclass(slots=True)
class ResponseView:
    """Follow-up response left on a commit."""

    response_id: int
    commit_id: int
    responder: str
    response: str
    created_at: datetime


@dataclass(slots=True)
class JobCounts:
    """Number of jobs per status."""

    queued: int = 0
    running: int = 0
    done: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.queued + self.running + self.done + self.failed
