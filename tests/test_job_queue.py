from __future__ import annotations

import multiprocessing
import sqlite3
from pathlib import Path

import allure
import pytest

from review_queue import (
    CommitStore,
    Database,
    JobQueue,
    JobStatus,
    RepoStore,
    ReviewStore,
    StoreBusyError,
)
from sqlite_helpers import open_raw_connection

pytestmark = [
    allure.epic("Review Queue"),
    allure.feature("Job State Machine"),
]


def _claim_once(  # pragma: no cover - executed in child process
    db_path: str,
    worker_id: str,
    start_event: multiprocessing.synchronize.Event,
    result_queue: multiprocessing.queues.Queue[tuple[str, int | None, str]],
) -> None:
    database = Database(Path(db_path), busy_timeout_ms=20_000)
    try:
        start_event.wait(timeout=10)
        claimed = JobQueue(database).claim(worker_id=worker_id)
        result_queue.put((worker_id, claimed.job_id if claimed is not None else None, ""))
    except Exception as error:  # noqa: BLE001
        result_queue.put((worker_id, None, str(error)))
    finally:
        database.close()


def test_job_lifecycle(job_queue: JobQueue, enqueue_commit) -> None:
    job = enqueue_commit("abc123")
    assert job.status == JobStatus.QUEUED
    assert job.git_ref == "abc123"
    assert job.started_at is None
    assert job.worker_id is None
    assert job.repo_name == "test-repo"
    assert job.commit_subject == "Subject"

    claimed = job_queue.claim(worker_id="worker-1")
    assert claimed is not None
    assert claimed.job_id == job.job_id
    assert claimed.status == JobStatus.RUNNING
    assert claimed.worker_id == "worker-1"
    assert claimed.started_at is not None

    assert job_queue.claim(worker_id="worker-2") is None

    assert job_queue.complete(job_id=job.job_id, agent="codex", prompt="p", output="LGTM") is True

    done = job_queue.get_job_by_id(job.job_id)
    assert done is not None
    assert done.status == JobStatus.DONE
    assert done.finished_at is not None
    assert done.error is None

    review = job_queue.get_review_by_commit_sha("abc123")
    assert review is not None
    assert review.job_id == job.job_id
    assert review.output == "LGTM"
    assert review.agent == "codex"
    assert review.prompt == "p"


def test_claim_is_fifo_and_reports_empty_queue(job_queue: JobQueue, enqueue_commit) -> None:
    jobs = [enqueue_commit(sha) for sha in ("c0", "c1", "c2")]

    claimed = [job_queue.claim(worker_id=f"worker-{index}") for index in range(3)]
    assert [job.git_ref for job in claimed if job is not None] == ["c0", "c1", "c2"]
    assert [job.job_id for job in claimed if job is not None] == [job.job_id for job in jobs]
    assert job_queue.claim(worker_id="worker-3") is None


def test_claim_order_is_global_across_repos(
    database: Database,
    job_queue: JobQueue,
    enqueue_commit,
) -> None:
    other_repo = RepoStore(database).get_or_create("/tmp/other-repo")
    enqueue_commit("first")
    enqueue_commit("second", repo_id=other_repo.repo_id)
    enqueue_commit("third")

    claimed = [job_queue.claim(worker_id="worker") for _ in range(3)]
    assert [job.git_ref for job in claimed if job is not None] == ["first", "second", "third"]
    assert [job.repo_name for job in claimed if job is not None] == [
        "test-repo",
        "other-repo",
        "test-repo",
    ]


def test_fail_records_error(job_queue: JobQueue, enqueue_commit) -> None:
    job = enqueue_commit("def456")
    assert job_queue.claim(worker_id="worker-1") is not None

    assert job_queue.fail(job_id=job.job_id, error="timeout") is True

    failed = job_queue.get_job_by_id(job.job_id)
    assert failed is not None
    assert failed.status == JobStatus.FAILED
    assert failed.error == "timeout"
    assert failed.finished_at is not None
    assert job_queue.get_review_by_commit_sha("def456") is None


def test_only_running_jobs_can_finish(
    database: Database,
    job_queue: JobQueue,
    enqueue_commit,
) -> None:
    queued = enqueue_commit("queued-job")
    assert job_queue.complete(job_id=queued.job_id, agent="codex", prompt="p", output="o") is False
    assert job_queue.fail(job_id=queued.job_id, error="nope") is False
    assert job_queue.complete(job_id=9999, agent="codex", prompt="p", output="o") is False

    untouched = job_queue.get_job_by_id(queued.job_id)
    assert untouched is not None
    assert untouched.status == JobStatus.QUEUED
    assert untouched.error is None

    claimed = job_queue.claim(worker_id="worker-1")
    assert claimed is not None
    assert job_queue.complete(job_id=claimed.job_id, agent="codex", prompt="p", output="first")
    second = job_queue.complete(job_id=claimed.job_id, agent="codex", prompt="p", output="second")
    assert second is False
    assert job_queue.fail(job_id=claimed.job_id, error="late") is False

    review = ReviewStore(database).get_by_job_id(claimed.job_id)
    assert review is not None
    assert review.output == "first"
    final = job_queue.get_job_by_id(claimed.job_id)
    assert final is not None
    assert final.status == JobStatus.DONE
    assert final.error is None


def test_reset_stale_jobs_requeues_only_running(job_queue: JobQueue, enqueue_commit) -> None:
    done = enqueue_commit("done")
    failed = enqueue_commit("failed")
    running_a = enqueue_commit("running-a")
    running_b = enqueue_commit("running-b")
    queued = enqueue_commit("queued")

    for worker_id in ("w1", "w2", "w3", "w4"):
        assert job_queue.claim(worker_id=worker_id) is not None
    assert job_queue.complete(job_id=done.job_id, agent="codex", prompt="p", output="o")
    assert job_queue.fail(job_id=failed.job_id, error="boom")

    assert job_queue.reset_stale_jobs() == 2

    for job in (running_a, running_b):
        recovered = job_queue.get_job_by_id(job.job_id)
        assert recovered is not None
        assert recovered.status == JobStatus.QUEUED
        assert recovered.worker_id is None
        assert recovered.started_at is None

    statuses = {
        job.job_id: view.status
        for job in (done, failed, queued)
        if (view := job_queue.get_job_by_id(job.job_id)) is not None
    }
    assert statuses == {
        done.job_id: JobStatus.DONE,
        failed.job_id: JobStatus.FAILED,
        queued.job_id: JobStatus.QUEUED,
    }
    assert job_queue.reset_stale_jobs() == 0

    reclaimed = job_queue.claim(worker_id="w5")
    assert reclaimed is not None
    assert reclaimed.job_id == running_a.job_id


def test_job_counts_cover_every_job(job_queue: JobQueue, enqueue_commit) -> None:
    assert job_queue.get_job_counts().total == 0

    jobs = [enqueue_commit(f"sha-{index}") for index in range(6)]
    counts = job_queue.get_job_counts()
    assert (counts.queued, counts.running, counts.done, counts.failed) == (6, 0, 0, 0)

    for _ in range(4):
        assert job_queue.claim(worker_id="w") is not None
    assert job_queue.complete(job_id=jobs[0].job_id, agent="codex", prompt="p", output="o")
    assert job_queue.fail(job_id=jobs[1].job_id, error="err")

    counts = job_queue.get_job_counts()
    assert (counts.queued, counts.running, counts.done, counts.failed) == (2, 2, 1, 1)
    assert counts.total == len(jobs)


def test_enqueue_does_not_deduplicate(database: Database, job_queue: JobQueue, repo) -> None:
    first = job_queue.enqueue(repo_id=repo.repo_id, commit_id=None, git_ref="main")
    second = job_queue.enqueue(repo_id=repo.repo_id, commit_id=None, git_ref="main")

    assert first.job_id != second.job_id
    assert first.commit_id is None
    assert first.commit_subject is None
    assert first.agent == "codex"
    assert job_queue.get_job_counts().queued == 2

    custom = JobQueue(database, default_agent="claude-code")
    assert custom.enqueue(repo_id=repo.repo_id, commit_id=None, git_ref="dev").agent == "claude-code"


def test_list_jobs_newest_first_with_status_filter(job_queue: JobQueue, enqueue_commit) -> None:
    jobs = [enqueue_commit(sha) for sha in ("a1", "b2", "c3")]
    assert job_queue.claim(worker_id="w") is not None

    listed = job_queue.list_jobs()
    assert [job.job_id for job in listed] == [job.job_id for job in reversed(jobs)]

    running = job_queue.list_jobs(status=JobStatus.RUNNING)
    assert [job.git_ref for job in running] == ["a1"]
    assert [job.git_ref for job in job_queue.list_jobs(status="queued", limit=1)] == ["c3"]

    with pytest.raises(ValueError):
        job_queue.list_jobs(status="paused")


def test_claim_is_exclusive_across_processes(tmp_path: Path) -> None:
    db_path = tmp_path / "claim-race.db"
    with Database.open(db_path) as database:
        repo = RepoStore(database).get_or_create("/tmp/race-repo")
        commits = CommitStore(database)
        job_queue = JobQueue(database)
        job_ids = set()
        for index in range(4):
            commit = commits.get_or_create(
                repo_id=repo.repo_id,
                sha=f"race-{index}",
                author="Author",
                subject="Subject",
                timestamp=repo.created_at,
            )
            job_ids.add(
                job_queue.enqueue(
                    repo_id=repo.repo_id,
                    commit_id=commit.commit_id,
                    git_ref=commit.sha,
                ).job_id,
            )

    context = multiprocessing.get_context("spawn")
    start_event = context.Event()
    result_queue: multiprocessing.queues.Queue[tuple[str, int | None, str]] = context.Queue()
    processes = [
        context.Process(
            target=_claim_once,
            args=(str(db_path), f"worker-{index}", start_event, result_queue),
        )
        for index in range(6)
    ]
    for process in processes:
        process.start()
    start_event.set()
    results = [result_queue.get(timeout=60) for _ in processes]
    for process in processes:
        process.join(timeout=30)
        assert process.exitcode == 0

    assert [message for _, _, message in results if message] == []
    claimed = [job_id for _, job_id, _ in results if job_id is not None]
    assert sorted(claimed) == sorted(job_ids)
    assert sum(1 for _, job_id, _ in results if job_id is None) == 2

    with Database.open(db_path) as database:
        counts = JobQueue(database).get_job_counts()
        assert (counts.queued, counts.running) == (0, 4)
        workers = {job.worker_id for job in JobQueue(database).list_jobs()}
        assert len(workers) == 4


def test_lock_timeout_surfaces_as_retryable_error(tmp_path: Path) -> None:
    db_path = tmp_path / "busy.db"
    database = Database.open(db_path, busy_timeout_ms=100)
    blocker: sqlite3.Connection = open_raw_connection(db_path, busy_timeout_ms=100)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(StoreBusyError) as error_info:
            JobQueue(database).claim(worker_id="worker-1")
        assert error_info.value.retryable is True
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()
        database.close()


def test_schema_version_read_under_lock_is_retryable(tmp_path: Path) -> None:
    db_path = tmp_path / "busy-version.db"
    database = Database.open(db_path, busy_timeout_ms=100)
    blocker = open_raw_connection(db_path, busy_timeout_ms=100)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(StoreBusyError):
            database.schema_version()
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()
        database.close()
