"""Tests for the job ledger state machine."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from knowledge_sync.core.config import Settings
from knowledge_sync.core.errors import AlreadyRunning, InvalidTransition, NotFound
from knowledge_sync.db.sqlite import SQLiteDatabase
from knowledge_sync.ledger.jobs import JobLedger
from knowledge_sync.models.entities import JobStatus, RunStatus
from knowledge_sync.models.stats import RunStats


def test_enqueue_creates_pending_job(ledger: JobLedger) -> None:
    job = ledger.enqueue("scope-a", "drive", payload={"account_id": "acc-1"})
    assert job.status is JobStatus.PENDING
    assert job.attempts == 0
    assert job.max_attempts == 3
    assert job.workspace_id == "default-workspace"
    assert job.payload == {"account_id": "acc-1"}
    assert ledger.list_runs(job.id) == []


def test_enqueue_reuses_idempotency_key_and_pending_job(ledger: JobLedger) -> None:
    first = ledger.enqueue("scope-a", "drive", idempotency_key="key-1")
    assert ledger.enqueue("scope-b", "jira", idempotency_key="key-1").id == first.id
    assert ledger.enqueue("scope-a", "drive").id == first.id


def test_pending_job_is_reused_only_for_same_connector(ledger: JobLedger) -> None:
    drive = ledger.enqueue("scope-a", "drive")
    jira = ledger.enqueue("scope-a", "jira")

    assert jira.id != drive.id
    assert jira.connector_type.value == "jira"
    assert ledger.enqueue("scope-a", "drive").id == drive.id
    assert ledger.enqueue("scope-a", "jira").id == jira.id


def test_enqueue_rejects_running_scope(ledger: JobLedger) -> None:
    job = ledger.enqueue("scope-a", "drive")
    ledger.claim(job)
    with pytest.raises(AlreadyRunning):
        ledger.enqueue("scope-a", "drive")


def test_claim_opens_first_attempt(ledger: JobLedger) -> None:
    job = ledger.enqueue("scope-a", "drive")
    run = ledger.claim(job)

    claimed = ledger.get_job(job.id)
    assert claimed.status is JobStatus.RUNNING
    assert claimed.attempts == 1
    assert claimed.locked_by == "test-worker"
    assert run.attempt_number == 1
    assert run.status is RunStatus.RUNNING
    assert run.stats == {"phase": "queued"}


def test_claim_twice_is_rejected(ledger: JobLedger) -> None:
    job = ledger.enqueue("scope-a", "drive")
    ledger.claim(job)
    with pytest.raises(AlreadyRunning):
        ledger.claim(job)
    assert len(ledger.list_runs(job.id)) == 1


def test_concurrent_claims_have_one_winner(db, settings: Settings) -> None:
    job = JobLedger(db, settings).enqueue("scope-a", "drive")
    barrier = threading.Barrier(2)
    results: list[str] = []
    lock = threading.Lock()

    def worker(name: str) -> None:
        database = SQLiteDatabase(settings.db_path)
        try:
            worker_ledger = JobLedger(database, settings)
            barrier.wait()
            try:
                worker_ledger.claim(job.id, worker_id=name)
                outcome = "ok"
            except (AlreadyRunning, InvalidTransition) as exc:
                outcome = type(exc).__name__
            with lock:
                results.append(outcome)
        finally:
            database.close()

    threads = [threading.Thread(target=worker, args=(f"worker-{index}",)) for index in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(results) == 2
    assert results.count("ok") == 1
    ledger = JobLedger(db, settings)
    assert ledger.get_job(job.id).status is JobStatus.RUNNING
    assert [run.attempt_number for run in ledger.list_runs(job.id)] == [1]


def test_claim_missing_job(ledger: JobLedger) -> None:
    with pytest.raises(NotFound):
        ledger.claim("job_missing")


def test_only_one_running_job_per_scope(ledger: JobLedger) -> None:
    first = ledger.enqueue("scope-a", "drive")
    second = ledger.enqueue("scope-tmp", "drive")
    # Two pending jobs of one scope can exist through retries; force that here.
    ledger.db.execute("UPDATE jobs SET scope_id = ? WHERE id = ?", ["scope-a", second.id])

    ledger.claim(first)
    with pytest.raises(AlreadyRunning):
        ledger.claim(second.id)
    assert ledger.get_job(second.id).status is JobStatus.PENDING
    assert ledger.list_runs(second.id) == []


def test_failed_attempt_returns_job_to_pending(ledger: JobLedger) -> None:
    job = ledger.enqueue("scope-a", "drive")
    run = ledger.claim(job)
    failed = ledger.fail(run, "boom\nTraceback (most recent call last): ...", RunStats(processed=2))

    assert failed.status is JobStatus.PENDING
    assert failed.locked_by is None
    stored = ledger.get_run(run.id)
    assert stored.status is RunStatus.FAILED
    assert stored.error == "boom"
    assert stored.finished_at is not None
    assert stored.stats["processed"] == 2
    assert stored.stats["phase"] == "error"


def test_attempts_are_gap_free_until_dead_letter(ledger: JobLedger) -> None:
    job = ledger.enqueue("scope-a", "drive")
    for expected in (1, 2, 3):
        run = ledger.claim(job)
        assert run.attempt_number == expected
        job = ledger.fail(run, f"failure {expected}")

    assert job.status is JobStatus.DEAD_LETTER
    assert job.attempts == 3
    assert job.completed_at is not None
    assert [run.attempt_number for run in ledger.list_runs(job.id)] == [1, 2, 3]
    assert all(run.status is RunStatus.FAILED for run in ledger.list_runs(job.id))
    with pytest.raises(InvalidTransition):
        ledger.claim(job)


def test_per_job_max_attempts(ledger: JobLedger) -> None:
    job = ledger.enqueue("scope-a", "drive", max_attempts=1)
    run = ledger.claim(job)
    assert ledger.fail(run, "nope").status is JobStatus.DEAD_LETTER


def test_complete_closes_run_and_job(ledger: JobLedger) -> None:
    job = ledger.enqueue("scope-a", "drive")
    run = ledger.claim(job)
    done = ledger.complete(run, RunStats(phase="done", processed=4, discovered=4))

    assert done.status is JobStatus.COMPLETED
    assert done.completed_at is not None
    stored = ledger.get_run(run.id)
    assert stored.status is RunStatus.COMPLETED
    assert stored.stats["processed"] == 4
    assert "duration_ms" in stored.stats
    with pytest.raises(InvalidTransition):
        ledger.complete(run)
    with pytest.raises(InvalidTransition):
        ledger.fail(run, "late failure")


def test_record_stats_merges_monotonically(ledger: JobLedger) -> None:
    job = ledger.enqueue("scope-a", "drive")
    run = ledger.claim(job)

    assert ledger.record_stats(run, {"phase": "fetching", "processed": 5, "custom": "kept"})
    assert ledger.record_stats(run, RunStats(phase="persisting", processed=3, discovered=10))

    stats = ledger.get_run(run.id).stats
    assert stats["phase"] == "persisting"
    assert stats["processed"] == 5
    assert stats["discovered"] == 10
    assert stats["custom"] == "kept"


def test_record_stats_ignored_after_run_closes(ledger: JobLedger) -> None:
    job = ledger.enqueue("scope-a", "drive")
    run = ledger.claim(job)
    ledger.complete(run)
    assert ledger.record_stats(run, {"processed": 99}) is False
    assert "processed" not in ledger.get_run(run.id).stats


def test_recover_stale_requeues(ledger: JobLedger) -> None:
    job = ledger.enqueue("scope-a", "drive")
    run = ledger.claim(job)

    stale = ledger.stale_runs(0)
    assert [item.id for item in stale] == [run.id]
    recovered = ledger.recover_stale(stale[0])

    assert recovered.status is JobStatus.PENDING
    stored = ledger.get_run(run.id)
    assert stored.status is RunStatus.FAILED
    assert stored.error.startswith("Run stalled")
    assert ledger.stale_runs(0) == []


def test_recover_stale_can_park_and_requeue(ledger: JobLedger) -> None:
    job = ledger.enqueue("scope-a", "drive")
    run = ledger.claim(job)

    parked = ledger.recover_stale(run, requeue=False)
    assert parked.status is JobStatus.FAILED

    requeued = ledger.requeue(job)
    assert requeued.status is JobStatus.PENDING
    assert ledger.claim(job).attempt_number == 2
    with pytest.raises(InvalidTransition):
        ledger.requeue(job)


def test_due_jobs_respect_retry_delay(db) -> None:
    settings = Settings(db_path=db.db_path, retry_base_seconds=60, worker_id="test-worker")
    ledger = JobLedger(db, settings)
    job = ledger.enqueue("scope-a", "drive")
    assert [item.id for item in ledger.due_jobs()] == [job.id]

    ledger.fail(ledger.claim(job), "temporary")
    assert ledger.due_jobs() == []
    later = datetime.now(tz=timezone.utc) + timedelta(minutes=2)
    assert [item.id for item in ledger.due_jobs(now=later)] == [job.id]


def test_due_jobs_prefer_priority(ledger: JobLedger) -> None:
    low = ledger.enqueue("scope-a", "drive")
    high = ledger.enqueue("scope-b", "drive", priority=5)
    assert [job.id for job in ledger.due_jobs()] == [high.id, low.id]


def test_latest_for_scope(ledger: JobLedger) -> None:
    assert ledger.latest_for_scope("scope-a").job is None

    job = ledger.enqueue("scope-a", "drive")
    latest = ledger.latest_for_scope("scope-a")
    assert latest.job.id == job.id
    assert latest.run is None

    first = ledger.claim(job)
    ledger.fail(first, "retry me")
    second = ledger.claim(job)
    assert ledger.latest_for_scope("scope-a").run.id == second.id
