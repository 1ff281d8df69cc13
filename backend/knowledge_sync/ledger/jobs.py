"""Job and job-run records and the job state machine.

State machine::

    pending --claim--> running --complete--> completed
    running --fail (attempts left)--> pending
    running --fail (attempts exhausted)--> dead_letter
    running --recover_stale(requeue=False)--> failed --requeue--> pending

``completed`` and ``dead_letter`` are terminal. Every transition is a
conditional UPDATE inside a ``BEGIN IMMEDIATE`` transaction, so two workers
racing for the same job or scope cannot both win; the partial unique index
``jobs_one_running_per_scope`` backs the per-scope mutual exclusion.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from knowledge_sync.core.config import Settings
from knowledge_sync.core.errors import AlreadyRunning, InvalidTransition, NotFound, short_message
from knowledge_sync.core.logging import get_logger, job_context
from knowledge_sync.core.metrics import JOB_TRANSITIONS
from knowledge_sync.db.sqlite import SQLiteDatabase
from knowledge_sync.models.entities import (
    ConnectorType,
    Job,
    JobRun,
    JobStatus,
    JobType,
    RunStatus,
    dump_json,
    load_json,
)
from knowledge_sync.models.stats import RunStats, merge_stats
from knowledge_sync.utils.ids import JOB_PREFIX, RUN_PREFIX, new_id
from knowledge_sync.utils.time import now_ms

logger = get_logger(__name__)

StatsPatch = RunStats | Mapping[str, Any]


@dataclass(slots=True)
class LatestJob:
    job: Job | None
    run: JobRun | None


class JobLedger:
    """Persistent record of sync jobs, their runs and attempt bookkeeping."""

    def __init__(self, database: SQLiteDatabase, settings: Settings) -> None:
        self.db = database
        self.settings = settings

    # Trigger ----------------------------------------------------------

    def enqueue(
        self,
        scope_id: str,
        connector_type: ConnectorType | str,
        *,
        workspace_id: str | None = None,
        user_id: str | None = None,
        payload: Mapping[str, Any] | None = None,
        idempotency_key: str | None = None,
        priority: int = 0,
        max_attempts: int | None = None,
    ) -> Job:
        """Create a pending sync job for the scope.

        Raises ``AlreadyRunning`` while a job of the scope is running. A
        repeated idempotency key, or a scope that already has a pending job
        for the same connector, returns the existing job instead of creating
        a duplicate.
        """
        connector = ConnectorType(connector_type)
        now = now_ms()
        job_id = new_id(JOB_PREFIX)
        with self.db.transaction() as conn:
            if idempotency_key:
                existing = conn.execute(
                    "SELECT * FROM jobs WHERE idempotency_key = ?", [idempotency_key]
                ).fetchone()
                if existing is not None:
                    logger.info("Returning existing job for idempotency key %s", idempotency_key)
                    return Job.from_row(existing)
            running = conn.execute(
                "SELECT id FROM jobs WHERE scope_id = ? AND status = ?",
                [scope_id, JobStatus.RUNNING.value],
            ).fetchone()
            if running is not None:
                raise AlreadyRunning(scope_id)
            pending = conn.execute(
                """
                SELECT * FROM jobs WHERE scope_id = ? AND connector_type = ? AND status = ?
                ORDER BY created_at DESC LIMIT 1
                """,
                [scope_id, connector.value, JobStatus.PENDING.value],
            ).fetchone()
            if pending is not None:
                logger.info("Scope %s already has pending job %s", scope_id, pending["id"])
                return Job.from_row(pending)
            conn.execute(
                """
                INSERT INTO jobs (
                  id, workspace_id, user_id, type, connector_type, scope_id, status, priority,
                  idempotency_key, input_json, attempts, max_attempts, next_run_at,
                  created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
                """,
                [
                    job_id,
                    workspace_id or self.settings.workspace_id,
                    user_id,
                    JobType.SYNC.value,
                    connector.value,
                    scope_id,
                    JobStatus.PENDING.value,
                    priority,
                    idempotency_key,
                    dump_json(dict(payload or {})),
                    max_attempts or self.settings.max_attempts,
                    now,
                    now,
                    now,
                ],
            )
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", [job_id]).fetchone()
        JOB_TRANSITIONS.labels(to_status=JobStatus.PENDING.value).inc()
        logger.info("Enqueued %s sync job %s", connector.value, job_id, extra=job_context(job_id, scope_id))
        return Job.from_row(row)

    # Transitions ------------------------------------------------------

    def claim(self, job: Job | str, worker_id: str | None = None) -> JobRun:
        """Move a pending job to running and open its next attempt."""
        job_id = _job_id(job)
        now = now_ms()
        run_id = new_id(RUN_PREFIX)
        try:
            with self.db.transaction() as conn:
                current = conn.execute("SELECT * FROM jobs WHERE id = ?", [job_id]).fetchone()
                if current is None:
                    raise NotFound(f"Job {job_id} not found")
                if current["status"] != JobStatus.PENDING.value:
                    if current["status"] == JobStatus.RUNNING.value:
                        raise AlreadyRunning(current["scope_id"])
                    raise InvalidTransition("job", job_id, current["status"], "claim")
                open_run = conn.execute(
                    "SELECT id FROM job_runs WHERE job_id = ? AND status = ?",
                    [job_id, RunStatus.RUNNING.value],
                ).fetchone()
                if open_run is not None:
                    raise InvalidTransition("job", job_id, current["status"], "claim with open run")
                cursor = conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?, attempts = attempts + 1, locked_at = ?, locked_by = ?, updated_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    [
                        JobStatus.RUNNING.value,
                        now,
                        worker_id or self.settings.worker_id,
                        now,
                        job_id,
                        JobStatus.PENDING.value,
                    ],
                )
                if cursor.rowcount != 1:
                    raise InvalidTransition("job", job_id, current["status"], "claim")
                attempt = current["attempts"] + 1
                conn.execute(
                    """
                    INSERT INTO job_runs (id, job_id, attempt_number, status, started_at, updated_at, stats_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        run_id,
                        job_id,
                        attempt,
                        RunStatus.RUNNING.value,
                        now,
                        now,
                        dump_json({"phase": "queued"}),
                    ],
                )
                row = conn.execute("SELECT * FROM job_runs WHERE id = ?", [run_id]).fetchone()
        except sqlite3.IntegrityError as exc:
            # Another job of the same scope became running first.
            scope_id = job.scope_id if isinstance(job, Job) else self.get_job(job_id).scope_id
            raise AlreadyRunning(scope_id) from exc
        JOB_TRANSITIONS.labels(to_status=JobStatus.RUNNING.value).inc()
        logger.info(
            "Claimed job %s attempt %s",
            job_id,
            attempt,
            extra=job_context(job_id, current["scope_id"], attempt),
        )
        return JobRun.from_row(row)

    def record_stats(self, run: JobRun | str, patch: StatsPatch) -> bool:
        """Merge a partial stats update into a running run.

        Stats are observational; a write against a run that is no longer
        running (for example one reaped as stale) is dropped and ``False``
        is returned.
        """
        run_id = _run_id(run)
        values = patch.to_patch() if isinstance(patch, RunStats) else dict(patch)
        with self.db.transaction() as conn:
            row = conn.execute("SELECT status, stats_json FROM job_runs WHERE id = ?", [run_id]).fetchone()
            if row is None:
                raise NotFound(f"Run {run_id} not found")
            if row["status"] != RunStatus.RUNNING.value:
                logger.debug("Ignoring stats for run %s in state %s", run_id, row["status"])
                return False
            merged = _merge_into(row["stats_json"], values)
            conn.execute(
                "UPDATE job_runs SET stats_json = ?, updated_at = ? WHERE id = ?",
                [dump_json(merged), now_ms(), run_id],
            )
        return True

    def complete(self, run: JobRun | str, final_stats: StatsPatch | None = None) -> Job:
        """Close a running run successfully and mark its job completed."""
        run_id = _run_id(run)
        now = now_ms()
        with self.db.transaction() as conn:
            row = self._open_run(conn, run_id, "complete")
            stats = _merge_into(row["stats_json"], _patch_values(final_stats))
            stats["duration_ms"] = now - row["started_at"]
            conn.execute(
                "UPDATE job_runs SET status = ?, finished_at = ?, updated_at = ?, stats_json = ? WHERE id = ?",
                [RunStatus.COMPLETED.value, now, now, dump_json(stats), run_id],
            )
            self._transition_job(
                conn,
                row["job_id"],
                JobStatus.COMPLETED,
                "complete",
                completed_at=now,
            )
            job_row = conn.execute("SELECT * FROM jobs WHERE id = ?", [row["job_id"]]).fetchone()
        JOB_TRANSITIONS.labels(to_status=JobStatus.COMPLETED.value).inc()
        logger.info("Job %s completed", row["job_id"], extra=job_context(row["job_id"], job_row["scope_id"]))
        return Job.from_row(job_row)

    def fail(self, run: JobRun | str, error_message: str, stats: StatsPatch | None = None) -> Job:
        """Close a running run as failed and retry or dead-letter its job."""
        return self._fail_run(run, short_message(error_message), stats, requeue=True, action="fail")

    def recover_stale(self, run: JobRun | str, requeue: bool = True) -> Job:
        """Administrative transition for a run whose worker stopped reporting.

        With ``requeue`` the job goes back to ``pending`` (or ``dead_letter``
        when attempts are exhausted), otherwise it is parked as ``failed``.
        """
        message = f"Run stalled: no progress for {self.settings.stale_after_seconds}s"
        return self._fail_run(run, message, None, requeue=requeue, action="recover")

    def requeue(self, job: Job | str) -> Job:
        """Administrative ``failed -> pending`` transition."""
        job_id = _job_id(job)
        now = now_ms()
        with self.db.transaction() as conn:
            self._transition_job(
                conn,
                job_id,
                JobStatus.PENDING,
                "requeue",
                expected=JobStatus.FAILED,
                next_run_at=now,
            )
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", [job_id]).fetchone()
        JOB_TRANSITIONS.labels(to_status=JobStatus.PENDING.value).inc()
        return Job.from_row(row)

    def _fail_run(
        self,
        run: JobRun | str,
        message: str,
        stats: StatsPatch | None,
        *,
        requeue: bool,
        action: str,
    ) -> Job:
        run_id = _run_id(run)
        now = now_ms()
        with self.db.transaction() as conn:
            row = self._open_run(conn, run_id, action)
            merged = _merge_into(row["stats_json"], _patch_values(stats))
            merged.update({"phase": "error", "error": message, "duration_ms": now - row["started_at"]})
            conn.execute(
                """
                UPDATE job_runs SET status = ?, finished_at = ?, updated_at = ?, error = ?, stats_json = ?
                WHERE id = ?
                """,
                [RunStatus.FAILED.value, now, now, message, dump_json(merged), run_id],
            )
            job_row = conn.execute("SELECT * FROM jobs WHERE id = ?", [row["job_id"]]).fetchone()
            attempt = row["attempt_number"]
            if not requeue:
                target = JobStatus.FAILED
            elif attempt < job_row["max_attempts"]:
                target = JobStatus.PENDING
            else:
                target = JobStatus.DEAD_LETTER
            self._transition_job(
                conn,
                row["job_id"],
                target,
                action,
                next_run_at=now + int(self.settings.retry_delay_seconds(attempt) * 1000),
                completed_at=now if target is JobStatus.DEAD_LETTER else None,
            )
            job_row = conn.execute("SELECT * FROM jobs WHERE id = ?", [row["job_id"]]).fetchone()
        JOB_TRANSITIONS.labels(to_status=target.value).inc()
        context = job_context(row["job_id"], job_row["scope_id"], attempt)
        if target is JobStatus.DEAD_LETTER:
            logger.warning("Job %s moved to dead letter after %s attempts: %s", row["job_id"], attempt, message, extra=context)
        else:
            logger.warning("Job %s attempt %s failed (%s): %s", row["job_id"], attempt, target.value, message, extra=context)
        return Job.from_row(job_row)

    @staticmethod
    def _open_run(conn: sqlite3.Connection, run_id: str, action: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM job_runs WHERE id = ?", [run_id]).fetchone()
        if row is None:
            raise NotFound(f"Run {run_id} not found")
        if row["status"] != RunStatus.RUNNING.value:
            raise InvalidTransition("run", run_id, row["status"], action)
        return row

    @staticmethod
    def _transition_job(
        conn: sqlite3.Connection,
        job_id: str,
        target: JobStatus,
        action: str,
        *,
        expected: JobStatus = JobStatus.RUNNING,
        next_run_at: int | None = None,
        completed_at: int | None = None,
    ) -> None:
        now = now_ms()
        cursor = conn.execute(
            """
            UPDATE jobs
            SET status = ?, locked_at = NULL, locked_by = NULL, updated_at = ?,
                next_run_at = COALESCE(?, next_run_at), completed_at = COALESCE(?, completed_at)
            WHERE id = ? AND status = ?
            """,
            [target.value, now, next_run_at, completed_at, job_id, expected.value],
        )
        if cursor.rowcount != 1:
            current = conn.execute("SELECT status FROM jobs WHERE id = ?", [job_id]).fetchone()
            raise InvalidTransition("job", job_id, current["status"] if current else None, action)

    # Reads ------------------------------------------------------------

    def get_job(self, job_id: str) -> Job:
        row = self.db.query_one("SELECT * FROM jobs WHERE id = ?", [job_id])
        if row is None:
            raise NotFound(f"Job {job_id} not found")
        return Job.from_row(row)

    def get_run(self, run_id: str) -> JobRun:
        row = self.db.query_one("SELECT * FROM job_runs WHERE id = ?", [run_id])
        if row is None:
            raise NotFound(f"Run {run_id} not found")
        return JobRun.from_row(row)

    def list_runs(self, job_id: str) -> list[JobRun]:
        rows = self.db.query(
            "SELECT * FROM job_runs WHERE job_id = ? ORDER BY attempt_number",
            [job_id],
        )
        return [JobRun.from_row(row) for row in rows]

    def latest_for_scope(self, scope_id: str) -> LatestJob:
        """Most recently created job of the scope and its most recent run."""
        with self.db.snapshot() as conn:
            job_row = conn.execute(
                "SELECT * FROM jobs WHERE scope_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
                [scope_id],
            ).fetchone()
            if job_row is None:
                return LatestJob(job=None, run=None)
            run_row = conn.execute(
                "SELECT * FROM job_runs WHERE job_id = ? ORDER BY attempt_number DESC LIMIT 1",
                [job_row["id"]],
            ).fetchone()
        return LatestJob(job=Job.from_row(job_row), run=JobRun.from_row(run_row) if run_row else None)

    def due_jobs(self, limit: int = 5, now: datetime | None = None) -> list[Job]:
        at = int(now.timestamp() * 1000) if now else now_ms()
        rows = self.db.query(
            """
            SELECT * FROM jobs
            WHERE status = ? AND next_run_at <= ?
            ORDER BY priority DESC, created_at, rowid
            LIMIT ?
            """,
            [JobStatus.PENDING.value, at, limit],
        )
        return [Job.from_row(row) for row in rows]

    def stale_runs(self, stale_after_seconds: int | None = None) -> list[JobRun]:
        window = stale_after_seconds if stale_after_seconds is not None else self.settings.stale_after_seconds
        threshold = now_ms() - int(window * 1000)
        rows = self.db.query(
            "SELECT * FROM job_runs WHERE status = ? AND updated_at <= ? ORDER BY updated_at",
            [RunStatus.RUNNING.value, threshold],
        )
        return [JobRun.from_row(row) for row in rows]


def _job_id(job: Job | str) -> str:
    return job.id if isinstance(job, Job) else job


def _run_id(run: JobRun | str) -> str:
    return run.id if isinstance(run, JobRun) else run


def _patch_values(patch: StatsPatch | None) -> dict[str, Any]:
    if patch is None:
        return {}
    if isinstance(patch, RunStats):
        return patch.to_patch()
    return dict(patch)


def _merge_into(stored: str | None, values: Mapping[str, Any]) -> dict[str, Any]:
    return merge_stats(load_json(stored), values)


__all__ = ["JobLedger", "LatestJob"]
