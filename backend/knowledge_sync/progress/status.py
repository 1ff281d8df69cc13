"""Read boundary polled by clients: job, latest run, progress and counts."""

from __future__ import annotations

from dataclasses import dataclass

from knowledge_sync.ledger.jobs import JobLedger
from knowledge_sync.models.entities import Job, JobRun
from knowledge_sync.progress.aggregator import ProgressView, aggregate_progress
from knowledge_sync.store.versions import ContentVersionStore, ScopeCounts


@dataclass(slots=True)
class ScopeStatus:
    job: Job | None
    latest_run: JobRun | None
    progress: ProgressView | None
    counts: ScopeCounts


def read_scope_status(ledger: JobLedger, store: ContentVersionStore, scope_id: str) -> ScopeStatus:
    """Join the latest job and run with scope counts in one read snapshot."""
    with ledger.db.snapshot():
        latest = ledger.latest_for_scope(scope_id)
        counts = store.counts_for_scope(scope_id)
    progress = None
    if latest.job is not None:
        run = latest.run
        progress = aggregate_progress(
            run.stats if run else None,
            job_status=latest.job.status,
            started_at=run.started_at if run else None,
            error=run.error if run else None,
        )
    return ScopeStatus(job=latest.job, latest_run=latest.run, progress=progress, counts=counts)


__all__ = ["ScopeStatus", "read_scope_status"]
