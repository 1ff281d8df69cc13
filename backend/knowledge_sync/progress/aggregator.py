"""Display-ready progress derived from a run's raw statistics."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Mapping

from knowledge_sync.models.entities import JobStatus
from knowledge_sync.models.stats import RunStats, SyncPhase, phase_label

_STATUS_PHASES: dict[JobStatus, SyncPhase] = {
    JobStatus.PENDING: SyncPhase.QUEUED,
    JobStatus.COMPLETED: SyncPhase.DONE,
    JobStatus.FAILED: SyncPhase.ERROR,
    JobStatus.DEAD_LETTER: SyncPhase.ERROR,
}


@dataclass(slots=True)
class ProgressView:
    phase: str
    phase_label: str
    processed_sources: int
    total_sources: int | None
    processed_chunks: int
    percent: int | None
    eta_seconds: float | None
    started_at: datetime | None
    error: str | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def aggregate_progress(
    stats: RunStats | Mapping[str, Any] | None,
    job_status: JobStatus | str | None = None,
    started_at: datetime | None = None,
    error: str | None = None,
) -> ProgressView:
    """Normalize run statistics into a progress view.

    Pure function: never touches storage and never raises on unknown or
    missing fields. Unrecognized phases are passed through as-is with the
    generic label.
    """
    parsed = RunStats.parse(stats)
    phase = parsed.phase or _phase_from_status(job_status)
    processed = parsed.processed if parsed.processed is not None else (parsed.upserted or 0)
    total = parsed.discovered or None
    return ProgressView(
        phase=phase,
        phase_label=phase_label(phase),
        processed_sources=processed,
        total_sources=total,
        processed_chunks=parsed.chunks_created or 0,
        percent=percent_complete(processed, total),
        eta_seconds=parsed.eta_seconds if parsed.eta_seconds is not None and parsed.eta_seconds >= 0 else None,
        started_at=started_at,
        error=error or parsed.error,
    )


def percent_complete(processed: int, total: int | None) -> int | None:
    if not total:
        return None
    return max(0, min(100, round(processed / total * 100)))


def _phase_from_status(job_status: JobStatus | str | None) -> str:
    if job_status is None:
        return SyncPhase.QUEUED.value
    try:
        status = JobStatus(job_status)
    except ValueError:
        return str(job_status)
    phase = _STATUS_PHASES.get(status)
    return phase.value if phase else status.value


__all__ = ["ProgressView", "aggregate_progress", "percent_complete"]
