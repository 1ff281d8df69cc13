"""Drives one sync job run from connector stream to committed versions."""

from __future__ import annotations

import sqlite3
import time
from dataclasses import dataclass, field
from typing import Callable, Iterator

from knowledge_sync.core.config import Settings
from knowledge_sync.core.errors import (
    AlreadyRunning,
    ConnectorFailure,
    InvalidTransition,
    PersistenceFailure,
    RunFailure,
    SyncError,
    short_message,
)
from knowledge_sync.core.logging import get_logger, job_context
from knowledge_sync.core.metrics import SYNC_DURATION
from knowledge_sync.ledger.jobs import JobLedger
from knowledge_sync.models.entities import Job, JobRun
from knowledge_sync.models.stats import RunStats, SyncPhase
from knowledge_sync.store.versions import ContentVersionStore
from knowledge_sync.sync.connectors import Connector, ContentItem, SkippedItem, StreamElement
from knowledge_sync.utils.hashing import content_hash
from knowledge_sync.utils.time import utc_now

logger = get_logger(__name__)

MAX_ITEM_ERRORS = 20


class RateEstimator:
    """Exponential moving average of items per second.

    ``smoothing`` is the weight of the newest observation. Observations that
    arrive within the same clock tick are folded into the next one.
    """

    def __init__(self, smoothing: float, started_at: float) -> None:
        self.smoothing = smoothing
        self._last_count = 0
        self._last_time = started_at
        self.rate: float | None = None

    def observe(self, processed: int, now: float) -> float | None:
        elapsed = now - self._last_time
        delta = processed - self._last_count
        if elapsed <= 0 or delta <= 0:
            return self.rate
        instant = delta / elapsed
        if self.rate is None:
            self.rate = instant
        else:
            self.rate = self.smoothing * instant + (1 - self.smoothing) * self.rate
        self._last_count = processed
        self._last_time = now
        return self.rate

    def eta_seconds(self, remaining: int | None) -> float | None:
        if remaining is None or not self.rate:
            return None
        return round(max(remaining, 0) / self.rate, 1)


@dataclass
class RunTracker:
    """Accumulated counters for one run; only bumped after durable commits."""

    phase: SyncPhase = SyncPhase.QUEUED
    estimated_total: int | None = None
    pulled: int = 0
    fetched: int = 0
    upserted: int = 0
    unchanged: int = 0
    failed_items: int = 0
    versions_created: int = 0
    chunks_created: int = 0
    chars_processed: int = 0
    item_errors: list[str] = field(default_factory=list)
    eta_seconds: float | None = None
    items_per_second: float | None = None

    @property
    def processed(self) -> int:
        return self.upserted + self.unchanged + self.failed_items

    @property
    def discovered(self) -> int | None:
        # Unknown until the connector estimates or the stream is exhausted.
        if self.estimated_total is None:
            return None
        return max(self.estimated_total, self.pulled)

    def remaining(self) -> int | None:
        if self.estimated_total is None:
            return None
        return max(self.discovered - self.processed, 0)

    def snapshot(self, phase: SyncPhase | None = None, error: str | None = None) -> RunStats:
        return RunStats(
            phase=(phase or self.phase).value,
            discovered=self.discovered,
            fetched=self.fetched,
            upserted=self.upserted,
            unchanged=self.unchanged,
            failed_items=self.failed_items,
            processed=self.processed,
            versions_created=self.versions_created,
            chunks_created=self.chunks_created,
            chars_processed=self.chars_processed,
            eta_seconds=self.eta_seconds,
            items_per_second=round(self.items_per_second, 3) if self.items_per_second else None,
            item_errors=list(self.item_errors) or None,
            error=error,
            last_updated_at=utc_now().isoformat(),
        )


@dataclass(slots=True)
class SyncOutcome:
    status: str
    job: Job
    run: JobRun | None
    stats: RunStats
    error: str | None = None


class SyncOrchestrator:
    """Claim a job, stream its connector into the version store, finalize the run.

    Retries are not attempted here: a failed run sends the job back to
    ``pending`` through the ledger and a later trigger claims it again.
    """

    def __init__(
        self,
        ledger: JobLedger,
        store: ContentVersionStore,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ledger = ledger
        self.store = store
        self.settings = settings
        self.clock = clock

    def run(self, job: Job, connector: Connector) -> SyncOutcome:
        try:
            run = self.ledger.claim(job)
        except AlreadyRunning:
            logger.info("Job %s already running; ignoring duplicate trigger", job.id, extra=job_context(job.id, job.scope_id))
            return SyncOutcome(status="skipped", job=self.ledger.get_job(job.id), run=None, stats=RunStats())
        return self.execute(job, run, connector)

    def execute(self, job: Job, run: JobRun, connector: Connector) -> SyncOutcome:
        """Drive an already claimed run to completion or failure."""
        context = job_context(job.id, job.scope_id, run.attempt_number)
        started = self.clock()
        tracker = RunTracker()
        estimator = RateEstimator(self.settings.eta_smoothing, started)
        flusher = _StatsFlusher(self.ledger, run, self.settings.stats_flush_interval_ms / 1000, self.clock)

        try:
            tracker.phase = SyncPhase.LISTING
            flusher.flush(tracker, force=True)
            tracker.estimated_total = self._estimate_total(connector, job)
            logger.info(
                "Starting %s sync (estimated %s items)",
                job.connector_type.value,
                tracker.estimated_total,
                extra=context,
            )

            tracker.phase = SyncPhase.FETCHING
            flusher.flush(tracker, force=True)
            for element in self._pull(connector, job):
                if isinstance(element, SkippedItem):
                    tracker.pulled += 1
                    tracker.failed_items += 1
                    if len(tracker.item_errors) < MAX_ITEM_ERRORS:
                        tracker.item_errors.append(f"{element.external_id}: {short_message(element.reason, 200)}")
                    logger.warning("Connector skipped %s: %s", element.external_id, element.reason, extra=context)
                    force = False
                else:
                    tracker.pulled += 1
                    tracker.fetched += 1
                    force = tracker.phase is not SyncPhase.PERSISTING
                    tracker.phase = SyncPhase.PERSISTING
                    self._ingest(job, element, tracker)
                tracker.items_per_second = estimator.observe(tracker.processed, self.clock())
                tracker.eta_seconds = estimator.eta_seconds(tracker.remaining())
                flusher.flush(tracker, force=force)
        except RunFailure as exc:
            return self._finish_failed(job, run, tracker, exc, started, context)
        except SyncError:
            raise
        except Exception as exc:
            logger.exception("Unexpected error during sync", extra=context)
            try:
                self._finish_failed(job, run, tracker, exc, started, context)
            except SyncError as finish_exc:
                raise finish_exc from exc
            raise

        if tracker.estimated_total is None:
            tracker.estimated_total = tracker.pulled
        tracker.eta_seconds = 0.0
        final = tracker.snapshot(SyncPhase.DONE)
        finished_job = self.ledger.complete(run, final)
        SYNC_DURATION.labels(connector_type=job.connector_type.value, outcome="completed").observe(self.clock() - started)
        logger.info(
            "Sync done: %s processed, %s new versions, %s unchanged, %s chunks",
            tracker.processed,
            tracker.versions_created,
            tracker.unchanged,
            tracker.chunks_created,
            extra=context,
        )
        return SyncOutcome(status="completed", job=finished_job, run=self.ledger.get_run(run.id), stats=final)

    def _estimate_total(self, connector: Connector, job: Job) -> int | None:
        try:
            estimate = connector.estimate_total(job)
        except Exception as exc:
            raise ConnectorFailure(f"Listing failed: {short_message(exc)}") from exc
        return estimate if estimate is None or estimate >= 0 else None

    def _pull(self, connector: Connector, job: Job) -> Iterator[StreamElement]:
        try:
            stream = iter(connector.iter_items(job))
        except Exception as exc:
            raise ConnectorFailure(f"Connector failed: {short_message(exc)}") from exc
        while True:
            try:
                element = next(stream)
            except StopIteration:
                return
            except Exception as exc:
                raise ConnectorFailure(f"Connector failed: {short_message(exc)}") from exc
            yield element

    def _ingest(self, job: Job, item: ContentItem, tracker: RunTracker) -> None:
        text = item.text
        metadata = dict(item.metadata)
        metadata.update({"scope_id": job.scope_id, "mime_type": item.mime_type})
        if job.payload.get("account_id"):
            metadata["account_id"] = job.payload["account_id"]
        try:
            source = self.store.upsert_source(
                job.connector_type,
                item.external_id,
                item.title,
                metadata,
                workspace_id=job.workspace_id,
                user_id=job.user_id,
                url=item.url,
            )
            result = self.store.commit_version(source, content_hash(item.content), len(text), text)
        except SyncError:
            raise
        except Exception as exc:
            raise PersistenceFailure(f"Failed to persist {item.external_id}: {short_message(exc)}") from exc

        if result.created:
            tracker.upserted += 1
            tracker.versions_created += 1
            tracker.chunks_created += result.chunk_count
            tracker.chars_processed += len(text)
        else:
            tracker.unchanged += 1

    def _finish_failed(
        self,
        job: Job,
        run: JobRun,
        tracker: RunTracker,
        exc: BaseException,
        started: float,
        context: dict,
    ) -> SyncOutcome:
        message = short_message(exc)
        stats = tracker.snapshot(SyncPhase.ERROR, error=message)
        failed_job = self.ledger.fail(run, message, stats)
        SYNC_DURATION.labels(connector_type=job.connector_type.value, outcome="failed").observe(self.clock() - started)
        logger.error(
            "Sync failed after %s items (job now %s): %s",
            tracker.processed,
            failed_job.status.value,
            message,
            extra=context,
        )
        return SyncOutcome(
            status="failed",
            job=failed_job,
            run=self.ledger.get_run(run.id),
            stats=stats,
            error=message,
        )


class _StatsFlusher:
    """Throttle ``record_stats`` writes to the configured interval."""

    def __init__(self, ledger: JobLedger, run: JobRun, interval_seconds: float, clock: Callable[[], float]) -> None:
        self.ledger = ledger
        self.run = run
        self.interval = interval_seconds
        self.clock = clock
        self._last: float | None = None

    def flush(self, tracker: RunTracker, force: bool = False) -> None:
        now = self.clock()
        if not force and self._last is not None and now - self._last < self.interval:
            return
        try:
            applied = self.ledger.record_stats(self.run, tracker.snapshot())
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Failed to record progress: {exc}") from exc
        if not applied:
            current = self.ledger.get_run(self.run.id)
            raise InvalidTransition("run", self.run.id, current.status.value, "record stats for")
        self._last = now


__all__ = ["SyncOrchestrator", "SyncOutcome", "RateEstimator", "RunTracker"]
