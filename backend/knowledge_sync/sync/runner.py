"""Polling worker that claims due jobs and hands them to the orchestrator."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field

from knowledge_sync.core.config import Settings
from knowledge_sync.core.errors import AlreadyRunning, InvalidTransition, short_message
from knowledge_sync.core.logging import get_logger, job_context
from knowledge_sync.ledger.jobs import JobLedger
from knowledge_sync.models.entities import Job
from knowledge_sync.models.stats import RunStats
from knowledge_sync.store.versions import ContentVersionStore
from knowledge_sync.sync.connectors import ConnectorRegistry
from knowledge_sync.sync.orchestrator import SyncOrchestrator, SyncOutcome

logger = get_logger(__name__)


@dataclass
class PollResult:
    recovered: int = 0
    outcomes: list[SyncOutcome] = field(default_factory=list)


class JobRunner:
    """Single-process worker loop.

    Each poll first reaps runs whose worker stopped reporting progress, then
    processes up to ``limit`` due jobs one after another.
    """

    def __init__(
        self,
        ledger: JobLedger,
        store: ContentVersionStore,
        registry: ConnectorRegistry,
        settings: Settings,
    ) -> None:
        self.ledger = ledger
        self.registry = registry
        self.settings = settings
        self.orchestrator = SyncOrchestrator(ledger, store, settings)
        self._stop = threading.Event()

    def recover_stale(self, requeue: bool = True) -> int:
        recovered = 0
        for run in self.ledger.stale_runs(self.settings.stale_after_seconds):
            try:
                self.ledger.recover_stale(run, requeue=requeue)
            except InvalidTransition:
                # Finished between the scan and the transition.
                continue
            recovered += 1
            logger.warning("Recovered stale run %s of job %s", run.id, run.job_id)
        return recovered

    def run_once(self, limit: int = 5) -> PollResult:
        result = PollResult(recovered=self.recover_stale())
        for job in self.ledger.due_jobs(limit):
            if self._stop.is_set():
                break
            outcome = self.process(job)
            if outcome is not None:
                result.outcomes.append(outcome)
        return result

    def process(self, job: Job) -> SyncOutcome | None:
        context = job_context(job.id, job.scope_id)
        try:
            connector = self.registry.for_job(job)
        except (LookupError, ValueError) as exc:
            return self._fail_unserviceable(job, short_message(exc))
        try:
            return self.orchestrator.run(job, connector)
        except InvalidTransition as exc:
            logger.error("Job %s hit an invalid transition: %s", job.id, exc, extra=context)
        except Exception:
            logger.exception("Job %s crashed", job.id, extra=context)
        return None

    def _fail_unserviceable(self, job: Job, message: str) -> SyncOutcome | None:
        try:
            run = self.ledger.claim(job)
        except (AlreadyRunning, InvalidTransition):
            return None
        failed = self.ledger.fail(run, message)
        logger.error("Job %s cannot be served: %s", job.id, message, extra=job_context(job.id, job.scope_id))
        failed_run = self.ledger.get_run(run.id)
        return SyncOutcome(
            status="failed",
            job=failed,
            run=failed_run,
            stats=RunStats.parse(failed_run.stats),
            error=message,
        )

    def run_forever(self, limit: int = 5) -> None:
        logger.info("Starting worker %s", self.settings.worker_id)
        while not self._stop.is_set():
            try:
                self.run_once(limit)
            except Exception:
                logger.exception("Poll failed")
            self._stop.wait(self.settings.poll_interval_seconds)
        logger.info("Stopped worker %s", self.settings.worker_id)

    def stop(self) -> None:
        self._stop.set()


__all__ = ["JobRunner", "PollResult"]
