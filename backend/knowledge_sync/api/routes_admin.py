"""Administrative routes for Knowledge Sync."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from knowledge_sync.api.dependencies import get_app_settings, get_job_ledger
from knowledge_sync.core.config import Settings
from knowledge_sync.core.errors import InvalidTransition
from knowledge_sync.core.logging import get_logger
from knowledge_sync.core.metrics import metrics_response
from knowledge_sync.ledger.jobs import JobLedger
from knowledge_sync.models.dto import JobResponse, RecoverStaleRequest, RecoverStaleResponse

logger = get_logger(__name__)

router = APIRouter()


@router.post("/admin/recover-stale", response_model=RecoverStaleResponse, summary="Fail runs that stopped reporting")
async def recover_stale(
    request: RecoverStaleRequest | None = None,
    ledger: JobLedger = Depends(get_job_ledger),
    settings: Settings = Depends(get_app_settings),
) -> RecoverStaleResponse:
    requeue = request.requeue if request is not None else True
    jobs: list[JobResponse] = []
    for run in ledger.stale_runs(settings.stale_after_seconds):
        try:
            job = ledger.recover_stale(run, requeue=requeue)
        except InvalidTransition:
            continue
        logger.warning("Recovered stale run %s of job %s", run.id, run.job_id)
        jobs.append(JobResponse.from_entity(job))
    return RecoverStaleResponse(recovered=len(jobs), jobs=jobs)


@router.get("/metrics", summary="Prometheus metrics")
async def get_metrics():
    return metrics_response()


__all__ = ["router"]
