"""Sync trigger and job status routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from knowledge_sync.api.dependencies import get_job_ledger, get_version_store
from knowledge_sync.core.errors import AlreadyRunning, InvalidTransition, NotFound
from knowledge_sync.ledger.jobs import JobLedger
from knowledge_sync.models.dto import (
    JobResponse,
    JobRunResponse,
    ScopeStatusResponse,
    SyncTriggerRequest,
)
from knowledge_sync.progress.status import read_scope_status
from knowledge_sync.store.versions import ContentVersionStore

router = APIRouter()


@router.post(
    "/sync",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Enqueue a sync job for a scope",
)
async def trigger_sync(
    request: SyncTriggerRequest,
    ledger: JobLedger = Depends(get_job_ledger),
) -> JobResponse:
    payload = dict(request.config)
    if request.account_id:
        payload["account_id"] = request.account_id
    try:
        job = ledger.enqueue(
            request.scope_id,
            request.connector_type,
            workspace_id=request.workspace_id,
            user_id=request.user_id,
            payload=payload,
            idempotency_key=request.idempotency_key,
            priority=request.priority,
            max_attempts=request.max_attempts,
        )
    except AlreadyRunning as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return JobResponse.from_entity(job)


@router.get(
    "/scope/{scope_id}/latest",
    response_model=ScopeStatusResponse,
    summary="Latest job, run, progress and counts for a scope",
)
async def scope_status(
    scope_id: str,
    ledger: JobLedger = Depends(get_job_ledger),
    store: ContentVersionStore = Depends(get_version_store),
) -> ScopeStatusResponse:
    result = read_scope_status(ledger, store, scope_id)
    if result.job is None:
        raise HTTPException(status_code=404, detail=f"No sync job for scope {scope_id}")
    return ScopeStatusResponse.from_status(result)


@router.get("/{job_id}", response_model=JobResponse, summary="Fetch a job")
async def get_job(job_id: str, ledger: JobLedger = Depends(get_job_ledger)) -> JobResponse:
    try:
        return JobResponse.from_entity(ledger.get_job(job_id))
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/{job_id}/runs", response_model=list[JobRunResponse], summary="List the attempts of a job")
async def list_runs(job_id: str, ledger: JobLedger = Depends(get_job_ledger)) -> list[JobRunResponse]:
    try:
        ledger.get_job(job_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return [JobRunResponse.from_entity(run) for run in ledger.list_runs(job_id)]


@router.post("/{job_id}/requeue", response_model=JobResponse, summary="Send a failed job back to pending")
async def requeue_job(job_id: str, ledger: JobLedger = Depends(get_job_ledger)) -> JobResponse:
    try:
        job = ledger.requeue(job_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return JobResponse.from_entity(job)


__all__ = ["router"]
