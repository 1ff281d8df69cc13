"""Pydantic DTOs exposed via API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from knowledge_sync.models.entities import Chunk, Job, JobRun, Source, SourceVersion
from knowledge_sync.progress.aggregator import ProgressView
from knowledge_sync.progress.status import ScopeStatus

ConnectorName = Literal["upload", "drive", "confluence", "jira", "slack"]


class SyncTriggerRequest(BaseModel):
    scope_id: str
    connector_type: ConnectorName
    workspace_id: str | None = None
    user_id: str | None = None
    account_id: str | None = None
    config: dict[str, Any] = Field(default_factory=dict, description="Connector selection configuration")
    idempotency_key: str | None = None
    priority: int = 0
    max_attempts: int | None = Field(default=None, ge=1)


class JobResponse(BaseModel):
    id: str
    workspace_id: str
    user_id: str | None
    type: str
    connector_type: str
    scope_id: str
    status: str
    priority: int
    attempts: int
    max_attempts: int
    next_run_at: datetime
    locked_by: str | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_entity(cls, job: Job) -> "JobResponse":
        return cls(
            id=job.id,
            workspace_id=job.workspace_id,
            user_id=job.user_id,
            type=job.type.value,
            connector_type=job.connector_type.value,
            scope_id=job.scope_id,
            status=job.status.value,
            priority=job.priority,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            next_run_at=job.next_run_at,
            locked_by=job.locked_by,
            completed_at=job.completed_at,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class JobRunResponse(BaseModel):
    id: str
    job_id: str
    attempt_number: int
    status: str
    started_at: datetime
    finished_at: datetime | None
    updated_at: datetime
    error: str | None
    stats: dict[str, Any]

    @classmethod
    def from_entity(cls, run: JobRun) -> "JobRunResponse":
        return cls(
            id=run.id,
            job_id=run.job_id,
            attempt_number=run.attempt_number,
            status=run.status.value,
            started_at=run.started_at,
            finished_at=run.finished_at,
            updated_at=run.updated_at,
            error=run.error,
            stats=run.stats,
        )


class ProgressResponse(BaseModel):
    phase: str
    phase_label: str
    processed_sources: int
    total_sources: int | None
    processed_chunks: int
    percent: int | None
    eta_seconds: float | None
    started_at: datetime | None
    error: str | None

    @classmethod
    def from_view(cls, view: ProgressView) -> "ProgressResponse":
        return cls(**view.to_dict())


class CountsResponse(BaseModel):
    sources: int
    chunks: int


class ScopeStatusResponse(BaseModel):
    job: JobResponse | None
    latest_run: JobRunResponse | None
    progress: ProgressResponse | None
    counts: CountsResponse

    @classmethod
    def from_status(cls, status: ScopeStatus) -> "ScopeStatusResponse":
        return cls(
            job=JobResponse.from_entity(status.job) if status.job else None,
            latest_run=JobRunResponse.from_entity(status.latest_run) if status.latest_run else None,
            progress=ProgressResponse.from_view(status.progress) if status.progress else None,
            counts=CountsResponse(**status.counts.to_dict()),
        )


class RecoverStaleRequest(BaseModel):
    requeue: bool = True


class RecoverStaleResponse(BaseModel):
    recovered: int
    jobs: list[JobResponse]


class SourceResponse(BaseModel):
    id: str
    workspace_id: str
    connector_type: str
    external_id: str
    title: str
    url: str | None
    content_hash: str | None
    metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_entity(cls, source: Source) -> "SourceResponse":
        return cls(
            id=source.id,
            workspace_id=source.workspace_id,
            connector_type=source.connector_type.value,
            external_id=source.external_id,
            title=source.title,
            url=source.url,
            content_hash=source.content_hash,
            metadata=source.metadata,
            created_at=source.created_at,
            updated_at=source.updated_at,
        )


class SourceVersionResponse(BaseModel):
    id: str
    source_id: str
    version: int
    content_hash: str
    is_active: bool
    char_count: int
    token_estimate: int | None
    ingested_at: datetime

    @classmethod
    def from_entity(cls, version: SourceVersion) -> "SourceVersionResponse":
        return cls(
            id=version.id,
            source_id=version.source_id,
            version=version.version,
            content_hash=version.content_hash,
            is_active=version.is_active,
            char_count=version.char_count,
            token_estimate=version.token_estimate,
            ingested_at=version.ingested_at,
        )


class ChunkResponse(BaseModel):
    id: str
    source_version_id: str
    chunk_index: int
    text: str
    char_start: int | None
    char_end: int | None

    @classmethod
    def from_entity(cls, chunk: Chunk) -> "ChunkResponse":
        return cls(
            id=chunk.id,
            source_version_id=chunk.source_version_id,
            chunk_index=chunk.chunk_index,
            text=chunk.text,
            char_start=chunk.char_start,
            char_end=chunk.char_end,
        )


__all__ = [
    "SyncTriggerRequest",
    "JobResponse",
    "JobRunResponse",
    "ProgressResponse",
    "CountsResponse",
    "ScopeStatusResponse",
    "RecoverStaleRequest",
    "RecoverStaleResponse",
    "SourceResponse",
    "SourceVersionResponse",
    "ChunkResponse",
]
