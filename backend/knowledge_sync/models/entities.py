"""Internal dataclasses representing persisted entities."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import orjson

from knowledge_sync.utils.time import ms_to_datetime


class ConnectorType(str, Enum):
    UPLOAD = "upload"
    DRIVE = "drive"
    CONFLUENCE = "confluence"
    JIRA = "jira"
    SLACK = "slack"


class JobType(str, Enum):
    SYNC = "sync"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class Source:
    id: str
    workspace_id: str
    user_id: str | None
    connector_type: ConnectorType
    external_id: str
    title: str
    url: str | None
    content_hash: str | None
    metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime

    @property
    def scope_id(self) -> str | None:
        return self.metadata.get("scope_id")

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Source":
        return cls(
            id=row["id"],
            workspace_id=row["workspace_id"],
            user_id=row["user_id"],
            connector_type=ConnectorType(row["connector_type"]),
            external_id=row["external_id"],
            title=row["title"],
            url=row["url"],
            content_hash=row["content_hash"],
            metadata=load_json(row["meta_json"]),
            created_at=ms_to_datetime(row["created_at"]),
            updated_at=ms_to_datetime(row["updated_at"]),
        )


@dataclass(slots=True)
class SourceVersion:
    id: str
    workspace_id: str
    source_id: str
    version: int
    content_hash: str
    is_active: bool
    char_count: int
    token_estimate: int | None
    ingested_at: datetime

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SourceVersion":
        return cls(
            id=row["id"],
            workspace_id=row["workspace_id"],
            source_id=row["source_id"],
            version=row["version"],
            content_hash=row["content_hash"],
            is_active=bool(row["is_active"]),
            char_count=row["char_count"],
            token_estimate=row["token_estimate"],
            ingested_at=ms_to_datetime(row["ingested_at"]),
        )


@dataclass(slots=True)
class Chunk:
    id: str
    source_id: str
    source_version_id: str
    chunk_index: int
    text: str
    char_start: int | None
    char_end: int | None
    token_estimate: int | None
    metadata: dict[str, Any]
    created_at: datetime

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Chunk":
        return cls(
            id=row["id"],
            source_id=row["source_id"],
            source_version_id=row["source_version_id"],
            chunk_index=row["chunk_index"],
            text=row["text"],
            char_start=row["char_start"],
            char_end=row["char_end"],
            token_estimate=row["token_estimate"],
            metadata=load_json(row["meta_json"]),
            created_at=ms_to_datetime(row["created_at"]),
        )


@dataclass(slots=True)
class Job:
    id: str
    workspace_id: str
    user_id: str | None
    type: JobType
    connector_type: ConnectorType
    scope_id: str
    status: JobStatus
    priority: int
    idempotency_key: str | None
    payload: dict[str, Any]
    attempts: int
    max_attempts: int
    next_run_at: datetime
    locked_at: datetime | None
    locked_by: str | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Job":
        return cls(
            id=row["id"],
            workspace_id=row["workspace_id"],
            user_id=row["user_id"],
            type=JobType(row["type"]),
            connector_type=ConnectorType(row["connector_type"]),
            scope_id=row["scope_id"],
            status=JobStatus(row["status"]),
            priority=row["priority"],
            idempotency_key=row["idempotency_key"],
            payload=load_json(row["input_json"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            next_run_at=ms_to_datetime(row["next_run_at"]),
            locked_at=ms_to_datetime(row["locked_at"]),
            locked_by=row["locked_by"],
            completed_at=ms_to_datetime(row["completed_at"]),
            created_at=ms_to_datetime(row["created_at"]),
            updated_at=ms_to_datetime(row["updated_at"]),
        )


@dataclass(slots=True)
class JobRun:
    id: str
    job_id: str
    attempt_number: int
    status: RunStatus
    started_at: datetime
    finished_at: datetime | None
    updated_at: datetime
    error: str | None
    stats: dict[str, Any]

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "JobRun":
        return cls(
            id=row["id"],
            job_id=row["job_id"],
            attempt_number=row["attempt_number"],
            status=RunStatus(row["status"]),
            started_at=ms_to_datetime(row["started_at"]),
            finished_at=ms_to_datetime(row["finished_at"]),
            updated_at=ms_to_datetime(row["updated_at"]),
            error=row["error"],
            stats=load_json(row["stats_json"]),
        )


def load_json(value: str | bytes | None) -> dict[str, Any]:
    if not value:
        return {}
    loaded = orjson.loads(value)
    return loaded if isinstance(loaded, dict) else {}


def dump_json(value: dict[str, Any] | None) -> str | None:
    if value is None:
        return None
    return orjson.dumps(value, default=str).decode("utf-8")


__all__ = [
    "ConnectorType",
    "JobType",
    "JobStatus",
    "RunStatus",
    "Source",
    "SourceVersion",
    "Chunk",
    "Job",
    "JobRun",
    "dump_json",
    "load_json",
]
