"""Typed run statistics stored in ``job_runs.stats_json``.

The stored document is open: keys this version does not know are ignored on
read, and every field is optional so older documents still parse.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, Field, ValidationError


class SyncPhase(str, Enum):
    QUEUED = "queued"
    LISTING = "listing"
    FETCHING = "fetching"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    UPSERTING = "upserting"
    PERSISTING = "persisting"
    DONE = "done"
    ERROR = "error"


PHASE_LABELS: dict[SyncPhase, str] = {
    SyncPhase.QUEUED: "Queued",
    SyncPhase.LISTING: "Listing items",
    SyncPhase.FETCHING: "Fetching content",
    SyncPhase.CHUNKING: "Chunking",
    SyncPhase.EMBEDDING: "Embedding",
    SyncPhase.UPSERTING: "Saving",
    SyncPhase.PERSISTING: "Saving",
    SyncPhase.DONE: "Done",
    SyncPhase.ERROR: "Failed",
}

GENERIC_PHASE_LABEL = "Processing"

# Counters only grow during a run; merges keep the larger value.
MONOTONIC_FIELDS: frozenset[str] = frozenset(
    {
        "discovered",
        "fetched",
        "upserted",
        "unchanged",
        "failed_items",
        "processed",
        "versions_created",
        "chunks_created",
        "chars_processed",
    }
)


def resolve_phase(value: str | SyncPhase | None) -> SyncPhase | None:
    """Map a stored phase string to the vocabulary; ``None`` when unknown."""
    if value is None:
        return None
    if isinstance(value, SyncPhase):
        return value
    try:
        return SyncPhase(str(value).strip().lower())
    except ValueError:
        return None


def phase_label(value: str | SyncPhase | None) -> str:
    phase = resolve_phase(value)
    if phase is None:
        return GENERIC_PHASE_LABEL
    return PHASE_LABELS[phase]


class RunStats(BaseModel):
    """Statistics for one job run; all fields optional."""

    phase: str | None = None
    discovered: int | None = Field(default=None, ge=0)
    fetched: int | None = Field(default=None, ge=0)
    upserted: int | None = Field(default=None, ge=0)
    unchanged: int | None = Field(default=None, ge=0)
    failed_items: int | None = Field(default=None, ge=0)
    processed: int | None = Field(default=None, ge=0)
    versions_created: int | None = Field(default=None, ge=0)
    chunks_created: int | None = Field(default=None, ge=0)
    chars_processed: int | None = Field(default=None, ge=0)
    eta_seconds: float | None = None
    items_per_second: float | None = None
    item_errors: list[str] | None = None
    error: str | None = None
    duration_ms: int | None = None
    last_updated_at: str | None = None

    model_config = {
        "extra": "ignore",
    }

    @classmethod
    def parse(cls, raw: Mapping[str, Any] | "RunStats" | None) -> "RunStats":
        if raw is None:
            return cls()
        if isinstance(raw, RunStats):
            return raw
        data = dict(raw)
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            # Drop malformed fields rather than rejecting the whole document.
            bad_fields = {error["loc"][0] for error in exc.errors() if error.get("loc")}
            return cls.model_validate({key: value for key, value in data.items() if key not in bad_fields})

    def to_patch(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


def merge_stats(current: Mapping[str, Any], patch: Mapping[str, Any]) -> dict[str, Any]:
    """Merge a partial update into a stored stats document.

    Last write wins per field, except counters which never decrease. Keys
    outside the typed model are preserved untouched.
    """
    merged = dict(current)
    for key, value in patch.items():
        if value is None:
            continue
        previous = merged.get(key)
        if key in MONOTONIC_FIELDS and isinstance(previous, (int, float)) and isinstance(value, (int, float)):
            merged[key] = max(previous, value)
        else:
            merged[key] = value
    return merged


__all__ = [
    "SyncPhase",
    "PHASE_LABELS",
    "GENERIC_PHASE_LABEL",
    "MONOTONIC_FIELDS",
    "RunStats",
    "resolve_phase",
    "phase_label",
    "merge_stats",
]
