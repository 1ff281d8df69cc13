"""Prometheus metrics instrumentation."""

from __future__ import annotations

from fastapi import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

REGISTRY = CollectorRegistry()

JOB_TRANSITIONS = Counter(
    "ksync_job_transitions_total",
    "Job state transitions",
    labelnames=("to_status",),
    registry=REGISTRY,
)

VERSIONS_CREATED = Counter(
    "ksync_source_versions_created_total",
    "Source versions committed",
    labelnames=("connector_type",),
    registry=REGISTRY,
)

ITEMS_UNCHANGED = Counter(
    "ksync_items_unchanged_total",
    "Items skipped because their content hash matched the active version",
    labelnames=("connector_type",),
    registry=REGISTRY,
)

CHUNKS_CREATED = Counter(
    "ksync_chunks_created_total",
    "Chunks written for new source versions",
    labelnames=("connector_type",),
    registry=REGISTRY,
)

SYNC_DURATION = Histogram(
    "ksync_sync_duration_seconds",
    "Wall-clock duration of a sync run",
    labelnames=("connector_type", "outcome"),
    registry=REGISTRY,
)


def metrics_response() -> Response:
    """Return Prometheus metrics as an HTTP response."""
    payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "REGISTRY",
    "JOB_TRANSITIONS",
    "VERSIONS_CREATED",
    "ITEMS_UNCHANGED",
    "CHUNKS_CREATED",
    "SYNC_DURATION",
    "metrics_response",
]
