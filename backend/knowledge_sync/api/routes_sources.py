"""Read-only routes over synced sources, versions and chunks."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from knowledge_sync.api.dependencies import get_version_store
from knowledge_sync.core.errors import NotFound
from knowledge_sync.models.dto import ChunkResponse, SourceResponse, SourceVersionResponse
from knowledge_sync.store.versions import ContentVersionStore

router = APIRouter()


@router.get("", response_model=list[SourceResponse], summary="List synced sources")
async def list_sources(
    scope_id: str | None = Query(default=None),
    workspace_id: str | None = Query(default=None),
    store: ContentVersionStore = Depends(get_version_store),
) -> list[SourceResponse]:
    return [
        SourceResponse.from_entity(source)
        for source in store.list_sources(workspace_id=workspace_id, scope_id=scope_id)
    ]


@router.get("/{source_id}/versions", response_model=list[SourceVersionResponse], summary="Version history, newest first")
async def list_versions(
    source_id: str,
    store: ContentVersionStore = Depends(get_version_store),
) -> list[SourceVersionResponse]:
    _require_source(store, source_id)
    return [SourceVersionResponse.from_entity(version) for version in store.list_versions(source_id)]


@router.get("/{source_id}/chunks", response_model=list[ChunkResponse], summary="Chunks of the active version")
async def list_chunks(
    source_id: str,
    store: ContentVersionStore = Depends(get_version_store),
) -> list[ChunkResponse]:
    _require_source(store, source_id)
    return [ChunkResponse.from_entity(chunk) for chunk in store.active_chunks(source_id)]


def _require_source(store: ContentVersionStore, source_id: str) -> None:
    try:
        store.get_source(source_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


__all__ = ["router"]
