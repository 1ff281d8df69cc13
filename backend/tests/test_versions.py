"""Tests for the content version store."""

from __future__ import annotations

import pytest

from knowledge_sync.core.errors import NotFound, PersistenceFailure
from knowledge_sync.store.versions import ContentVersionStore
from knowledge_sync.sync.chunker import TextPiece
from knowledge_sync.utils.hashing import content_hash


def _source(store: ContentVersionStore, external_id: str = "doc-1", scope_id: str = "scope-a", **kwargs):
    return store.upsert_source(
        "drive",
        external_id,
        kwargs.pop("title", external_id.title()),
        {"scope_id": scope_id, **kwargs.pop("metadata", {})},
        workspace_id="ws",
        **kwargs,
    )


def _commit(store: ContentVersionStore, source, text: str):
    return store.commit_version(source, content_hash(text), len(text), text)


def test_upsert_source_requires_scope(store: ContentVersionStore) -> None:
    with pytest.raises(ValueError):
        store.upsert_source("drive", "doc-1", "Doc", {}, workspace_id="ws")


def test_upsert_source_returns_existing_unchanged(store: ContentVersionStore) -> None:
    first = _source(store, title="Original")
    second = _source(store, title="Renamed")
    assert second.id == first.id
    assert second.title == "Original"
    assert second.scope_id == "scope-a"
    assert second.content_hash is None


def test_commit_version_is_idempotent(store: ContentVersionStore) -> None:
    source = _source(store)
    first = _commit(store, source, "Alpha paragraph.\n\nBeta paragraph.")
    second = _commit(store, source, "Alpha paragraph.\n\nBeta paragraph.")

    assert first.created is True
    assert first.chunk_count >= 1
    assert second.created is False
    assert second.version.id == first.version.id
    assert len(store.list_versions(source.id)) == 1
    assert store.get_source(source.id).content_hash == content_hash("Alpha paragraph.\n\nBeta paragraph.")


def test_changed_content_creates_next_active_version(store: ContentVersionStore) -> None:
    source = _source(store)
    v1 = _commit(store, source, "First draft of the page.").version
    v2 = _commit(store, source, "Second draft of the page, now longer.").version

    versions = store.list_versions(source.id)
    assert [version.version for version in versions] == [2, 1]
    assert [version.is_active for version in versions] == [True, False]
    assert store.get_active_version(source.id).id == v2.id

    chunks = store.active_chunks(source.id)
    assert chunks
    assert {chunk.source_version_id for chunk in chunks} == {v2.id}
    # Old chunks stay attached to their version.
    assert store.version_chunks(v1.id)


def test_reverting_content_creates_new_version(store: ContentVersionStore) -> None:
    source = _source(store)
    _commit(store, source, "A")
    _commit(store, source, "B")
    result = _commit(store, source, "A")
    assert result.created is True
    assert result.version.version == 3
    assert sum(1 for version in store.list_versions(source.id) if version.is_active) == 1


def test_empty_text_commits_version_without_chunks(store: ContentVersionStore) -> None:
    source = _source(store)
    result = _commit(store, source, "")
    assert result.created is True
    assert result.chunk_count == 0
    assert store.active_chunks(source.id) == []


def test_segmenter_failure_leaves_no_partial_version(db) -> None:
    def broken(text: str):
        raise RuntimeError("segmenter exploded")

    store = ContentVersionStore(db, segmenter=broken)
    source = _source(store)
    with pytest.raises(PersistenceFailure):
        _commit(store, source, "Some content")
    assert store.list_versions(source.id) == []
    assert store.get_source(source.id).content_hash is None


def test_failed_chunk_insert_rolls_back_the_version(db) -> None:
    store = ContentVersionStore(db)
    source = _source(store)
    first = _commit(store, source, "Alpha paragraph.\n\nBeta paragraph.")
    chunks_before = store.active_chunks(source.id)

    def half_broken(text: str):
        # The second piece violates chunks.text NOT NULL inside the transaction.
        return [
            TextPiece(text=text, char_start=0, char_end=len(text), token_count=1),
            TextPiece(text=None, char_start=0, char_end=0, token_count=0),
        ]

    broken = ContentVersionStore(db, segmenter=half_broken)
    with pytest.raises(PersistenceFailure):
        _commit(broken, source, "Rewritten content.")

    versions = store.list_versions(source.id)
    assert [(version.version, version.is_active) for version in versions] == [(1, True)]
    assert store.get_active_version(source.id).id == first.version.id
    assert store.get_source(source.id).content_hash == content_hash("Alpha paragraph.\n\nBeta paragraph.")
    assert [chunk.id for chunk in store.active_chunks(source.id)] == [chunk.id for chunk in chunks_before]
    assert db.query_one("SELECT COUNT(*) FROM chunks WHERE source_id = ?", [source.id])[0] == len(chunks_before)


def test_counts_only_sources_with_active_versions(store: ContentVersionStore) -> None:
    committed = _source(store, "doc-1")
    _commit(store, committed, "Alpha.\n\nBeta.")
    _source(store, "doc-2")
    other = _source(store, "doc-3", scope_id="scope-b")
    _commit(store, other, "Gamma.")

    counts = store.counts_for_scope("scope-a")
    assert counts.sources == 1
    assert counts.chunks == len(store.active_chunks(committed.id))
    assert store.counts_for_scope("scope-a", workspace_id="elsewhere").to_dict() == {"sources": 0, "chunks": 0}


def test_counts_follow_the_active_version(store: ContentVersionStore) -> None:
    source = _source(store)
    _commit(store, source, "one")
    _commit(store, source, "para one.\n\npara two.\n\npara three.")
    counts = store.counts_for_scope("scope-a")
    assert counts.sources == 1
    assert counts.chunks == len(store.active_chunks(source.id))


def test_list_sources_filters_by_scope(store: ContentVersionStore) -> None:
    _source(store, "doc-1")
    _source(store, "doc-2", scope_id="scope-b")
    assert [source.external_id for source in store.list_sources(scope_id="scope-a")] == ["doc-1"]
    assert len(store.list_sources(workspace_id="ws")) == 2


def test_get_source_missing(store: ContentVersionStore) -> None:
    with pytest.raises(NotFound):
        store.get_source("src_missing")
