"""Content-addressed source/version/chunk store."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any, Mapping

from knowledge_sync.core.errors import NotFound, PersistenceFailure, SyncError
from knowledge_sync.core.logging import get_logger
from knowledge_sync.core.metrics import CHUNKS_CREATED, ITEMS_UNCHANGED, VERSIONS_CREATED
from knowledge_sync.db.sqlite import SQLiteDatabase
from knowledge_sync.models.entities import Chunk, ConnectorType, Source, SourceVersion, dump_json
from knowledge_sync.sync.chunker import Segmenter, TextPiece, segment_text
from knowledge_sync.utils.ids import CHUNK_PREFIX, SOURCE_PREFIX, VERSION_PREFIX, new_id
from knowledge_sync.utils.text import estimate_tokens
from knowledge_sync.utils.time import now_ms

logger = get_logger(__name__)

_ACTIVE_VERSION_SQL = "SELECT * FROM source_versions WHERE source_id = ? AND is_active = 1"
_SCOPE_FILTER = "json_extract(s.meta_json, '$.scope_id') = ?"


@dataclass(slots=True)
class CommitResult:
    version: SourceVersion
    created: bool
    chunk_count: int = 0


@dataclass(slots=True)
class ScopeCounts:
    sources: int
    chunks: int

    def to_dict(self) -> dict[str, int]:
        return {"sources": self.sources, "chunks": self.chunks}


class ContentVersionStore:
    """Owns sources, their immutable versions and the chunks of each version.

    A version only becomes active after its full chunk set is written, and
    both happen inside one ``BEGIN IMMEDIATE`` transaction, so a crash can
    never leave a source with two active versions or an active version with
    a partial chunk set.
    """

    def __init__(self, database: SQLiteDatabase, segmenter: Segmenter | None = None) -> None:
        self.db = database
        self.segmenter = segmenter or segment_text

    def upsert_source(
        self,
        connector_type: ConnectorType | str,
        external_id: str,
        title: str,
        metadata: Mapping[str, Any],
        *,
        workspace_id: str,
        user_id: str | None = None,
        url: str | None = None,
    ) -> Source:
        """Find or create the source for an external item; never modifies an existing one."""
        if not metadata.get("scope_id"):
            raise ValueError("source metadata must include scope_id")
        connector = ConnectorType(connector_type)
        now = now_ms()
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO sources (
                      id, workspace_id, user_id, connector_type, external_id, title, url,
                      content_hash, meta_json, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, NULL, ?, ?, ?)
                    ON CONFLICT (workspace_id, connector_type, external_id) DO NOTHING
                    """,
                    [
                        new_id(SOURCE_PREFIX),
                        workspace_id,
                        user_id,
                        connector.value,
                        external_id,
                        title,
                        url,
                        dump_json(dict(metadata)),
                        now,
                        now,
                    ],
                )
                row = conn.execute(
                    "SELECT * FROM sources WHERE workspace_id = ? AND connector_type = ? AND external_id = ?",
                    [workspace_id, connector.value, external_id],
                ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Failed to upsert source {external_id}: {exc}") from exc
        return Source.from_row(row)

    def commit_version(self, source: Source, content_hash: str, char_count: int, text: str) -> CommitResult:
        """Record ``text`` as the new active version unless the hash is unchanged."""
        current = self.get_active_version(source.id)
        if current is not None and current.content_hash == content_hash:
            ITEMS_UNCHANGED.labels(connector_type=source.connector_type.value).inc()
            return CommitResult(version=current, created=False)

        try:
            pieces = self.segmenter(text)
            result = self._write_version(source, content_hash, char_count, text, pieces)
        except SyncError:
            raise
        except Exception as exc:
            raise PersistenceFailure(f"Failed to commit version for source {source.id}: {exc}") from exc

        if result.created:
            VERSIONS_CREATED.labels(connector_type=source.connector_type.value).inc()
            CHUNKS_CREATED.labels(connector_type=source.connector_type.value).inc(result.chunk_count)
            logger.debug(
                "Committed source %s v%s (%s chunks)",
                source.id,
                result.version.version,
                result.chunk_count,
            )
        else:
            ITEMS_UNCHANGED.labels(connector_type=source.connector_type.value).inc()
        return result

    def _write_version(
        self,
        source: Source,
        content_hash: str,
        char_count: int,
        text: str,
        pieces: list[TextPiece],
    ) -> CommitResult:
        now = now_ms()
        version_id = new_id(VERSION_PREFIX)
        chunk_meta = dump_json(
            {
                "connector_type": source.connector_type.value,
                "scope_id": source.scope_id,
                "external_id": source.external_id,
            }
        )
        with self.db.transaction() as conn:
            # Re-check under the write lock; a concurrent commit may have won.
            active = conn.execute(_ACTIVE_VERSION_SQL, [source.id]).fetchone()
            if active is not None and active["content_hash"] == content_hash:
                return CommitResult(version=SourceVersion.from_row(active), created=False)

            next_version = conn.execute(
                "SELECT COALESCE(MAX(version), 0) + 1 FROM source_versions WHERE source_id = ?",
                [source.id],
            ).fetchone()[0]
            conn.execute(
                """
                INSERT INTO source_versions (
                  id, workspace_id, source_id, version, content_hash, full_text,
                  is_active, char_count, token_estimate, ingested_at
                ) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
                """,
                [
                    version_id,
                    source.workspace_id,
                    source.id,
                    next_version,
                    content_hash,
                    text,
                    char_count,
                    estimate_tokens(text),
                    now,
                ],
            )
            conn.executemany(
                """
                INSERT INTO chunks (
                  id, workspace_id, source_id, source_version_id, chunk_index, text,
                  char_start, char_end, token_estimate, meta_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        new_id(CHUNK_PREFIX),
                        source.workspace_id,
                        source.id,
                        version_id,
                        index,
                        piece.text,
                        piece.char_start,
                        piece.char_end,
                        estimate_tokens(piece.text),
                        chunk_meta,
                        now,
                    )
                    for index, piece in enumerate(pieces)
                ],
            )
            # Activation flips last, after the full chunk set is in place.
            conn.execute(
                "UPDATE source_versions SET is_active = 0 WHERE source_id = ? AND is_active = 1",
                [source.id],
            )
            conn.execute("UPDATE source_versions SET is_active = 1 WHERE id = ?", [version_id])
            conn.execute(
                "UPDATE sources SET content_hash = ?, updated_at = ? WHERE id = ?",
                [content_hash, now, source.id],
            )
            row = conn.execute("SELECT * FROM source_versions WHERE id = ?", [version_id]).fetchone()
        return CommitResult(version=SourceVersion.from_row(row), created=True, chunk_count=len(pieces))

    def counts_for_scope(self, scope_id: str, *, workspace_id: str | None = None) -> ScopeCounts:
        """Sources with an active version in the scope, and the chunks of those versions."""
        workspace_clause = " AND s.workspace_id = ?" if workspace_id else ""
        params: list[Any] = [scope_id, workspace_id] if workspace_id else [scope_id]
        with self.db.snapshot() as conn:
            sources = conn.execute(
                f"""
                SELECT COUNT(*) FROM sources s
                JOIN source_versions v ON v.source_id = s.id AND v.is_active = 1
                WHERE {_SCOPE_FILTER}{workspace_clause}
                """,
                params,
            ).fetchone()[0]
            chunks = conn.execute(
                f"""
                SELECT COUNT(c.id) FROM chunks c
                JOIN source_versions v ON v.id = c.source_version_id AND v.is_active = 1
                JOIN sources s ON s.id = c.source_id
                WHERE {_SCOPE_FILTER}{workspace_clause}
                """,
                params,
            ).fetchone()[0]
        return ScopeCounts(sources=int(sources), chunks=int(chunks))

    # Read helpers -----------------------------------------------------

    def get_source(self, source_id: str) -> Source:
        row = self.db.query_one("SELECT * FROM sources WHERE id = ?", [source_id])
        if row is None:
            raise NotFound(f"Source {source_id} not found")
        return Source.from_row(row)

    def list_sources(self, workspace_id: str | None = None, scope_id: str | None = None) -> list[Source]:
        clauses: list[str] = []
        params: list[Any] = []
        if workspace_id:
            clauses.append("s.workspace_id = ?")
            params.append(workspace_id)
        if scope_id:
            clauses.append(_SCOPE_FILTER)
            params.append(scope_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.db.query(f"SELECT s.* FROM sources s {where} ORDER BY s.created_at, s.id", params)
        return [Source.from_row(row) for row in rows]

    def get_active_version(self, source_id: str) -> SourceVersion | None:
        row = self.db.query_one(_ACTIVE_VERSION_SQL, [source_id])
        return SourceVersion.from_row(row) if row else None

    def list_versions(self, source_id: str) -> list[SourceVersion]:
        rows = self.db.query(
            "SELECT * FROM source_versions WHERE source_id = ? ORDER BY version DESC",
            [source_id],
        )
        return [SourceVersion.from_row(row) for row in rows]

    def active_chunks(self, source_id: str) -> list[Chunk]:
        rows = self.db.query(
            """
            SELECT c.* FROM chunks c
            JOIN source_versions v ON v.id = c.source_version_id AND v.is_active = 1
            WHERE c.source_id = ?
            ORDER BY c.chunk_index
            """,
            [source_id],
        )
        return [Chunk.from_row(row) for row in rows]

    def version_chunks(self, version_id: str) -> list[Chunk]:
        rows = self.db.query(
            "SELECT * FROM chunks WHERE source_version_id = ? ORDER BY chunk_index",
            [version_id],
        )
        return [Chunk.from_row(row) for row in rows]


__all__ = ["ContentVersionStore", "CommitResult", "ScopeCounts"]
