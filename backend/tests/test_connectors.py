"""Tests for the built-in connectors and the registry."""

from __future__ import annotations

from pathlib import Path

import orjson
import pytest

from knowledge_sync.models.entities import ConnectorType
from knowledge_sync.sync.connectors import (
    ContentItem,
    FolderConnector,
    SkippedItem,
    StaticConnector,
    default_registry,
)


def _write_folder(root: Path) -> None:
    (root / "notes").mkdir(parents=True)
    (root / "guide.md").write_text(
        "---\ntitle: Team Guide\nowner: docs\n---\n# Welcome\n\nRead **this** first.\n",
        encoding="utf-8",
    )
    (root / "notes" / "todo.txt").write_text("buy   milk\n\n\n\nwalk dog", encoding="utf-8")
    (root / "image.png").write_bytes(b"\x89PNG")


def test_folder_connector_reads_markdown_and_text(tmp_path: Path) -> None:
    _write_folder(tmp_path)
    connector = FolderConnector(tmp_path)

    assert connector.estimate_total(None) == 2
    items = list(connector.iter_items(None))
    by_id = {item.external_id: item for item in items}
    assert set(by_id) == {"guide.md", "notes/todo.txt"}

    guide = by_id["guide.md"]
    assert guide.title == "Team Guide"
    assert guide.mime_type == "text/markdown"
    assert guide.metadata["front_matter"]["owner"] == "docs"
    assert "Welcome" in guide.text
    assert "#" not in guide.text
    assert guide.url.startswith("file://")

    todo = by_id["notes/todo.txt"]
    assert todo.title == "todo"
    assert todo.text == "buy milk\n\nwalk dog"


def test_folder_connector_include_patterns(tmp_path: Path) -> None:
    _write_folder(tmp_path)
    connector = FolderConnector(tmp_path, include=["*.md"])
    assert [item.external_id for item in connector.iter_items(None)] == ["guide.md"]


def test_folder_connector_missing_root(tmp_path: Path) -> None:
    connector = FolderConnector(tmp_path / "missing")
    assert connector.estimate_total(None) is None
    with pytest.raises(FileNotFoundError):
        list(connector.iter_items(None))


def test_static_connector_fails_mid_stream() -> None:
    items = [ContentItem("a", "A", b"one"), SkippedItem("b", "gone"), ContentItem("c", "C", b"three")]
    stream = StaticConnector(items, fail_after=2).iter_items(None)
    assert next(stream).external_id == "a"
    assert isinstance(next(stream), SkippedItem)
    with pytest.raises(RuntimeError, match="interrupted"):
        next(stream)


def test_static_connector_from_fixture(tmp_path: Path) -> None:
    fixture = tmp_path / "jira.json"
    fixture.write_bytes(orjson.dumps([{"external_id": 101, "content": "Bug report", "url": "https://jira/101"}]))
    connector = StaticConnector.from_fixture(fixture, "jira")
    (item,) = connector.iter_items(None)
    assert connector.connector_type is ConnectorType.JIRA
    assert item.external_id == "101"
    assert item.title == "101"
    assert item.text == "Bug report"


def _job(ledger, connector_type: str, payload: dict | None = None):
    return ledger.enqueue("scope-x", connector_type, payload=payload)


def test_default_registry_upload_requires_path(ledger, tmp_path: Path) -> None:
    registry = default_registry()
    with pytest.raises(ValueError):
        registry.for_job(_job(ledger, "upload"))

    _write_folder(tmp_path / "docs")
    connector = registry.for_job(
        ledger.enqueue("scope-y", "upload", payload={"path": str(tmp_path / "docs")})
    )
    assert isinstance(connector, FolderConnector)


def test_default_registry_serves_fixtures(ledger, tmp_path: Path) -> None:
    (tmp_path / "drive.json").write_bytes(orjson.dumps([{"external_id": "f1", "content": "hello"}]))
    registry = default_registry(tmp_path)

    assert registry.supports("drive")
    assert not registry.supports("slack")
    connector = registry.for_job(_job(ledger, "drive"))
    assert connector.connector_type is ConnectorType.DRIVE
    with pytest.raises(LookupError, match="slack"):
        registry.for_job(ledger.enqueue("scope-z", "slack"))
