"""Content stream capability and the built-in connector variants.

A connector produces a finite, lazily pulled sequence of items for a job's
scope. Each element is either a :class:`ContentItem` or a
:class:`SkippedItem` describing a per-item failure the connector chose to
report instead of aborting. Raising from the iterator aborts the run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Protocol, Sequence, Union

import orjson
import yaml
from markdown_it import MarkdownIt

from knowledge_sync.core.logging import get_logger
from knowledge_sync.models.entities import ConnectorType, Job
from knowledge_sync.utils.text import normalize

logger = get_logger(__name__)

_MD = MarkdownIt()


@dataclass(slots=True)
class ContentItem:
    """One external item with its content bytes."""

    external_id: str
    title: str
    content: bytes
    metadata: dict[str, Any] = field(default_factory=dict)
    url: str | None = None
    mime_type: str = "text/plain"

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


@dataclass(slots=True)
class SkippedItem:
    """An item the connector could not fetch; the run continues."""

    external_id: str
    reason: str


StreamElement = Union[ContentItem, SkippedItem]


class Connector(Protocol):
    connector_type: ConnectorType

    def estimate_total(self, job: Job) -> int | None:
        """Best-effort count of items the stream will yield, if cheap to know."""

    def iter_items(self, job: Job) -> Iterator[StreamElement]:
        """Lazily yield the scope's items."""


ConnectorFactory = Callable[[Job], Connector]


class StaticConnector:
    """In-memory connector used by fixtures and tests.

    ``fail_after`` raises ``RuntimeError`` once that many elements have been
    yielded, simulating a source that dies mid-stream.
    """

    def __init__(
        self,
        items: Sequence[StreamElement],
        connector_type: ConnectorType | str = ConnectorType.UPLOAD,
        fail_after: int | None = None,
        error_message: str = "connector stream interrupted",
    ) -> None:
        self.items = list(items)
        self.connector_type = ConnectorType(connector_type)
        self.fail_after = fail_after
        self.error_message = error_message

    def estimate_total(self, job: Job) -> int | None:
        return len(self.items)

    def iter_items(self, job: Job) -> Iterator[StreamElement]:
        for index, item in enumerate(self.items):
            if self.fail_after is not None and index >= self.fail_after:
                raise RuntimeError(self.error_message)
            yield item

    @classmethod
    def from_fixture(cls, path: Path, connector_type: ConnectorType | str) -> "StaticConnector":
        """Load items from a JSON fixture: ``[{"external_id", "title", "content", ...}]``."""
        raw = orjson.loads(path.read_bytes())
        items = [
            ContentItem(
                external_id=str(entry["external_id"]),
                title=entry.get("title") or str(entry["external_id"]),
                content=str(entry.get("content", "")).encode("utf-8"),
                metadata=dict(entry.get("metadata") or {}),
                url=entry.get("url"),
            )
            for entry in raw
        ]
        return cls(items, connector_type=connector_type)


class FolderConnector:
    """``upload`` connector: Markdown and plain text files under a folder."""

    connector_type = ConnectorType.UPLOAD
    suffixes: tuple[str, ...] = (".md", ".markdown", ".txt", ".text")

    def __init__(self, root: Path, include: Iterable[str] | None = None) -> None:
        self.root = root.expanduser()
        self.include = tuple(include) if include else ("**/*",)

    def _paths(self) -> list[Path]:
        if self.root.is_file():
            return [self.root]
        found: set[Path] = set()
        for pattern in self.include:
            for path in self.root.glob(pattern):
                if path.is_file() and path.suffix.lower() in self.suffixes:
                    found.add(path)
        return sorted(found)

    def estimate_total(self, job: Job) -> int | None:
        if not self.root.exists():
            return None
        return len(self._paths())

    def iter_items(self, job: Job) -> Iterator[StreamElement]:
        if not self.root.exists():
            raise FileNotFoundError(f"Upload folder not found: {self.root}")
        for path in self._paths():
            try:
                yield self._load(path)
            except OSError as exc:
                logger.warning("Skipping unreadable file %s: %s", path, exc)
                yield SkippedItem(external_id=self._external_id(path), reason=str(exc))

    def _external_id(self, path: Path) -> str:
        if self.root.is_file():
            return path.name
        return path.relative_to(self.root).as_posix()

    def _load(self, path: Path) -> ContentItem:
        raw = path.read_bytes()
        text = raw.decode("utf-8", errors="ignore")
        title = path.stem
        metadata: dict[str, Any] = {"path": str(path), "modified_at": int(path.stat().st_mtime * 1000)}
        mime_type = "text/plain"
        if path.suffix.lower() in (".md", ".markdown"):
            front_matter, body = _split_front_matter(text)
            if front_matter:
                title = str(front_matter.get("title") or title)
                metadata["front_matter"] = front_matter
            text = _markdown_to_text(body)
            mime_type = "text/markdown"
        else:
            text = normalize(text)
        return ContentItem(
            external_id=self._external_id(path),
            title=title,
            content=text.encode("utf-8"),
            metadata=metadata,
            url=path.as_uri(),
            mime_type=mime_type,
        )


class ConnectorRegistry:
    """Resolve the connector that serves a job."""

    def __init__(self) -> None:
        self._factories: dict[ConnectorType, ConnectorFactory] = {}

    def register(self, connector_type: ConnectorType | str, factory: ConnectorFactory) -> None:
        self._factories[ConnectorType(connector_type)] = factory

    def supports(self, connector_type: ConnectorType | str) -> bool:
        return ConnectorType(connector_type) in self._factories

    def for_job(self, job: Job) -> Connector:
        factory = self._factories.get(job.connector_type)
        if factory is None:
            raise LookupError(f"No connector registered for {job.connector_type.value}")
        return factory(job)


def _folder_for_job(job: Job) -> FolderConnector:
    root = job.payload.get("path")
    if not root:
        raise ValueError("upload jobs require a 'path' in the job payload")
    return FolderConnector(Path(str(root)), include=job.payload.get("include"))


def default_registry(fixtures_dir: Path | None = None) -> ConnectorRegistry:
    """Registry with the ``upload`` folder connector.

    When ``fixtures_dir`` is set, every other connector type is served from
    ``<fixtures_dir>/<connector_type>.json``.
    """
    registry = ConnectorRegistry()
    registry.register(ConnectorType.UPLOAD, _folder_for_job)
    if fixtures_dir is not None:
        for connector_type in ConnectorType:
            fixture = fixtures_dir / f"{connector_type.value}.json"
            if connector_type is not ConnectorType.UPLOAD and fixture.exists():
                registry.register(
                    connector_type,
                    lambda job, path=fixture: StaticConnector.from_fixture(path, job.connector_type),
                )
    return registry


def _split_front_matter(text: str) -> tuple[dict[str, Any] | None, str]:
    if text.startswith("---"):
        parts = text.split("---", 2)
        if len(parts) >= 3:
            try:
                front_matter = yaml.safe_load(parts[1]) or {}
            except yaml.YAMLError:
                return None, text
            if isinstance(front_matter, dict):
                return front_matter, parts[2]
    return None, text


def _markdown_to_text(text: str) -> str:
    parts = [token.content.strip() for token in _MD.parse(text) if token.content.strip()]
    return normalize("\n\n".join(parts) if parts else text)


__all__ = [
    "ContentItem",
    "SkippedItem",
    "StreamElement",
    "Connector",
    "ConnectorFactory",
    "StaticConnector",
    "FolderConnector",
    "ConnectorRegistry",
    "default_registry",
]
