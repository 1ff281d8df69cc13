"""Test fixtures for Knowledge Sync."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from knowledge_sync.core.config import Settings  # noqa: E402
from knowledge_sync.db.sqlite import SQLiteDatabase  # noqa: E402
from knowledge_sync.ledger.jobs import JobLedger  # noqa: E402
from knowledge_sync.store.versions import ContentVersionStore  # noqa: E402


def _reset_singletons() -> None:
    from knowledge_sync.api import dependencies as deps
    from knowledge_sync.core.config import get_settings

    if deps._DB is not None:
        deps._DB.close()
    get_settings.cache_clear()
    deps.get_app_settings.cache_clear()
    deps._DB = None
    deps._LEDGER = None
    deps._STORE = None


@pytest.fixture(autouse=True)
def reset_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset global singletons and environment between tests."""
    monkeypatch.setenv("KSYNC_DB_PATH", str(tmp_path / "api.db"))
    monkeypatch.setenv("KSYNC_RETRY_BASE_SECONDS", "0")
    monkeypatch.delenv("KSYNC_CONFIG", raising=False)
    _reset_singletons()
    yield
    _reset_singletons()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "ksync.db",
        max_attempts=3,
        retry_base_seconds=0,
        stats_flush_interval_ms=0,
        worker_id="test-worker",
    )


@pytest.fixture
def db(settings: Settings) -> SQLiteDatabase:
    database = SQLiteDatabase(settings.db_path)
    database.ensure_schema()
    yield database
    database.close()


@pytest.fixture
def store(db: SQLiteDatabase) -> ContentVersionStore:
    return ContentVersionStore(db)


@pytest.fixture
def ledger(db: SQLiteDatabase, settings: Settings) -> JobLedger:
    return JobLedger(db, settings)


@pytest.fixture(scope="session")
def sample_text() -> str:
    return "Title\n\nParagraph one.\n\nParagraph two is here."
