"""Tests for settings loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from knowledge_sync.core.config import Settings


def test_yaml_sections_map_to_fields(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("KSYNC_RETRY_BASE_SECONDS", raising=False)
    monkeypatch.delenv("KSYNC_DB_PATH", raising=False)
    config = tmp_path / "config.yaml"
    config.write_text(
        "storage:\n  db_path: ~/ksync-test.db\n"
        "jobs:\n  max_attempts: 5\n  retry_base_seconds: 2\n"
        "progress:\n  flush_interval_ms: 250\n"
        "chunking:\n  target_tokens: 120\n",
        encoding="utf-8",
    )
    settings = Settings.from_yaml(config)
    assert settings.db_path == Path("~/ksync-test.db").expanduser()
    assert settings.max_attempts == 5
    assert settings.retry_base_seconds == 2
    assert settings.stats_flush_interval_ms == 250
    assert settings.chunk_target_tokens == 120


def test_environment_overrides_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = tmp_path / "config.yaml"
    config.write_text("jobs:\n  max_attempts: 5\n", encoding="utf-8")
    monkeypatch.setenv("KSYNC_MAX_ATTEMPTS", "7")
    monkeypatch.setenv("KSYNC_WORKSPACE_ID", "ws-env")
    settings = Settings.from_yaml(config)
    assert settings.max_attempts == 7
    assert settings.workspace_id == "ws-env"
    assert settings.db_path == tmp_path / "api.db"


def test_retry_delay_is_exponential_and_capped() -> None:
    settings = Settings(retry_base_seconds=1, retry_max_seconds=10)
    assert [settings.retry_delay_seconds(attempt) for attempt in (1, 2, 3, 4, 5)] == [1, 2, 4, 8, 10]
