"""Application configuration handling."""

from __future__ import annotations

import os
import socket
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "KSYNC_"
DEFAULT_CONFIG_PATH = Path("~/.config/knowledge-sync/config.yaml")

_YAML_KEY_MAP: Mapping[tuple[str, ...], str] = {
    ("storage", "db_path"): "db_path",
    ("storage", "workspace_id"): "workspace_id",
    ("jobs", "max_attempts"): "max_attempts",
    ("jobs", "retry_base_seconds"): "retry_base_seconds",
    ("jobs", "retry_max_seconds"): "retry_max_seconds",
    ("jobs", "stale_after_seconds"): "stale_after_seconds",
    ("jobs", "poll_interval_seconds"): "poll_interval_seconds",
    ("jobs", "worker_id"): "worker_id",
    ("progress", "flush_interval_ms"): "stats_flush_interval_ms",
    ("progress", "eta_smoothing"): "eta_smoothing",
    ("chunking", "target_tokens"): "chunk_target_tokens",
    ("chunking", "max_tokens"): "chunk_max_tokens",
    ("chunking", "min_tokens"): "chunk_min_tokens",
    ("chunking", "overlap_tokens"): "chunk_overlap_tokens",
    ("connectors", "fixtures_dir"): "fixtures_dir",
}


def _default_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}"


class Settings(BaseModel):
    """Runtime configuration loaded from YAML file and environment variables."""

    db_path: Path = Field(default=Path.home() / ".knowledge-sync" / "ksync.db")
    workspace_id: str = "default-workspace"
    max_attempts: int = Field(default=3, ge=1)
    retry_base_seconds: float = Field(default=1.0, ge=0)
    retry_max_seconds: float = Field(default=30 * 60, ge=0)
    stale_after_seconds: int = Field(default=5 * 60, ge=1)
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    worker_id: str = Field(default_factory=_default_worker_id)
    stats_flush_interval_ms: int = Field(default=1000, ge=0)
    eta_smoothing: float = Field(default=0.3, gt=0, le=1)
    chunk_target_tokens: int = 200
    chunk_max_tokens: int = 320
    chunk_min_tokens: int = 80
    chunk_overlap_tokens: int = 40
    fixtures_dir: Path | None = None

    model_config = {
        "validate_assignment": True,
        "extra": "ignore",
    }

    @field_validator("db_path", "fixtures_dir", mode="before")
    @classmethod
    def _expand_path(cls, value: Any) -> Path | None:
        if value is None:
            return None
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("paths must be a path or string")

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> "Settings":
        """Load YAML config and overlay env vars; fall back to defaults."""
        config_path = cls._resolve_config_path(path)
        data: dict[str, Any] = {}
        if config_path and config_path.exists():
            with config_path.open("r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
            data.update(_flatten_yaml(raw))
        data.update(_load_env_overrides())
        return cls(**data)

    @staticmethod
    def _resolve_config_path(path: Path | None) -> Path | None:
        if path is not None:
            return path.expanduser()
        env_path = os.environ.get(f"{ENV_PREFIX}CONFIG")
        if env_path:
            return Path(env_path).expanduser()
        resolved_default = DEFAULT_CONFIG_PATH.expanduser()
        return resolved_default if resolved_default.exists() else None

    def retry_delay_seconds(self, attempt: int) -> float:
        """Delay before a job that failed ``attempt`` times becomes due again."""
        return min(self.retry_base_seconds * (2 ** max(attempt - 1, 0)), self.retry_max_seconds)


def _flatten_yaml(raw: Mapping[str, Any], prefix: tuple[str, ...] = ()) -> dict[str, Any]:
    """Flatten nested YAML configuration to Settings field names."""
    flat: dict[str, Any] = {}
    for key, value in raw.items():
        next_prefix = prefix + (key,)
        if isinstance(value, Mapping):
            flat.update(_flatten_yaml(value, prefix=next_prefix))
        else:
            mapped_key = _YAML_KEY_MAP.get(next_prefix)
            if mapped_key:
                flat[mapped_key] = value
            elif key in Settings.model_fields:
                flat[key] = value
    return flat


def _load_env_overrides() -> dict[str, Any]:
    """Map environment variables with KSYNC_ prefix into Settings fields."""
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        field_name = key[len(ENV_PREFIX) :].lower()
        if field_name in Settings.model_fields:
            overrides[field_name] = value
    return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings accessor for dependency injection."""
    return Settings.from_yaml()


__all__ = ["Settings", "get_settings"]
