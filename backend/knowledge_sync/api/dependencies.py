"""Shared FastAPI dependencies."""

from __future__ import annotations

from functools import lru_cache

from knowledge_sync.core.config import Settings, get_settings
from knowledge_sync.db.sqlite import SQLiteDatabase
from knowledge_sync.ledger.jobs import JobLedger
from knowledge_sync.store.versions import ContentVersionStore
from knowledge_sync.sync.chunker import segmenter_from_settings

_DB: SQLiteDatabase | None = None
_LEDGER: JobLedger | None = None
_STORE: ContentVersionStore | None = None


@lru_cache(maxsize=1)
def get_app_settings() -> Settings:
    return get_settings()


def get_database() -> SQLiteDatabase:
    global _DB
    if _DB is None:
        settings = get_app_settings()
        db = SQLiteDatabase(settings.db_path)
        db.ensure_schema()
        _DB = db
    return _DB


def get_job_ledger() -> JobLedger:
    global _LEDGER
    if _LEDGER is None:
        _LEDGER = JobLedger(get_database(), get_app_settings())
    return _LEDGER


def get_version_store() -> ContentVersionStore:
    global _STORE
    if _STORE is None:
        _STORE = ContentVersionStore(get_database(), segmenter_from_settings(get_app_settings()))
    return _STORE


__all__ = [
    "get_app_settings",
    "get_database",
    "get_job_ledger",
    "get_version_store",
]
