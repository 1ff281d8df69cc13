"""FastAPI application setup for Knowledge Sync."""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from knowledge_sync.api.dependencies import (
    get_app_settings,
    get_database,
    get_job_ledger,
    get_version_store,
)
from knowledge_sync.api.routes_admin import router as admin_router
from knowledge_sync.api.routes_jobs import router as jobs_router
from knowledge_sync.api.routes_sources import router as sources_router
from knowledge_sync.core.logging import configure_logging

configure_logging()

app = FastAPI(
    title="Knowledge Sync",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://127.0.0.1:5174",
        "http://localhost:5174",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(jobs_router, prefix="/jobs", tags=["jobs"])
app.include_router(sources_router, prefix="/sources", tags=["sources"])
app.include_router(admin_router, prefix="", tags=["admin"])


@app.on_event("startup")
async def startup() -> None:
    """Open the database and build the services before the first request."""
    get_app_settings()
    get_database()
    get_job_ledger()
    get_version_store()


@app.get("/health", tags=["admin"])
def health() -> dict[str, bool]:
    return {"ok": True}
