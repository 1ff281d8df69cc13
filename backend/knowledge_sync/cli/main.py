"""CLI entrypoint for Knowledge Sync."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import List, Optional

import requests
import typer

from knowledge_sync.core.config import Settings, get_settings
from knowledge_sync.core.logging import configure_logging
from knowledge_sync.db.sqlite import SQLiteDatabase
from knowledge_sync.ledger.jobs import JobLedger
from knowledge_sync.store.versions import ContentVersionStore
from knowledge_sync.sync.chunker import segmenter_from_settings
from knowledge_sync.sync.connectors import default_registry
from knowledge_sync.sync.runner import JobRunner

app = typer.Typer(name="ksync", help="Knowledge Sync command-line interface")

DEFAULT_HOST = "http://127.0.0.1:5173"


def _resolve_host(override: Optional[str]) -> str:
    if override:
        return override.rstrip("/")
    env_host = os.environ.get("KSYNC_HOST")
    if env_host:
        return env_host.rstrip("/")
    return DEFAULT_HOST


def _request(method: str, path: str, host: Optional[str] = None, **kwargs) -> requests.Response:
    base = _resolve_host(host)
    url = f"{base}{path}"
    resp = requests.request(method, url, timeout=60, **kwargs)
    if not resp.ok:
        try:
            detail = resp.json()
        except ValueError:
            detail = resp.text
        typer.echo(f"Request failed ({resp.status_code}): {detail}", err=True)
        raise typer.Exit(code=1)
    return resp


def _parse_config(pairs: Optional[List[str]]) -> dict[str, str]:
    config: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--set")
        config[key] = value
    return config


@app.command()
def enqueue(
    scope_id: str = typer.Argument(..., help="Scope to sync"),
    connector: str = typer.Option("upload", "--connector", "-c", help="Connector type"),
    path: Optional[Path] = typer.Option(None, "--path", help="Folder to sync (upload connector)"),
    account: Optional[str] = typer.Option(None, "--account", help="Connected account identifier"),
    extra: Optional[List[str]] = typer.Option(None, "--set", help="Extra connector config as KEY=VALUE"),
    idempotency_key: Optional[str] = typer.Option(None, "--idempotency-key", help="Deduplicate repeated triggers"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Trigger a sync job for a scope."""
    config: dict[str, object] = dict(_parse_config(extra))
    if path:
        config["path"] = str(path.expanduser().resolve())
    body: dict[str, object] = {"scope_id": scope_id, "connector_type": connector, "config": config}
    if account:
        body["account_id"] = account
    if idempotency_key:
        body["idempotency_key"] = idempotency_key
    resp = _request("POST", "/jobs/sync", host=host, json=body)
    typer.echo(json.dumps(resp.json(), indent=2))


@app.command()
def status(
    scope_id: str = typer.Argument(..., help="Scope identifier"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Show the latest job, progress and counts for a scope."""
    resp = _request("GET", f"/jobs/scope/{scope_id}/latest", host=host)
    typer.echo(json.dumps(resp.json(), indent=2))


@app.command()
def runs(
    job_id: str = typer.Argument(..., help="Job identifier"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """List the attempts of a job."""
    resp = _request("GET", f"/jobs/{job_id}/runs", host=host)
    typer.echo(json.dumps(resp.json(), indent=2))


@app.command("recover-stale")
def recover_stale(
    requeue: bool = typer.Option(True, "--requeue/--park", help="Requeue recovered jobs or park them as failed"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Fail runs that stopped reporting progress."""
    resp = _request("POST", "/admin/recover-stale", host=host, json={"requeue": requeue})
    typer.echo(json.dumps(resp.json(), indent=2))


@app.command()
def worker(
    once: bool = typer.Option(False, "--once", help="Process due jobs once and exit"),
    limit: int = typer.Option(5, "--limit", help="Jobs claimed per poll"),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to a YAML config file"),
) -> None:
    """Run the sync worker against the local database."""
    configure_logging()
    settings = Settings.from_yaml(config) if config else get_settings()
    database = SQLiteDatabase(settings.db_path)
    database.ensure_schema()
    runner = JobRunner(
        JobLedger(database, settings),
        ContentVersionStore(database, segmenter_from_settings(settings)),
        default_registry(settings.fixtures_dir),
        settings,
    )
    try:
        if once:
            result = runner.run_once(limit)
            summary = {
                "recovered": result.recovered,
                "outcomes": [
                    {"job_id": outcome.job.id, "status": outcome.status, "error": outcome.error}
                    for outcome in result.outcomes
                ],
            }
            typer.echo(json.dumps(summary, indent=2))
        else:
            runner.run_forever(limit)
    except KeyboardInterrupt:
        runner.stop()
    finally:
        database.close()


if __name__ == "__main__":
    app()
