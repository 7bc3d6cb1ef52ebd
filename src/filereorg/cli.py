"""Command line interface for filereorg."""

from __future__ import annotations

import logging
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from filereorg.config import AppConfig, PartitionConfig
from filereorg.errors import JobAlreadyRunningError
from filereorg.models import RunStatus
from filereorg.orchestrator import SKIP_CLEANUP_PARAM, Orchestrator, Services
from filereorg.store import mongo
from filereorg.store.audit import MongoAuditStore
from filereorg.utils.paths import PathResolver, compute_identity


console = Console()
app = typer.Typer(help="filereorg - move SFTP files into a hash partitioned layout")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _open_audit_store(config: AppConfig) -> MongoAuditStore:
    client = mongo.connect(config.mongo)
    collections = mongo.Collections.from_database(client[config.mongo.database], config.mongo)
    return MongoAuditStore(collections.audit)


@app.command()
def run(
    job_name: Optional[str] = typer.Option(None, "--job-name", help="Job name recorded in the audit"),
    skip_cleanup: bool = typer.Option(False, "--skip-cleanup", help="Do not delete origin files"),
    chunk_size: Optional[int] = typer.Option(None, help="Records per chunk"),
    threads: Optional[int] = typer.Option(None, help="Parallel transfers per chunk"),
    mongo_uri: Optional[str] = typer.Option(None, "--mongo-uri", help="MongoDB connection URI"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Run a full reorganization synchronously."""
    _setup_logging(verbose)
    config = AppConfig.from_env()
    if chunk_size is not None:
        config.batch.chunk_size = chunk_size
    if threads is not None:
        config.batch.thread_pool_size = threads
    if mongo_uri:
        config.mongo.uri = mongo_uri

    orchestrator = Orchestrator(Services.from_config(config))
    try:
        outcome = orchestrator.run(job_name, {SKIP_CLEANUP_PARAM: skip_cleanup})
    except JobAlreadyRunningError as exc:
        console.print(f"[yellow]{exc}. Please wait for the current job to complete.[/yellow]")
        raise typer.Exit(code=2)
    finally:
        orchestrator.shutdown()

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Read")
    table.add_column("Written")
    table.add_column("Skipped")
    table.add_column("Failed")
    for report in outcome.reports:
        table.add_row(
            report.stage_name,
            report.status.value,
            str(report.read_count),
            str(report.write_count),
            str(report.skip_count),
            str(report.failed_count),
        )
    console.print(table)
    console.print(f"Run finished with status [bold]{outcome.status.value}[/bold]")
    if outcome.status is RunStatus.FAILED:
        raise typer.Exit(code=1)


@app.command()
def audit(
    limit: int = typer.Option(10, help="Number of runs to display"),
    job_name: Optional[str] = typer.Option(None, "--job-name", help="Only show this job"),
) -> None:
    """Show the most recent runs from the audit collection."""
    store = _open_audit_store(AppConfig.from_env())
    documents = store.latest(limit, job_name)
    if not documents:
        console.print("[yellow]No runs recorded.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Run")
    table.add_column("Job")
    table.add_column("Status")
    table.add_column("Started")
    table.add_column("Duration")
    table.add_column("Reorganized")
    table.add_column("Deleted")
    for document in documents:
        started = document.get("start_time")
        table.add_row(
            str(document.get("run_id", ""))[:8],
            str(document.get("job_name", "")),
            str(document.get("status", "")),
            started.isoformat(timespec="seconds") if started else "",
            str(document.get("duration_formatted") or ""),
            str(document.get("total_files_reorganized", 0)),
            str(document.get("total_files_deleted", 0)),
        )
    console.print(table)


@app.command()
def resolve(
    source_path: str = typer.Argument(..., help="Full origin path of the file"),
    base_dir: str = typer.Option("/organized", help="Destination base directory"),
    depth: int = typer.Option(PartitionConfig().depth, help="Number of partition levels"),
    width: int = typer.Option(PartitionConfig().width, help="Characters per partition level"),
) -> None:
    """Print the destination path a file would be moved to."""
    try:
        resolver = PathResolver(depth=depth, width=width)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    identity = compute_identity(source_path)
    file_name = source_path.rstrip("/").rsplit("/", 1)[-1]
    console.print(f"Identity: {identity}")
    console.print(resolver.resolve(identity, base_dir, file_name))


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8080, help="Server port"),
) -> None:
    """Start the HTTP trigger and audit API."""
    try:
        import uvicorn
    except ImportError as exc:  # pragma: no cover
        raise typer.BadParameter(
            "uvicorn is not installed. Install the web extras with \"python -m pip install '.[web]'\""
        ) from exc

    from filereorg.web.app import app as web_app

    console.print(f"Starting service on http://{host}:{port}")
    uvicorn.run(
        web_app,
        host=host,
        port=port,
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":
    app()
