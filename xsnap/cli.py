"""Command-line entry point: run the API or a standalone worker, inspect jobs."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
from datetime import datetime
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from xsnap.admission import AdmissionController, UrlPolicy
from xsnap.capture import BrowserCaptureExecutor
from xsnap.errors import JobNotFound, ValidationError
from xsnap.settings import Settings, get_settings
from xsnap.store import CaptureRecord, StorageConfig, Store, build_store
from xsnap.worker import CaptureWorker

app = typer.Typer(help="Queue URL captures and run the capture worker.", add_completion=False)
console = Console()
err_console = Console(stderr=True)

_STATUS_STYLES = {
    "queued": "cyan",
    "running": "yellow",
    "success": "green",
    "failed": "red",
}


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _settings(ctx: typer.Context) -> Settings:
    env_file = (ctx.obj or {}).get("env_file", ".env")
    try:
        return get_settings(env_file)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _store(ctx: typer.Context) -> Store:
    return build_store(StorageConfig.from_settings(_settings(ctx)))


@app.callback()
def main(
    ctx: typer.Context,
    env_file: str = typer.Option(".env", "--env-file", help="python-decouple .env file to read."),
    log_level: str = typer.Option("info", "--log-level", help="Logging level."),
) -> None:
    ctx.obj = {"env_file": env_file}
    _configure_logging(log_level)


@app.command()
def serve(
    ctx: typer.Context,
    host: Optional[str] = typer.Option(None, "--host", help="Bind host."),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port."),
    reload: bool = typer.Option(False, "--reload/--no-reload", help="Enable auto-reload."),
) -> None:
    """Run the HTTP API; the capture worker starts with it."""

    import uvicorn

    settings = _settings(ctx)
    uvicorn.run(
        "xsnap.main:app",
        host=host or settings.telemetry.host,
        port=port or settings.telemetry.port,
        reload=reload,
    )


async def _run_worker(settings: Settings) -> None:
    store = build_store(StorageConfig.from_settings(settings))
    worker = CaptureWorker(
        store=store,
        executor=BrowserCaptureExecutor(settings.browser),
        settings=settings.worker,
    )
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):  # pragma: no cover - windows
            loop.add_signal_handler(sig, stop.set)
    await worker.start()
    try:
        await stop.wait()
    finally:
        await worker.shutdown()


@app.command()
def worker(ctx: typer.Context) -> None:
    """Run the capture worker without the HTTP API until SIGINT/SIGTERM."""

    asyncio.run(_run_worker(_settings(ctx)))


@app.command()
def submit(
    ctx: typer.Context,
    urls: List[str] = typer.Argument(..., help="One or more URLs to capture."),
) -> None:
    """Validate, dedup, and queue URLs directly in the local store."""

    settings = _settings(ctx)
    admission = AdmissionController(store=_store(ctx), policy=UrlPolicy.from_settings(settings.admission))
    result = admission.submit("\n".join(urls))

    for job_id in result.created:
        console.print(f"[green]queued[/] {job_id}")
    for original in result.duplicates:
        console.print(f"[yellow]duplicate[/] {original}")
    for entry in result.invalid:
        console.print(f"[red]invalid[/] {entry.input}: {entry.reason}")
    if result.error:
        err_console.print(f"[red]{result.error}[/]")
        raise typer.Exit(code=1)


def _format_ts(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _status_text(record: CaptureRecord) -> str:
    style = _STATUS_STYLES.get(record.status, "white")
    label = record.status
    if record.retry_scheduled:
        label = f"{label} (retry pending)"
    return f"[{style}]{label}[/]"


@app.command("list")
def list_jobs(
    ctx: typer.Context,
    status: Optional[str] = typer.Option(None, "--status", help="queued, running, success, or failed."),
    limit: int = typer.Option(20, "--limit", min=1, max=100),
    offset: int = typer.Option(0, "--offset", min=0),
) -> None:
    """Show recent jobs, newest first."""

    try:
        records, total = _store(ctx).list_captures(status=status, limit=limit, offset=offset)
    except ValidationError as exc:
        raise typer.BadParameter(str(exc), param_hint="--status") from exc

    table = Table(title=f"Captures ({len(records)} of {total})")
    table.add_column("id", style="bold")
    table.add_column("status")
    table.add_column("attempts", justify="right")
    table.add_column("created")
    table.add_column("target")
    table.add_column("error")
    for record in records:
        table.add_row(
            record.id,
            _status_text(record),
            str(record.attempt_count),
            _format_ts(record.created_at),
            record.target,
            record.last_error or "",
        )
    console.print(table)


@app.command()
def show(ctx: typer.Context, job_id: str = typer.Argument(..., help="Capture job id.")) -> None:
    """Print one job as JSON."""

    try:
        record = _store(ctx).get_by_id(job_id)
    except JobNotFound as exc:
        err_console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1) from exc
    console.print_json(json.dumps(record.model_dump(mode="json")))


@app.command()
def recover(ctx: typer.Context) -> None:
    """Reset jobs stuck in running back to queued (only when no worker is running)."""

    count = _store(ctx).reset_all_running_to_queued()
    console.print(f"Recovered {count} stale running job(s)")


@app.command()
def stats(ctx: typer.Context) -> None:
    """Job counts by status."""

    counts = _store(ctx).status_counts()
    table = Table(title="Job status")
    table.add_column("status")
    table.add_column("count", justify="right")
    for status_name, count in counts.items():
        table.add_row(f"[{_STATUS_STYLES.get(status_name, 'white')}]{status_name}[/]", str(count))
    console.print(table)


if __name__ == "__main__":  # pragma: no cover
    app()
