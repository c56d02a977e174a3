"""
cronpipe CLI entry point.

Commands:
    cronpipe init                 — create config, store and queue
    cronpipe run [ROLE]           — run scheduler / dispatcher / worker / all
    cronpipe next-fire CRON       — preview upcoming firings
    cronpipe job add|list|pause|resume
    cronpipe runs JOB_ID          — recent runs and their attempts
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cronpipe.core.config import CronPipeConfig
from cronpipe.core.errors import CronPipeError

app = typer.Typer(
    name="cronpipe",
    help="cronpipe — cron job orchestration over a shared store.",
    add_completion=False,
)
job_app = typer.Typer(help="Manage jobs.", add_completion=False)
app.add_typer(job_app, name="job")

console = Console()

DEFAULT_CONFIG = """\
# cronpipe configuration

[store]
backend = "sqlite"
path = "~/.cronpipe/cronpipe.db"

[queue]
backend = "sqlite"
path = "~/.cronpipe/queue.db"
keep_done = 100
keep_dead = 500

[scheduler]
poll_interval = 10.0

[dispatcher]
poll_interval = 5.0
backoff_base_seconds = 5.0

[executor]
concurrency = 4

[logging]
console_level = "WARNING"

[alerts]
enabled = true
# webhook_url = "https://ops.example.com/hooks/cronpipe"
"""


def get_cronpipe_home() -> Path:
    return Path.home() / ".cronpipe"


def get_config_path() -> Path:
    return get_cronpipe_home() / "config.toml"


def _load_config() -> CronPipeConfig:
    try:
        return CronPipeConfig.load()
    except CronPipeError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


def _run(coro) -> object:
    """Run a coroutine, turning cronpipe errors into a clean exit."""
    try:
        return asyncio.run(coro)
    except CronPipeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


async def _open_store(config: CronPipeConfig):
    from cronpipe.pipeline.runner import build_store

    store = build_store(config)
    await store.initialize()
    return store


def _fmt(dt: datetime | None) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC") if dt else "-"


# ━━━ Setup & services ━━━


@app.command()
def init(
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite existing config"),
) -> None:
    """Create ~/.cronpipe/config.toml and the store and queue schemas."""
    config_path = get_config_path()
    if config_path.exists() and not force:
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
    else:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(DEFAULT_CONFIG, encoding="utf-8")
        console.print(f"[green]Wrote {config_path}[/green]")

    config = _load_config()

    async def _init() -> None:
        from cronpipe.pipeline.runner import Pipeline

        pipeline = Pipeline(config)
        await pipeline.initialize()
        await pipeline.stop()

    _run(_init())
    console.print(f"[green]Store ready:[/green] {config.store.backend}")
    console.print(f"[green]Queue ready:[/green] {config.queue.backend}")


@app.command()
def run(
    role: str = typer.Argument("all", help="scheduler | dispatcher | worker | all"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output"),
) -> None:
    """Run pipeline loops until Ctrl+C."""
    from cronpipe.core.logging import setup_logging
    from cronpipe.pipeline.runner import ROLES, run_services

    config = _load_config()
    roles = ROLES if role == "all" else (role,)
    if role != "all" and role not in ROLES:
        console.print(f"[red]Unknown role {role!r}.[/red] Use one of: all, {', '.join(ROLES)}")
        raise typer.Exit(2)

    setup_logging(
        log_dir=config.get_log_dir(),
        console_level="DEBUG" if verbose else config.logging.console_level,
    )
    if role == "all" and config.queue.backend == "memory":
        console.print("[dim]Using the in-process queue; tasks do not survive a restart.[/dim]")
    console.print(f"[bold cyan]cronpipe[/bold cyan] running: {', '.join(roles)}  [dim](Ctrl+C to stop)[/dim]")

    try:
        _run(run_services(config, roles))
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped.[/dim]")


@app.command("next-fire")
def next_fire_cmd(
    cron: str = typer.Argument(..., help='Cron expression, e.g. "0 9 * * *"'),
    tz: str = typer.Option("Europe/Berlin", "--tz", help="IANA timezone"),
    count: int = typer.Option(5, "--count", "-n", min=1, max=100),
) -> None:
    """Show the next firing instants of a schedule."""
    from zoneinfo import ZoneInfo

    from cronpipe.scheduling.cron import upcoming

    try:
        instants = upcoming(cron, tz, datetime.now(timezone.utc), count)
    except CronPipeError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"{cron}  ({tz})")
    table.add_column("#", justify="right", style="dim")
    table.add_column("UTC")
    table.add_column("Local", style="cyan")
    zone = ZoneInfo(tz)
    for i, instant in enumerate(instants, 1):
        table.add_row(str(i), _fmt(instant), instant.astimezone(zone).strftime("%Y-%m-%d %H:%M %Z"))
    console.print(table)


# ━━━ Jobs ━━━


def _parse_headers(values: list[str]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for item in values:
        name, sep, value = item.partition(":")
        if not sep or not name.strip():
            raise typer.BadParameter(f"Header must look like 'Name: value', got {item!r}")
        headers[name.strip()] = value.strip()
    return headers


@job_app.command("add")
def job_add(
    project: str = typer.Option(..., "--project", "-p", help="Project (tenant) id"),
    name: str = typer.Option(..., "--name", help="Job name"),
    cron: str = typer.Option(..., "--cron", help='Cron expression, e.g. "*/5 * * * *"'),
    url: str = typer.Option(..., "--url", help="Target URL"),
    tz: str = typer.Option("Europe/Berlin", "--tz", help="IANA timezone"),
    method: str = typer.Option("GET", "--method", "-X"),
    header: list[str] = typer.Option([], "--header", "-H", help="'Name: value', repeatable"),
    body: str = typer.Option(None, "--body", help="JSON request body"),
    retry_max: int = typer.Option(3, "--retry-max", min=0),
    timeout_ms: int = typer.Option(15000, "--timeout-ms", min=1000, max=300000),
    concurrency: int = typer.Option(1, "--concurrency", min=1, max=100),
) -> None:
    """Register an http job."""
    from cronpipe.scheduling.models import ActionKind, Job
    from cronpipe.scheduling.registration import register_job

    body_value = None
    if body is not None:
        try:
            body_value = json.loads(body)
        except json.JSONDecodeError as e:
            raise typer.BadParameter(f"--body is not valid JSON: {e}")

    job = Job(
        project_id=project,
        name=name,
        cron=cron,
        tz=tz,
        kind=ActionKind.HTTP,
        target=url,
        method=method.upper(),
        headers=_parse_headers(header),
        body_template=body_value,
        retry_max=retry_max,
        timeout_ms=timeout_ms,
        concurrency=concurrency,
    )
    config = _load_config()

    async def _add():
        store = await _open_store(config)
        try:
            return await register_job(store, job)
        finally:
            await store.close()

    cursor = _run(_add())
    console.print(f"[green]Job added:[/green] {job.id}")
    console.print(f"[dim]First fire: {_fmt(cursor.next_at)}[/dim]")


@job_app.command("list")
def job_list(
    project: str = typer.Option(None, "--project", "-p", help="Only this project"),
) -> None:
    """List jobs and their next firing."""
    config = _load_config()

    async def _list():
        store = await _open_store(config)
        try:
            jobs = await store.list_jobs(project)
            return [(job, await store.get_cursor(job.id)) for job in jobs]
        finally:
            await store.close()

    rows = _run(_list())
    if not rows:
        console.print("[dim]No jobs.[/dim]")
        return

    table = Table()
    for column in ("ID", "Project", "Name", "Cron", "TZ", "Next", "State"):
        table.add_column(column)
    for job, cursor in rows:
        table.add_row(
            job.id, job.project_id, job.name, job.cron or "-", job.tz,
            _fmt(cursor.next_at if cursor else None),
            "[yellow]paused[/yellow]" if job.paused else "[green]active[/green]",
        )
    console.print(table)


def _set_paused(job_id: str, paused: bool) -> None:
    config = _load_config()

    async def _update() -> bool:
        store = await _open_store(config)
        try:
            return await store.set_paused(job_id, paused)
        finally:
            await store.close()

    if not _run(_update()):
        console.print(f"[red]No job {job_id}[/red]")
        raise typer.Exit(1)
    console.print(f"Job {job_id} {'paused' if paused else 'resumed'}.")


@job_app.command("pause")
def job_pause(job_id: str = typer.Argument(...)) -> None:
    """Stop creating runs for a job."""
    _set_paused(job_id, True)


@job_app.command("resume")
def job_resume(job_id: str = typer.Argument(...)) -> None:
    """Resume a paused job. A slot missed while paused fires once."""
    _set_paused(job_id, False)


# ━━━ Inspection ━━━


@app.command()
def runs(
    job_id: str = typer.Argument(...),
    limit: int = typer.Option(10, "--limit", "-n", min=1),
) -> None:
    """Show recent runs of a job with their attempts."""
    config = _load_config()

    async def _fetch():
        store = await _open_store(config)
        try:
            result = []
            for r in await store.list_runs(job_id, limit):
                result.append((r, await store.list_attempts(r.id)))
            return result
        finally:
            await store.close()

    rows = _run(_fetch())
    if not rows:
        console.print("[dim]No runs yet.[/dim]")
        return

    styles = {"success": "green", "failed": "red", "running": "yellow"}
    table = Table(title=f"Runs of {job_id}")
    for column in ("Trigger", "Status", "Attempts", "Last HTTP", "Duration", "Error"):
        table.add_column(column)
    for run_, attempts in rows:
        last = attempts[-1] if attempts else None
        style = styles.get(run_.status.value, "")
        table.add_row(
            _fmt(run_.trigger_at),
            f"[{style}]{run_.status.value}[/{style}]",
            str(len(attempts)),
            str(last.http_status) if last and last.http_status is not None else "-",
            f"{run_.duration_ms} ms" if run_.duration_ms is not None else "-",
            (run_.error or "")[:60],
        )
    console.print(table)


@app.command()
def version() -> None:
    """Show cronpipe version."""
    from cronpipe import __version__

    console.print(f"cronpipe v{__version__}")


@app.command()
def config() -> None:
    """Show the effective configuration."""
    config_path = get_config_path()
    console.print(f"[bold]Config file:[/bold] {config_path}")
    if not config_path.exists():
        console.print("[dim]Not found. Run 'cronpipe init'[/dim]")
    effective = _load_config()
    console.print(
        Panel(
            json.dumps(effective.model_dump(), indent=2),
            title="Effective configuration",
            border_style="dim",
        )
    )


if __name__ == "__main__":
    app()
