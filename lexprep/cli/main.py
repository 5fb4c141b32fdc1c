"""
Typer CLI for lexprep.

Commands:
    lexprep db init          - Create database tables
    lexprep worker run       - Run the job worker until interrupted
    lexprep worker once      - Process due jobs, then exit
    lexprep jobs list        - List recent background jobs
    lexprep jobs stats       - Show job statistics
    lexprep jobs retry ID    - Retry a FAILED job
    lexprep jobs cancel ID   - Cancel a PENDING job
    lexprep plan today USER  - Plan a learner's sessions for today

Usage:
    lexprep --help
    lexprep worker run --concurrency 5
    lexprep jobs list --status FAILED --include-old
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from datetime import date
from typing import TypeVar
from uuid import UUID

import typer
from loguru import logger
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from lexprep import __version__
from lexprep.config import get_settings
from lexprep.container import ServiceContainer, build_container
from lexprep.core.errors import LexprepError
from lexprep.core.states import JobStatus, JobType
from lexprep.db.database import dispose_engine, init_db
from lexprep.db.models import utcnow

T = TypeVar("T")

console = Console()

app = typer.Typer(
    help="lexprep CLI: grounded study engine, job worker and admin tools",
    no_args_is_help=True,
)

STATUS_STYLES = {
    JobStatus.PENDING: "yellow",
    JobStatus.PROCESSING: "cyan",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
    JobStatus.CANCELLED: "dim",
}


def configure_logging() -> None:
    """Route loguru to stderr at the configured level, plus an optional rotating file."""
    settings = get_settings()
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)
    if settings.log_file:
        logger.add(settings.log_file, level=settings.log_level, rotation="1 day", retention="14 days")


@app.callback()
def main_callback() -> None:
    """Grounded bar-exam study engine."""
    configure_logging()


def _run(command: Callable[[ServiceContainer], Awaitable[T]]) -> T:
    """Run an async command against a fresh container, disposing the engine afterwards."""

    async def runner() -> T:
        container = build_container()
        try:
            return await command(container)
        finally:
            await dispose_engine()

    try:
        return asyncio.run(runner())
    except LexprepError as e:
        rprint(f"[red]✗[/red] {e.message}")
        raise typer.Exit(code=1)


# ========================================
# Database Commands
# ========================================

db_app = typer.Typer(help="Database management")
app.add_typer(db_app, name="db")


@db_app.command("init")
def db_init() -> None:
    """
    Create database tables from the SQLAlchemy models.

    Safe to run multiple times (idempotent).
    """
    logger.info("Initializing database tables...")

    async def runner() -> None:
        try:
            await init_db()
        finally:
            await dispose_engine()

    asyncio.run(runner())
    rprint("[green]✓[/green] Database initialized!")


# ========================================
# Worker Commands
# ========================================

worker_app = typer.Typer(help="Background job worker")
app.add_typer(worker_app, name="worker")


@worker_app.command("run")
def worker_run(
    concurrency: int = typer.Option(None, "--concurrency", "-c", help="Executors (default from settings)"),
) -> None:
    """Poll the queue and process jobs until interrupted (Ctrl+C)."""

    async def command(container: ServiceContainer) -> None:
        await container.build_worker(concurrency=concurrency).run()

    rprint("[bold]Starting worker[/bold] (Ctrl+C to stop)")
    try:
        _run(command)
    except KeyboardInterrupt:
        rprint("[yellow]Worker stopped[/yellow]")


@worker_app.command("once")
def worker_once(
    max_jobs: int = typer.Option(None, "--max-jobs", "-n", help="Stop after this many jobs"),
) -> None:
    """Process every due job, then exit."""

    async def command(container: ServiceContainer) -> int:
        return await container.build_worker().drain(max_jobs=max_jobs)

    processed = _run(command)
    rprint(f"[green]✓[/green] Processed {processed} job(s)")


# ========================================
# Job Admin Commands
# ========================================

jobs_app = typer.Typer(help="Inspect and manage background jobs")
app.add_typer(jobs_app, name="jobs")


@jobs_app.command("list")
def jobs_list(
    status: JobStatus = typer.Option(None, "--status", "-s", help="Filter by status"),
    job_type: JobType = typer.Option(None, "--type", "-t", help="Filter by job type"),
    include_old: bool = typer.Option(False, "--include-old", help="Include jobs outside the stats window"),
    limit: int = typer.Option(20, "--limit", "-l", help="Maximum jobs to show"),
) -> None:
    """List background jobs, newest first."""

    async def command(container: ServiceContainer):
        since = None if include_old else utcnow() - container.stats_window
        return await container.queue.list_jobs(
            status=status,
            job_type=job_type,
            since=since,
            limit=min(limit, container.settings.job_list_max_limit),
        )

    jobs = _run(command)
    if not jobs:
        rprint("[dim]No jobs found[/dim]")
        return

    table = Table(title="Background Jobs", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Status")
    table.add_column("Pri", justify="right")
    table.add_column("Attempts", justify="right")
    table.add_column("Created")
    table.add_column("Last Error", style="red")

    for job in jobs:
        style = STATUS_STYLES.get(job.status, "white")
        table.add_row(
            str(job.id)[:8],
            job.job_type.value,
            f"[{style}]{job.status.value}[/{style}]",
            str(job.priority),
            f"{job.attempts}/{job.max_attempts}",
            job.created_at.strftime("%Y-%m-%d %H:%M"),
            (job.last_error or "")[:60],
        )
    console.print(table)


@jobs_app.command("stats")
def jobs_stats() -> None:
    """Show job counts by status and type, plus recent failures."""

    async def command(container: ServiceContainer):
        return await container.queue.stats(
            window=container.stats_window,
            failure_window=container.failure_window,
        )

    stats = _run(command)
    settings = get_settings()

    table = Table(title=f"Jobs (last {settings.job_stats_window_hours}h)", show_header=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right", style="green")
    table.add_row("Total", str(stats.total))
    for status, count in sorted(stats.by_status.items()):
        table.add_row(f"Status: {status}", str(count))
    for job_type, count in sorted(stats.by_type.items()):
        table.add_row(f"Type: {job_type}", str(count))
    table.add_row(
        f"Failures (last {settings.job_failure_window_hours}h)",
        f"[red]{stats.recent_failures}[/red]" if stats.recent_failures else "0",
    )
    console.print(table)


@jobs_app.command("retry")
def jobs_retry(job_id: UUID = typer.Argument(..., help="Job ID")) -> None:
    """Move a FAILED job back to PENDING with its attempts reset."""

    async def command(container: ServiceContainer):
        return await container.queue.retry(job_id)

    job = _run(command)
    rprint(f"[green]✓[/green] Job {job.id} is {job.status.value}")


@jobs_app.command("cancel")
def jobs_cancel(job_id: UUID = typer.Argument(..., help="Job ID")) -> None:
    """Cancel a PENDING job. Running jobs cannot be cancelled."""

    async def command(container: ServiceContainer):
        return await container.queue.cancel(job_id)

    job = _run(command)
    rprint(f"[green]✓[/green] Job {job.id} is {job.status.value}")


# ========================================
# Planning Commands
# ========================================

plan_app = typer.Typer(help="Daily study planning")
app.add_typer(plan_app, name="plan")


@plan_app.command("today")
def plan_today(
    user_id: str = typer.Argument(..., help="Learner ID"),
    study_date: str = typer.Option(None, "--date", help="Plan for this date (YYYY-MM-DD)"),
) -> None:
    """Plan a learner's sessions for the day and queue asset generation."""
    try:
        day = date.fromisoformat(study_date) if study_date else None
    except ValueError:
        rprint(f"[red]✗[/red] Invalid date: {study_date}")
        raise typer.Exit(code=1)

    async def command(container: ServiceContainer):
        return await container.planner.plan_daily_sessions(user_id, day)

    plan = _run(command)
    verb = "Planned" if plan.created else "Already planned"
    rprint(
        f"[green]✓[/green] {verb} {len(plan.sessions)} session(s) for {plan.user_id} "
        f"on {plan.study_date} ([cyan]{plan.exam_phase.value}[/cyan] phase)"
    )
    for asset_id, error in plan.failed_assets.items():
        rprint(f"  [red]✗[/red] asset {asset_id}: {error}")


@app.command("version")
def version() -> None:
    """Show version information."""
    rprint(f"[bold]lexprep[/bold] v{__version__}")
    rprint("  Mastery tracking, grounded session assets, durable job queue")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
