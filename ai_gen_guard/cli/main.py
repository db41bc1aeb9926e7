"""
CLI interface for AI Gen Guard.

Operator access to the spend ledger, rate limit configuration and
generation jobs.
"""

import sqlite3
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ai_gen_guard.config.loader import Settings, default_settings, load_settings
from ai_gen_guard.core.admission import build_controller
from ai_gen_guard.core.budget import BudgetGuard
from ai_gen_guard.core.errors import GuardError
from ai_gen_guard.core.logging_config import configure_logging
from ai_gen_guard.sdk.video_backend import OpenAIVideoBackend
from ai_gen_guard.storage.db import DEFAULT_DB_PATH
from ai_gen_guard.storage.models import GenerationJob, JobStatus
from ai_gen_guard.storage.repository import (
    JobRepository,
    SpendLedgerRepository,
    initialize_schema,
)

app = typer.Typer()
job_app = typer.Typer(help="Inspect and drive generation jobs.")
app.add_typer(job_app, name="job")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to SQLite database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML settings"),
):
    """AI Gen Guard CLI."""
    try:
        settings = load_settings(config) if config else default_settings()
    except Exception as e:
        console.print(f"[red]Error loading config:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    configure_logging(settings.logging.level, settings.logging.format)
    ctx.obj = {"db": db, "settings": settings}

    if ctx.invoked_subcommand is None:
        console.print("AI Gen Guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the AI Gen Guard database."""
    try:
        initialize_schema(ctx.obj["db"])
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context):
    """Show configuration and job counts."""
    settings: Settings = ctx.obj["settings"]
    repository = JobRepository(ctx.obj["db"])

    console.print(f"Media environment: [bold]{settings.media_environment}[/]")
    console.print(f"Monthly budget per user: {_format_currency(settings.budget.monthly_limit_usd)}")

    try:
        counts = {s: len(repository.list_jobs(status=s, limit=10000)) for s in JobStatus}
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            console.print("\n[bold yellow]Database not initialized[/]")
            console.print("Run `ai-gen-guard init` to create it.")
            sys.exit(EXIT_CODE_FAIL)
        raise

    table = Table(title="Generation jobs")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for job_status, count in counts.items():
        table.add_row(job_status.value, str(count))
    console.print(table)


@app.command()
def limits(ctx: typer.Context):
    """Show rate limit categories."""
    settings: Settings = ctx.obj["settings"]

    table = Table(title="Rate limits")
    table.add_column("Category")
    table.add_column("Capacity", justify="right")
    table.add_column("Refill / min", justify="right")
    for name, category in sorted(settings.rate_limits.categories.items()):
        table.add_row(name, f"{category.capacity:g}", f"{category.refill_rate * 60:g}")
    console.print(table)


@app.command()
def budget(
    ctx: typer.Context,
    principal: str = typer.Argument(..., help="User to report on"),
    recent: int = typer.Option(0, "--recent", "-r", help="Also list the N latest ledger rows"),
):
    """Show a user's spend for the current month."""
    settings: Settings = ctx.obj["settings"]
    ledger = SpendLedgerRepository(ctx.obj["db"])
    guard = BudgetGuard(
        ledger,
        monthly_limit_usd=settings.budget.monthly_limit_usd,
        utc_offset_hours=settings.budget.utc_offset_hours,
        spend_cache_ttl_seconds=0,
    )

    try:
        spent = guard.current_spend(principal)
    except Exception as e:
        console.print(f"[red]Error reading ledger:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    limit = settings.budget.monthly_limit_usd
    console.print(f"\n[bold]Budget for {principal}[/bold]")
    console.print("-" * 40)
    console.print(f"Month start: {guard.month_start().isoformat()}")
    console.print(f"Spent: {_format_currency(spent)} / {_format_currency(limit)} ({spent / limit:.1%})")
    console.print(f"Remaining: {_format_currency(max(0.0, limit - spent))}")

    if recent > 0:
        table = Table(title="Recent spend")
        table.add_column("Time")
        table.add_column("Amount", justify="right")
        table.add_column("Operation")
        table.add_column("Model")
        for record in ledger.recent(principal, limit=recent):
            table.add_row(
                record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                _format_currency(record.amount_usd),
                record.operation or "-",
                record.model or "-",
            )
        console.print(table)


@job_app.command("show")
def job_show(ctx: typer.Context, job_id: str = typer.Argument(..., help="Job id")):
    """Show a stored job."""
    job = JobRepository(ctx.obj["db"]).get(job_id)
    if job is None:
        console.print(f"[red]Job not found:[/] {job_id}")
        sys.exit(EXIT_CODE_FAIL)
    _display_job(job)


@job_app.command("poll")
def job_poll(ctx: typer.Context, job_id: str = typer.Argument(..., help="Job id")):
    """Poll a processing job's backend operation once."""
    controller = build_controller(ctx.obj["settings"], ctx.obj["db"], backend=OpenAIVideoBackend())
    try:
        job = controller.poll_job(job_id)
    except GuardError as e:
        console.print(f"[red]Error:[/] {escape(str(e))}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        controller.lifecycle.close()
    _display_job(job)


@job_app.command("retry")
def job_retry(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Job id"),
    principal: str = typer.Option(..., "--principal", "-p", help="Owner of the job"),
):
    """Retry a failed job. Passes the rate and budget gates again."""
    controller = build_controller(ctx.obj["settings"], ctx.obj["db"], backend=OpenAIVideoBackend())
    try:
        result = controller.retry_job(principal, job_id)
    except GuardError as e:
        console.print(f"[red]Error:[/] {escape(str(e))}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        controller.lifecycle.close()

    if result.denied:
        console.print(f"[red]Denied:[/] {result.decision.reason}")
        sys.exit(EXIT_CODE_FAIL)
    _display_job(result.job)
    if result.error:
        console.print(f"[red]Resubmission failed:[/] {escape(result.error)}")
        sys.exit(EXIT_CODE_FAIL)


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


def _display_job(job: GenerationJob):
    colors = {
        JobStatus.PENDING: "yellow",
        JobStatus.PROCESSING: "cyan",
        JobStatus.COMPLETED: "green",
        JobStatus.FAILED: "red",
    }
    console.print(f"\n[bold]Job:[/bold] {job.id}")
    console.print(f"Principal: {job.principal}")
    console.print(f"Status: [{colors[job.status]}]{job.status.value}[/]")
    console.print(f"Retries: {job.retry_count}")
    console.print(f"Started: {job.started_at.isoformat()}")
    if job.completed_at:
        console.print(f"Completed: {job.completed_at.isoformat()}")
    if job.operation_handle:
        console.print(f"Operation: {job.operation_handle}")
    if job.error_message:
        console.print(f"Error: {escape(job.error_message)}")
    if job.output_metadata:
        console.print(f"Output: {escape(str(job.output_metadata))}")


if __name__ == "__main__":
    app()
