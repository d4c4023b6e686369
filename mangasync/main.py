"""
mangasync - CLI Entry Point

Command-line interface for manga catalog synchronization.

Usage:
    # Create the schema
    python -m mangasync.main init-db

    # Run the scheduler daemon
    python -m mangasync.main daemon

    # Run a single operation once
    python -m mangasync.main bulk-load --provider anilist
    python -m mangasync.main discover
    python -m mangasync.main refresh

    # Show status
    python -m mangasync.main status
"""

import asyncio
import logging
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from mangasync.config import settings
from mangasync.sync.orchestrator import OperationResult, SyncOrchestrator
from mangasync.sync.state import Operation, sync_type_for

app = typer.Typer(
    name="mangasync",
    help="Manga catalog ingestion and sync service",
    add_completion=False,
)
console = Console()


def setup_logging(level: str) -> None:
    """Route library logging through rich."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def print_banner() -> None:
    """Print the application banner."""
    console.print(Panel.fit(
        "[bold blue]mangasync[/bold blue]\n"
        "[dim]Rate-limited manga catalog sync[/dim]",
        border_style="blue",
    ))
    console.print()


def print_result(result: OperationResult) -> None:
    """Render an operation result."""
    if result.skipped:
        console.print(
            f"[dim]{result.source} {result.operation}: already completed "
            f"(cursor {result.cursor}), skipped[/dim]"
        )
        return

    style = "green" if result.success else "red"
    table = Table(
        title=f"[{style}]{result.source} {result.operation}[/{style}]",
        show_header=True,
        header_style="bold",
    )
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Status", f"[{style}]{'completed' if result.success else 'failed'}[/{style}]")
    table.add_row("Pages fetched", str(result.pages_fetched))
    table.add_row("Submitted", str(result.submitted))
    table.add_row("Stored", str(result.stored))
    table.add_row("New", str(result.created))
    table.add_row("Changed", str(result.changed))
    table.add_row("Errors", str(len(result.errors)))
    table.add_row("Cursor", result.cursor or "-")
    table.add_row("Duration", f"{result.duration_seconds:.1f}s")
    console.print(table)

    for error in result.errors[:10]:
        console.print(f"  [red]{error}[/red]")
    if len(result.errors) > 10:
        console.print(f"  [dim]... and {len(result.errors) - 10} more[/dim]")


def _resolve_providers(provider: Optional[list[str]]) -> list[str]:
    return provider or list(settings.providers)


async def _run_operation(operation: Operation, providers: list[str]) -> bool:
    """Run one operation once for each provider. True if all succeeded."""
    from mangasync.notifier import create_notifier
    from mangasync.providers import create_provider
    from mangasync.storage import DatabaseStorage

    stop_event = asyncio.Event()
    ok = True
    async with DatabaseStorage() as storage, create_notifier() as notifier:
        for name in providers:
            async with create_provider(name, stop_event) as provider:
                orchestrator = SyncOrchestrator(
                    provider, storage, notifier, stop_event=stop_event
                )
                result = await orchestrator.run(operation)
                print_result(result)
                console.print(f"[dim]{provider.client.stats}[/dim]")
                ok = ok and result.success
    return ok


def _run_once(operation: Operation, provider: Optional[list[str]]) -> None:
    print_banner()
    providers = _resolve_providers(provider)
    console.print(f"[blue]Running {operation.value} for {', '.join(providers)}...[/blue]")
    try:
        ok = asyncio.run(_run_operation(operation, providers))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        raise typer.Exit(130)
    except Exception as e:
        console.print(f"[red]{operation.value} failed: {e}[/red]")
        raise typer.Exit(1)
    if not ok:
        raise typer.Exit(1)


ProviderOption = typer.Option(
    None, "--provider", "-p", help="Provider(s) to run (default: all configured)"
)


@app.command("bulk-load")
def bulk_load(provider: Optional[list[str]] = ProviderOption) -> None:
    """
    Run the initial bulk load once.

    Does nothing for providers whose bulk load already completed; use
    'reset-state bulk-load' to run it again.
    """
    _run_once(Operation.BULK_LOAD, provider)


@app.command()
def discover(provider: Optional[list[str]] = ProviderOption) -> None:
    """Run one discovery poll (items updated since the last poll)."""
    _run_once(Operation.DISCOVERY_POLL, provider)


@app.command()
def refresh(provider: Optional[list[str]] = ProviderOption) -> None:
    """Run one refresh poll (re-check stale items for changes)."""
    _run_once(Operation.REFRESH_POLL, provider)


@app.command()
def status() -> None:
    """
    Show sync state and database statistics.

    One row per operation type plus item counts per provider.
    """
    print_banner()

    from mangasync.storage import DatabaseStorage

    async def run_status() -> None:
        try:
            async with DatabaseStorage() as storage:
                states = await storage.list_sync_states()
                counts = {name: await storage.count_items(name) for name in settings.providers}
        except Exception as e:
            console.print(f"[red]Could not connect to database: {e}[/red]")
            raise typer.Exit(1)

        table = Table(show_header=True, header_style="bold")
        table.add_column("Operation", style="cyan")
        table.add_column("Status")
        table.add_column("Last run")
        table.add_column("Last success")
        table.add_column("Cursor")
        table.add_column("Last error", style="red")

        status_styles = {
            "completed": "green",
            "running": "yellow",
            "failed": "red",
        }
        for state in states:
            style = status_styles.get(state.status.value, "white")
            table.add_row(
                state.sync_type,
                f"[{style}]{state.status.value}[/{style}]",
                state.last_run_at.strftime("%Y-%m-%d %H:%M:%S") if state.last_run_at else "-",
                state.last_success_at.strftime("%Y-%m-%d %H:%M:%S")
                if state.last_success_at
                else "-",
                state.cursor or "-",
                (state.last_error or "")[:60],
            )

        console.print("[bold]Sync State:[/bold]")
        if states:
            console.print(table)
        else:
            console.print("[dim]No operation has run yet[/dim]")
        console.print()

        console.print("[bold]Catalog:[/bold]")
        for name, count in counts.items():
            console.print(f"  {name}: {count:,} items")

    console.print("[bold]Configuration:[/bold]")
    db = settings.database_url
    console.print(f"  Database: {db.split('@')[-1] if '@' in db else db}")
    console.print(f"  Providers: {', '.join(settings.providers)}")
    console.print(f"  Notifier: {settings.notifier_backend}")
    console.print()

    asyncio.run(run_status())


@app.command("reset-state")
def reset_state(
    operation: Operation = typer.Argument(..., help="Operation type to reset"),
    provider: Optional[list[str]] = ProviderOption,
) -> None:
    """
    Reset an operation's sync state to not-started.

    Resetting bulk-load makes the next tick run the initial import again.
    """
    from mangasync.storage import DatabaseStorage

    async def run_reset() -> None:
        async with DatabaseStorage() as storage:
            for name in _resolve_providers(provider):
                sync_type = sync_type_for(name, operation)
                if await storage.reset_sync_state(sync_type):
                    console.print(f"[green]Reset {sync_type}[/green]")
                else:
                    console.print(f"[dim]{sync_type} has no state, nothing to reset[/dim]")

    asyncio.run(run_reset())


@app.command("init-db")
def init_db() -> None:
    """
    Initialize the database schema.

    Creates all required tables if they don't exist.
    """
    print_banner()
    console.print("[blue]Initializing database schema...[/blue]")

    from mangasync.storage import DatabaseStorage

    async def run_init() -> None:
        async with DatabaseStorage():
            console.print("[green]Database schema initialized successfully![/green]")

    try:
        asyncio.run(run_init())
    except Exception as e:
        console.print(f"[red]Failed to initialize database: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def daemon(
    provider: Optional[list[str]] = ProviderOption,
    metrics_port: Optional[int] = typer.Option(
        None, "--metrics-port", help="Port for Prometheus metrics server"
    ),
) -> None:
    """
    Start the sync scheduler daemon.

    Runs continuously, performing per provider:
    - Bulk load at start and every bulk_load_interval_minutes (until completed)
    - Discovery poll every discovery_interval_hours
    - Refresh poll every refresh_interval_hours
    - Exposes Prometheus metrics on /metrics endpoint

    Use Ctrl+C to stop the daemon gracefully.
    """
    print_banner()

    providers = _resolve_providers(provider)
    port = metrics_port or (settings.metrics_port if settings.metrics_enabled else None)

    console.print("[bold]Starting Sync Daemon[/bold]")
    console.print(f"  Providers: {', '.join(providers)}")
    console.print(f"  Workers: {settings.worker_count}")
    console.print(f"  Notifier: {settings.notifier_backend}")
    if port:
        console.print(f"  Metrics server: http://0.0.0.0:{port}/metrics")
    console.print()

    from mangasync.scheduler import run_scheduler

    try:
        asyncio.run(run_scheduler(providers=providers, metrics_port=port))
    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped by user[/yellow]")
        raise typer.Exit(130)


@app.command("metrics")
def show_metrics() -> None:
    """
    Show current metrics (for debugging without Prometheus).

    Displays in-memory metrics including HTTP request counts,
    item sync counts, and error rates.
    """
    print_banner()

    from mangasync.metrics import metrics

    console.print("[bold]Current Metrics:[/bold]")
    console.print()

    data = metrics.get_simple_metrics()

    table = Table(show_header=True, header_style="bold")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right", style="green")

    table.add_row("HTTP Requests", f"{data['http_requests_total']:,}")
    table.add_row("HTTP Errors", f"{data['http_errors_total']:,}")
    table.add_row("HTTP Retries", f"{data['http_retries_total']:,}")
    table.add_row("Avg Request Duration", f"{data['http_avg_duration_seconds']:.3f}s")
    table.add_row("Items Synced (Total)", f"{data['items_synced_total']:,}")
    table.add_row("Operation Runs", f"{data['operation_runs_total']:,}")
    table.add_row("Operation Failures", f"{data['operation_failures_total']:,}")
    table.add_row("Active Operations", f"{data['active_operations']}")
    table.add_row("Failed Tasks", f"{data['tasks_failed_total']:,}")
    table.add_row("Dropped Tasks", f"{data['tasks_dropped_total']:,}")
    table.add_row("Dropped Notifications", f"{data['notifications_dropped_total']:,}")

    console.print(table)

    if data["items_by_action"]:
        console.print()
        console.print("[bold]Items by Action:[/bold]")
        for action, count in sorted(data["items_by_action"].items()):
            console.print(f"  {action}: {count:,}")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", "-l", help="Log level (default from settings)"
    ),
) -> None:
    """
    mangasync - Manga catalog ingestion and sync service.

    Pulls catalog data from AniList and MangaDex into a local database
    and keeps it fresh with periodic discovery and refresh polls.

    Use 'mangasync COMMAND --help' for more information on a command.
    """
    setup_logging(log_level or settings.log_level)


if __name__ == "__main__":
    app()
