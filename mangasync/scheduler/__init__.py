"""
Scheduler module - Automated catalog sync.

Each provider gets three independent fixed-interval APScheduler jobs:
- bulk load: immediately at start, then every ``bulk_load_interval_minutes``
  (a no-op once it completed)
- discovery poll: every ``discovery_interval_hours``
- refresh poll: every ``refresh_interval_hours``

``max_instances=1`` keeps a tick from overlapping a still-running instance
of the same job. All jobs share one stop event.
"""

import asyncio
import logging
import signal
from contextlib import AsyncExitStack
from datetime import datetime, timezone
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from rich.console import Console
from rich.panel import Panel

from mangasync.config import settings
from mangasync.notifier import create_notifier
from mangasync.providers import create_provider
from mangasync.storage import DatabaseStorage
from mangasync.sync.orchestrator import OperationResult, SyncOrchestrator
from mangasync.sync.state import Operation

logger = logging.getLogger(__name__)
console = Console()


class SyncScheduler:
    """
    Scheduler for automated catalog synchronization.

    Runs until the shared stop event is set, then waits for running jobs
    (which observe the same event) to wind down.
    """

    def __init__(
        self,
        orchestrators: list[SyncOrchestrator],
        stop_event: asyncio.Event,
        bulk_load_interval_minutes: float | None = None,
        discovery_interval_hours: float | None = None,
        refresh_interval_hours: float | None = None,
    ) -> None:
        """
        Initialize the sync scheduler.

        Args:
            orchestrators: One orchestrator per enabled provider.
            stop_event: Shared stop event; setting it ends every job.
            bulk_load_interval_minutes: Minutes between bulk load ticks.
            discovery_interval_hours: Hours between discovery polls.
            refresh_interval_hours: Hours between refresh polls.
        """
        self.orchestrators = orchestrators
        self.stop_event = stop_event
        self.bulk_load_interval = (
            bulk_load_interval_minutes
            if bulk_load_interval_minutes is not None
            else settings.bulk_load_interval_minutes
        )
        self.discovery_interval = (
            discovery_interval_hours
            if discovery_interval_hours is not None
            else settings.discovery_interval_hours
        )
        self.refresh_interval = (
            refresh_interval_hours
            if refresh_interval_hours is not None
            else settings.refresh_interval_hours
        )

        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._active: set[asyncio.Task[Any]] = set()
        self._last_results: dict[str, OperationResult] = {}

    def register_jobs(self) -> None:
        """Add the three interval jobs of every orchestrator."""
        now = datetime.now(timezone.utc)
        for orchestrator in self.orchestrators:
            source = orchestrator.source
            self.scheduler.add_job(
                self._run_job,
                trigger=IntervalTrigger(minutes=self.bulk_load_interval),
                args=[orchestrator, Operation.BULK_LOAD],
                id=f"{source}:{Operation.BULK_LOAD.value}",
                name=f"{source} bulk load",
                replace_existing=True,
                max_instances=1,
                next_run_time=now,
            )
            self.scheduler.add_job(
                self._run_job,
                trigger=IntervalTrigger(hours=self.discovery_interval),
                args=[orchestrator, Operation.DISCOVERY_POLL],
                id=f"{source}:{Operation.DISCOVERY_POLL.value}",
                name=f"{source} discovery poll",
                replace_existing=True,
                max_instances=1,
            )
            self.scheduler.add_job(
                self._run_job,
                trigger=IntervalTrigger(hours=self.refresh_interval),
                args=[orchestrator, Operation.REFRESH_POLL],
                id=f"{source}:{Operation.REFRESH_POLL.value}",
                name=f"{source} refresh poll",
                replace_existing=True,
                max_instances=1,
            )

    async def start(self) -> None:
        """Start the scheduler and register jobs."""
        console.print(Panel.fit(
            "[bold green]Starting Sync Scheduler[/bold green]\n"
            f"[dim]Providers: {', '.join(o.source for o in self.orchestrators)}[/dim]\n"
            f"[dim]Bulk load: every {self.bulk_load_interval} minutes[/dim]\n"
            f"[dim]Discovery: every {self.discovery_interval} hours[/dim]\n"
            f"[dim]Refresh: every {self.refresh_interval} hours[/dim]",
            border_style="green",
        ))

        self.register_jobs()
        self.scheduler.start()
        logger.info("Scheduler started with %d jobs", len(self.scheduler.get_jobs()))

    async def run(self) -> None:
        """Start, block until the stop event fires, then stop."""
        await self.start()
        await self.stop_event.wait()
        await self.stop()

    async def stop(self) -> None:
        """Stop the scheduler and wait for running jobs to exit."""
        console.print("[yellow]Stopping scheduler...[/yellow]")
        self.stop_event.set()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        if self._active:
            await asyncio.gather(*self._active, return_exceptions=True)
        console.print("[green]Scheduler stopped[/green]")

    async def _run_job(self, orchestrator: SyncOrchestrator, operation: Operation) -> None:
        """Run one tick of an operation."""
        if self.stop_event.is_set():
            return

        task = asyncio.current_task()
        if task is not None:
            self._active.add(task)
        try:
            result = await orchestrator.run(operation)
            self._last_results[f"{orchestrator.source}:{operation.value}"] = result
        except Exception:
            # State could not be persisted; the next tick tries again
            logger.exception("%s %s failed", orchestrator.source, operation.value)
        finally:
            if task is not None:
                self._active.discard(task)

    def get_status(self) -> dict[str, Any]:
        """Get current scheduler status."""
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": str(job.next_run_time) if job.next_run_time else None,
            })

        return {
            "running": self.scheduler.running,
            "active_jobs": len(self._active),
            "jobs": jobs,
            "last_results": {
                key: {"success": r.success, "stored": r.stored, "errors": len(r.errors)}
                for key, r in self._last_results.items()
            },
        }


async def run_scheduler(
    providers: list[str] | None = None,
    metrics_port: int | None = None,
) -> None:
    """
    Run the sync scheduler until SIGINT/SIGTERM.

    Args:
        providers: Provider names (default from settings).
        metrics_port: Port for the Prometheus metrics server; None disables it
                      unless enabled in settings.
    """
    from mangasync.metrics import metrics

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    port = metrics_port or (settings.metrics_port if settings.metrics_enabled else None)

    async with AsyncExitStack() as stack:
        storage = await stack.enter_async_context(DatabaseStorage())
        notifier = await stack.enter_async_context(create_notifier())

        orchestrators = []
        for name in providers or settings.providers:
            provider = await stack.enter_async_context(create_provider(name, stop_event))
            orchestrators.append(
                SyncOrchestrator(provider, storage, notifier, stop_event=stop_event)
            )

        if port:
            await metrics.start_server(port=port)
            stack.push_async_callback(metrics.stop_server)

        scheduler = SyncScheduler(orchestrators, stop_event)
        await scheduler.run()
