"""
Prometheus Metrics Module

Exposes metrics for monitoring the catalog sync engine.

Metrics:
- Counters: requests, retries, items synced, errors, dropped tasks/notifications
- Histograms: request duration, operation duration
- Gauges: active operations

Usage:
    from mangasync.metrics import metrics

    # Record HTTP request
    metrics.record_http_request(source="anilist", status=200, duration=0.5)

    # Track an operation
    async with metrics.track_operation("anilist", "discovery-poll"):
        await run_poll()

    # Start metrics server
    await metrics.start_server(port=9090)
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import aiohttp.web as web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


@dataclass
class SimpleMetrics:
    """In-memory mirror of the main totals, for the CLI."""

    http_requests: int = 0
    http_errors: int = 0
    http_retries: int = 0
    http_total_duration: float = 0.0
    items_synced: dict[str, int] = field(default_factory=dict)
    operation_runs: int = 0
    operation_failures: int = 0
    active_operations: int = 0
    tasks_failed: int = 0
    tasks_dropped: int = 0
    notifications_dropped: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for display."""
        return {
            "http_requests_total": self.http_requests,
            "http_errors_total": self.http_errors,
            "http_retries_total": self.http_retries,
            "http_avg_duration_seconds": (
                self.http_total_duration / max(self.http_requests, 1)
            ),
            "items_synced_total": sum(self.items_synced.values()),
            "items_by_action": self.items_synced,
            "operation_runs_total": self.operation_runs,
            "operation_failures_total": self.operation_failures,
            "active_operations": self.active_operations,
            "tasks_failed_total": self.tasks_failed,
            "tasks_dropped_total": self.tasks_dropped,
            "notifications_dropped_total": self.notifications_dropped,
        }


class MetricsCollector:
    """
    Prometheus metrics collector for the sync engine.

    Every collector lives in its own registry so several instances
    (e.g. in tests) never clash.
    """

    def __init__(self, enabled: bool = True) -> None:
        """
        Initialize metrics collector.

        Args:
            enabled: Whether to collect metrics
        """
        self.enabled = enabled
        self.simple = SimpleMetrics()
        self.registry = CollectorRegistry()
        self._runner: web.AppRunner | None = None

        # HTTP Request metrics
        self.http_requests_total = Counter(
            "mangasync_http_requests_total",
            "Total HTTP requests made",
            ["source", "status"],
            registry=self.registry,
        )

        self.http_request_duration = Histogram(
            "mangasync_http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["source"],
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self.registry,
        )

        self.http_errors_total = Counter(
            "mangasync_http_errors_total",
            "Total HTTP errors",
            ["source", "error_type"],
            registry=self.registry,
        )

        self.http_retries_total = Counter(
            "mangasync_http_retries_total",
            "Total retried HTTP attempts",
            ["source"],
            registry=self.registry,
        )

        # Item sync metrics
        self.items_synced_total = Counter(
            "mangasync_items_synced_total",
            "Total catalog items processed",
            ["source", "action"],
            registry=self.registry,
        )

        # Operation metrics
        self.operation_duration = Histogram(
            "mangasync_operation_duration_seconds",
            "Sync operation duration in seconds",
            ["source", "operation"],
            buckets=(1, 10, 30, 60, 120, 300, 600, 1800, 3600),
            registry=self.registry,
        )

        self.operation_runs_total = Counter(
            "mangasync_operation_runs_total",
            "Total sync operation runs",
            ["source", "operation", "status"],
            registry=self.registry,
        )

        self.active_operations = Gauge(
            "mangasync_active_operations",
            "Number of currently running sync operations",
            registry=self.registry,
        )

        # Worker pool / notifier metrics
        self.tasks_failed_total = Counter(
            "mangasync_pool_tasks_failed_total",
            "Worker pool tasks that raised",
            registry=self.registry,
        )

        self.tasks_dropped_total = Counter(
            "mangasync_pool_tasks_dropped_total",
            "Worker pool tasks dropped after cancellation",
            registry=self.registry,
        )

        self.notifications_dropped_total = Counter(
            "mangasync_notifications_dropped_total",
            "Notifications dropped (queue overflow or send failure)",
            ["reason"],
            registry=self.registry,
        )

    # ========== HTTP Metrics ==========

    def record_http_request(
        self,
        source: str,
        status: int,
        duration: float,
    ) -> None:
        """Record an HTTP request."""
        if not self.enabled:
            return

        self.simple.http_requests += 1
        self.simple.http_total_duration += duration

        self.http_requests_total.labels(source=source, status=str(status)).inc()
        self.http_request_duration.labels(source=source).observe(duration)

    def record_http_error(self, source: str, error_type: str) -> None:
        """Record an HTTP error."""
        if not self.enabled:
            return

        self.simple.http_errors += 1
        self.http_errors_total.labels(source=source, error_type=error_type).inc()

    def record_http_retry(self, source: str) -> None:
        """Record a retried attempt."""
        if not self.enabled:
            return

        self.simple.http_retries += 1
        self.http_retries_total.labels(source=source).inc()

    # ========== Item Metrics ==========

    def record_item_synced(self, source: str, action: str) -> None:
        """Record one processed item (created, updated, refreshed, unchanged)."""
        if not self.enabled:
            return

        self.simple.items_synced[action] = self.simple.items_synced.get(action, 0) + 1
        self.items_synced_total.labels(source=source, action=action).inc()

    # ========== Operation Metrics ==========

    @asynccontextmanager
    async def track_operation(
        self,
        source: str,
        operation: str,
    ) -> AsyncIterator[None]:
        """
        Context manager to track operation duration and status.

        Usage:
            async with metrics.track_operation("anilist", "bulk-load"):
                await do_sync()
        """
        start_time = time.time()
        self.simple.active_operations += 1
        self.simple.operation_runs += 1
        self.active_operations.inc()

        status = "error"
        try:
            yield
            status = "success"
        except asyncio.CancelledError:
            status = "cancelled"
            raise
        except Exception:
            self.simple.operation_failures += 1
            raise
        finally:
            duration = time.time() - start_time
            self.simple.active_operations -= 1
            self.active_operations.dec()
            if self.enabled:
                self.operation_duration.labels(source=source, operation=operation).observe(
                    duration
                )
                self.operation_runs_total.labels(
                    source=source, operation=operation, status=status
                ).inc()

    # ========== Pool / Notifier Metrics ==========

    def record_task_failed(self) -> None:
        if not self.enabled:
            return
        self.simple.tasks_failed += 1
        self.tasks_failed_total.inc()

    def record_task_dropped(self) -> None:
        if not self.enabled:
            return
        self.simple.tasks_dropped += 1
        self.tasks_dropped_total.inc()

    def record_notification_dropped(self, reason: str) -> None:
        if not self.enabled:
            return
        self.simple.notifications_dropped += 1
        self.notifications_dropped_total.labels(reason=reason).inc()

    # ========== Metrics Server ==========

    async def start_server(self, port: int = 9090) -> None:
        """
        Start HTTP server to expose metrics.

        Args:
            port: Port to listen on (default 9090)
        """

        async def metrics_handler(request: web.Request) -> web.Response:
            """Handle /metrics endpoint."""
            output = generate_latest(self.registry)
            return web.Response(
                body=output,
                headers={"Content-Type": CONTENT_TYPE_LATEST},
            )

        async def health_handler(request: web.Request) -> web.Response:
            """Handle /health endpoint."""
            return web.Response(text="OK")

        app = web.Application()
        app.router.add_get("/metrics", metrics_handler)
        app.router.add_get("/health", health_handler)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", port)
        await site.start()

        logger.info("Metrics server started on port %d", port)

    async def stop_server(self) -> None:
        """Stop the metrics HTTP server if it is running."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    def get_simple_metrics(self) -> dict[str, Any]:
        """Get simple metrics as dictionary."""
        return self.simple.to_dict()


# Global metrics instance
metrics = MetricsCollector()
