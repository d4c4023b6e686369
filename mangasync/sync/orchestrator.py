"""
Sync Orchestrator

Runs the three polling operations of one provider:
- Bulk load: one-time initial import of the top N items
- Discovery poll: items created or updated since the last successful poll
- Refresh poll: re-check tracked fields of stale stored items

Pages are fetched sequentially through the provider's rate-limited client;
the items of a page are stored concurrently by a bounded worker pool.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any, AsyncIterator, Awaitable, Callable

from mangasync.config import settings
from mangasync.errors import (
    Cancelled,
    MissingRequiredField,
    PermanentAPIError,
    PersistenceError,
    SyncError,
)
from mangasync.metrics import metrics
from mangasync.models import CanonicalItem, StoredItem, SyncStatus
from mangasync.notifier import Notifier
from mangasync.providers.base import CatalogProvider, Page
from mangasync.storage import DatabaseStorage
from mangasync.sync.pool import WorkerPool
from mangasync.sync.state import Operation, SyncStateTracker, sync_type_for

logger = logging.getLogger(__name__)

# Consecutive pages failing with a permanent error before the walk gives up
MAX_CONSECUTIVE_PAGE_ERRORS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OperationResult:
    """Result of one operation run."""

    source: str
    operation: str
    success: bool = False
    skipped: bool = False
    pages_fetched: int = 0
    submitted: int = 0
    stored: int = 0
    created: int = 0
    changed: int = 0
    errors: list[str] = field(default_factory=list)
    cursor: str | None = None
    duration_seconds: float = 0.0


def tracked_changes(stored: StoredItem, current: CanonicalItem) -> dict[str, tuple[Any, Any]]:
    """
    Compare the tracked fields of a stored item against fresh provider data.

    Returns ``{field: (old, new)}`` for every changed field. A provider value
    of None for chapter count or rating means unknown and is never a change.
    """
    changes: dict[str, tuple[Any, Any]] = {}

    if current.chapter_count is not None and current.chapter_count != stored.chapter_count:
        changes["chapter_count"] = (stored.chapter_count, current.chapter_count)

    if current.status != stored.status:
        changes["status"] = (stored.status, current.status)

    if current.rating is not None and (
        stored.rating is None or not math.isclose(current.rating, stored.rating, abs_tol=1e-6)
    ):
        changes["rating"] = (stored.rating, current.rating)

    return changes


class SyncOrchestrator:
    """
    Orchestrates bulk load, discovery and refresh for one provider.

    The provider, storage and notifier must already be open; the
    orchestrator only borrows them.
    """

    def __init__(
        self,
        provider: CatalogProvider,
        storage: DatabaseStorage,
        notifier: Notifier,
        stop_event: asyncio.Event | None = None,
        worker_count: int | None = None,
        page_size: int | None = None,
        initial_load_target: int | None = None,
        discovery_lookback_hours: float | None = None,
        refresh_staleness_hours: float | None = None,
        refresh_batch_limit: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.provider = provider
        self.storage = storage
        self.notifier = notifier
        self.stop_event = stop_event or asyncio.Event()

        self.worker_count = worker_count if worker_count is not None else settings.worker_count
        self.page_size = provider.clamp_page_size(
            page_size if page_size is not None else settings.page_size
        )
        self.initial_load_target = (
            initial_load_target if initial_load_target is not None else settings.initial_load_target
        )
        self.discovery_lookback = timedelta(
            hours=discovery_lookback_hours
            if discovery_lookback_hours is not None
            else settings.discovery_lookback_hours
        )
        self.refresh_staleness = timedelta(
            hours=refresh_staleness_hours
            if refresh_staleness_hours is not None
            else settings.refresh_staleness_hours
        )
        self.refresh_batch_limit = (
            refresh_batch_limit if refresh_batch_limit is not None else settings.refresh_batch_limit
        )
        self._clock = clock

    @property
    def source(self) -> str:
        return self.provider.name

    async def run(self, operation: Operation | str) -> OperationResult:
        """Run one operation by name."""
        operation = Operation(operation)
        if operation is Operation.BULK_LOAD:
            return await self.bulk_load()
        if operation is Operation.DISCOVERY_POLL:
            return await self.discovery_poll()
        return await self.refresh_poll()

    # ========== Operations ==========

    async def bulk_load(self) -> OperationResult:
        """
        Initial import of the top ``initial_load_target`` items.

        A no-op once a previous run completed; only a manual state reset
        enables it again.
        """
        tracker = self._tracker(Operation.BULK_LOAD)
        state = await tracker.load()
        if state.status == SyncStatus.COMPLETED:
            logger.info(
                "[%s] Bulk load already completed (cursor=%s), skipping",
                self.source,
                state.cursor,
            )
            return OperationResult(
                source=self.source,
                operation=Operation.BULK_LOAD.value,
                success=True,
                skipped=True,
                cursor=state.cursor,
            )
        return await self._execute(tracker, self._bulk_load)

    async def discovery_poll(self) -> OperationResult:
        """Fetch items updated since the last successful poll."""
        tracker = self._tracker(Operation.DISCOVERY_POLL)
        await tracker.load()
        return await self._execute(tracker, self._discovery_poll)

    async def refresh_poll(self) -> OperationResult:
        """Re-check tracked fields of stored items not checked recently."""
        tracker = self._tracker(Operation.REFRESH_POLL)
        await tracker.load()
        return await self._execute(tracker, self._refresh_poll)

    # ========== Operation bodies ==========

    async def _bulk_load(self, tracker: SyncStateTracker, result: OperationResult) -> str:
        target = self.initial_load_target
        logger.info(
            "[%s] Starting bulk load: target=%d, page size=%d",
            self.source,
            target,
            self.page_size,
        )

        page_number = 0
        async with self._pool() as pool:
            async for page in self._walk(result, self.provider.fetch_popular):
                page_number = page.number
                if not page.items:
                    break

                remaining = target - result.submitted
                for item in self._extract_all(page.items[:remaining], result):
                    await self._submit(pool, partial(self._store_item, item, result), result)

                logger.info(
                    "[%s] Page %d: %d/%d items submitted",
                    self.source,
                    page.number,
                    result.submitted,
                    target,
                )
                if result.submitted >= target or not page.has_next:
                    break

        return str(page_number)

    async def _discovery_poll(self, tracker: SyncStateTracker, result: OperationResult) -> str:
        since = self._discovery_since(tracker.state.cursor)
        logger.info("[%s] Discovering items updated since %s", self.source, since.isoformat())

        fetch = partial(self.provider.fetch_recently_updated, since)
        async with self._pool() as pool:
            async for page in self._walk(result, fetch):
                fresh = [
                    item
                    for item in self._extract_all(page.items, result)
                    if item.source_updated_at is None or item.source_updated_at > since
                ]
                if not fresh:
                    break

                for item in fresh:
                    await self._submit(pool, partial(self._store_item, item, result), result)

                if not page.has_next:
                    break

        return str(int(self._clock().timestamp()))

    async def _refresh_poll(self, tracker: SyncStateTracker, result: OperationResult) -> str:
        threshold = self._clock() - self.refresh_staleness
        stale = await self.storage.find_stale(self.source, threshold, self.refresh_batch_limit)
        if not stale:
            logger.info("[%s] No items need a refresh check", self.source)
            return self._clock().isoformat()

        logger.info("[%s] Checking %d items for updates", self.source, len(stale))

        fatal: list[SyncError] = []
        async with self._pool() as pool:
            for stored in stale:
                if fatal:
                    break
                await self._submit(pool, partial(self._refresh_item, stored, result, fatal), result)

        if fatal:
            raise fatal[0]
        return self._clock().isoformat()

    # ========== Item tasks ==========

    async def _store_item(self, item: CanonicalItem, result: OperationResult) -> None:
        try:
            outcome = await self.storage.upsert_item(item)
        except PersistenceError as e:
            logger.error("[%s] %s", self.source, e)
            result.errors.append(str(e))
            return

        result.stored += 1
        if outcome.created:
            result.created += 1
            metrics.record_item_synced(self.source, "created")
            self.notifier.notify_new_item(item.source, item.external_id, item.title)
        else:
            metrics.record_item_synced(self.source, "updated")

    async def _refresh_item(
        self,
        stored: StoredItem,
        result: OperationResult,
        fatal: list[SyncError],
    ) -> None:
        checked_at = self._clock()
        try:
            current = self.provider.extract(await self.provider.fetch_item(stored.external_id))
        except (PermanentAPIError, MissingRequiredField) as e:
            logger.warning("[%s] Refresh of %s failed: %s", self.source, stored.external_id, e)
            result.errors.append(f"{stored.external_id}: {e}")
            await self.storage.apply_refresh(self.source, stored.external_id, {}, checked_at)
            return
        except SyncError as e:
            # Transient errors after retries and cancellation fail the run
            fatal.append(e)
            return

        changes = tracked_changes(stored, current)
        try:
            await self.storage.apply_refresh(
                self.source,
                stored.external_id,
                {name: new for name, (_, new) in changes.items()},
                checked_at,
            )
        except PersistenceError as e:
            logger.error("[%s] %s", self.source, e)
            result.errors.append(str(e))
            return

        result.stored += 1
        if not changes:
            metrics.record_item_synced(self.source, "unchanged")
            return

        result.changed += 1
        metrics.record_item_synced(self.source, "refreshed")
        for name, (old, new) in changes.items():
            logger.info("[%s] %s: %s %s -> %s", self.source, stored.title, name, old, new)
            self.notifier.notify_field_change(
                self.source, stored.external_id, stored.title, name, old, new
            )

    # ========== Helpers ==========

    def _tracker(self, operation: Operation) -> SyncStateTracker:
        return SyncStateTracker(
            self.storage, sync_type_for(self.source, operation), clock=self._clock
        )

    def _pool(self) -> WorkerPool:
        return WorkerPool(
            workers=self.worker_count,
            name=f"{self.source}-pool",
            stop_event=self.stop_event,
        )

    def _check_stop(self) -> None:
        if self.stop_event.is_set():
            raise Cancelled(f"[{self.source}] Stop requested")

    def _discovery_since(self, cursor: str | None) -> datetime:
        if cursor:
            try:
                return datetime.fromtimestamp(int(cursor), tz=timezone.utc)
            except ValueError:
                logger.warning(
                    "[%s] Ignoring malformed discovery cursor %r", self.source, cursor
                )
        return self._clock() - self.discovery_lookback

    def _extract_all(
        self,
        raws: list[dict[str, Any]],
        result: OperationResult,
    ) -> list[CanonicalItem]:
        items = []
        for raw in raws:
            try:
                items.append(self.provider.extract(raw))
            except MissingRequiredField as e:
                logger.warning("[%s] Skipping item: %s", self.source, e)
                result.errors.append(str(e))
        return items

    async def _submit(
        self,
        pool: WorkerPool,
        task: Callable[[], Awaitable[None]],
        result: OperationResult,
    ) -> None:
        self._check_stop()
        if not await pool.submit(task):
            raise Cancelled(f"[{self.source}] Worker pool cancelled")
        result.submitted += 1

    async def _walk(
        self,
        result: OperationResult,
        fetch: Callable[[int, int], Awaitable[Page]],
    ) -> AsyncIterator[Page]:
        """
        Yield pages 1, 2, ... until the caller stops iterating.

        A page failing with PermanentAPIError is skipped; on the first page,
        or after several failing pages in a row, the error propagates.
        Provider exhaustion (no next page after a skipped page) also ends it.
        """
        page_number = 0
        consecutive_errors = 0
        while True:
            self._check_stop()
            page_number += 1
            try:
                page = await fetch(page_number, self.page_size)
            except PermanentAPIError as e:
                consecutive_errors += 1
                if page_number == 1 or consecutive_errors >= MAX_CONSECUTIVE_PAGE_ERRORS:
                    raise
                logger.warning("[%s] Skipping page %d: %s", self.source, page_number, e)
                result.errors.append(f"page {page_number}: {e}")
                continue

            consecutive_errors = 0
            result.pages_fetched += 1
            yield page

    async def _execute(
        self,
        tracker: SyncStateTracker,
        body: Callable[[SyncStateTracker, OperationResult], Awaitable[str]],
    ) -> OperationResult:
        operation = tracker.sync_type.split(":", 1)[1]
        result = OperationResult(source=self.source, operation=operation)
        start = time.time()

        await tracker.begin()
        try:
            async with metrics.track_operation(self.source, operation):
                cursor = await body(tracker, result)
        except asyncio.CancelledError:
            logger.info("[%s] %s interrupted", self.source, operation)
            await tracker.fail("Task cancelled")
            raise
        except Cancelled as e:
            logger.info("[%s] %s cancelled", self.source, operation)
            result.errors.append(str(e))
            await tracker.fail(str(e))
        except SyncError as e:
            result.errors.append(str(e))
            await tracker.fail(str(e))
        except Exception as e:
            logger.exception("[%s] %s crashed", self.source, operation)
            result.errors.append(str(e))
            await tracker.fail(f"{type(e).__name__}: {e}")
        else:
            await tracker.complete(cursor)
            result.success = True
            result.cursor = cursor
        finally:
            result.duration_seconds = time.time() - start

        logger.info(
            "[%s] %s %s: %d stored (%d new, %d changed), %d errors in %.1fs",
            self.source,
            operation,
            "completed" if result.success else "failed",
            result.stored,
            result.created,
            result.changed,
            len(result.errors),
            result.duration_seconds,
        )
        return result
