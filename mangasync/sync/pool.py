"""
Bounded worker pool.

W asyncio workers consume a queue of capacity 2W. ``submit`` blocks while the
queue is full, which throttles producers to the processing rate. Once the
pool is cancelled (``shutdown()`` or the parent stop event) queued and newly
submitted tasks are dropped, never retried.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from mangasync.config import settings
from mangasync.metrics import metrics

logger = logging.getLogger(__name__)

Task = Callable[[], Awaitable[Any]]

_STOP = object()


@dataclass
class PoolStats:
    """Task counters of one pool."""

    submitted: int = 0
    completed: int = 0
    failed: int = 0
    dropped: int = 0

    def __str__(self) -> str:
        return (
            f"Submitted: {self.submitted} | "
            f"Completed: {self.completed} | "
            f"Failed: {self.failed} | "
            f"Dropped: {self.dropped}"
        )


class WorkerPool:
    """
    Fixed-size pool of asyncio workers.

    Usage:
        async with WorkerPool(workers=10, stop_event=stop) as pool:
            for item in items:
                await pool.submit(partial(process, item))
        # leaving the block waits for every queued task
    """

    def __init__(
        self,
        workers: int | None = None,
        name: str = "pool",
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self.workers = workers if workers is not None else settings.worker_count
        if self.workers < 1:
            raise ValueError("Worker count must be at least 1")

        self.name = name
        self.stats = PoolStats()

        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=2 * self.workers)
        self._cancel = asyncio.Event()
        self._parent = stop_event
        self._closed = False
        self._tasks: list[asyncio.Task[None]] = []
        self._watcher: asyncio.Task[None] | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Spawn the workers. Called implicitly by ``submit`` and ``wait``."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"{self.name}-worker-{i}")
            for i in range(self.workers)
        ]
        if self._parent is not None:
            self._watcher = asyncio.create_task(self._watch_parent())

    async def __aenter__(self) -> "WorkerPool":
        self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if exc_type is not None:
            await self.shutdown()
        else:
            await self.wait()

    async def submit(self, task: Task) -> bool:
        """
        Queue a task, blocking while the queue is full.

        Returns:
            False if the task was dropped because the pool is cancelled.

        Raises:
            RuntimeError: The pool was already closed by ``wait()``.
        """
        if self._closed:
            raise RuntimeError(f"Worker pool {self.name!r} is closed")
        self.start()

        if self.cancelled:
            self._drop("pool cancelled before submit")
            return False

        try:
            self._queue.put_nowait(task)
        except asyncio.QueueFull:
            if not await self._put_or_cancel(task):
                self._drop("pool cancelled while queue was full")
                return False

        self.stats.submitted += 1
        return True

    async def _put_or_cancel(self, task: Task) -> bool:
        put = asyncio.create_task(self._queue.put(task))
        cancelled = asyncio.create_task(self._cancel.wait())
        try:
            await asyncio.wait({put, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
        if put.done() and not put.cancelled():
            return True
        put.cancel()
        return False

    async def wait(self) -> None:
        """Close the pool and wait until every queued task has finished."""
        self.start()
        if not self._closed:
            self._closed = True
            for _ in self._tasks:
                await self._queue.put(_STOP)

        await asyncio.gather(*self._tasks)

        if self._watcher is not None:
            self._watcher.cancel()
            self._watcher = None

        logger.debug("[%s] drained: %s", self.name, self.stats)

    async def shutdown(self) -> None:
        """Cancel immediately: running tasks finish, queued ones are dropped."""
        self._cancel.set()
        await self.wait()

    async def _watch_parent(self) -> None:
        assert self._parent is not None
        await self._parent.wait()
        self._cancel.set()

    async def _worker(self, index: int) -> None:
        while True:
            task = await self._queue.get()
            try:
                if task is _STOP:
                    return
                if self.cancelled:
                    self._drop("pool cancelled before task started")
                    continue
                await self._run(task)
            finally:
                self._queue.task_done()

    async def _run(self, task: Task) -> None:
        try:
            await task()
        except Exception as e:
            self.stats.failed += 1
            metrics.record_task_failed()
            logger.error("[%s] task failed: %s", self.name, e, exc_info=True)
        else:
            self.stats.completed += 1

    def _drop(self, reason: str) -> None:
        self.stats.dropped += 1
        metrics.record_task_dropped()
        logger.warning("[%s] task dropped: %s", self.name, reason)
