"""
Tests for the bounded worker pool.
"""

import asyncio

import pytest

from mangasync.sync.pool import PoolStats, WorkerPool


class TestPoolInit:
    """Tests for WorkerPool construction."""

    def test_queue_capacity_is_twice_workers(self) -> None:
        """Test the queue holds 2W tasks."""
        pool = WorkerPool(workers=3)

        assert pool._queue.maxsize == 6

    def test_default_worker_count(self) -> None:
        """Test the configured worker count is used by default."""
        assert WorkerPool().workers == 10

    def test_rejects_zero_workers(self) -> None:
        """Test at least one worker is required."""
        with pytest.raises(ValueError):
            WorkerPool(workers=0)


class TestSubmitAndWait:
    """Tests for normal operation."""

    @pytest.mark.asyncio
    async def test_every_task_runs_exactly_once(self) -> None:
        """Test each submitted task runs once."""
        ran: list[int] = []

        async def task(n: int) -> None:
            await asyncio.sleep(0)
            ran.append(n)

        async with WorkerPool(workers=4) as pool:
            for n in range(50):
                assert await pool.submit(lambda n=n: task(n))

        assert sorted(ran) == list(range(50))
        assert pool.stats.submitted == 50
        assert pool.stats.completed == 50

    @pytest.mark.asyncio
    async def test_submit_blocks_when_full(self) -> None:
        """Test the producer waits while W tasks run and 2W are queued."""
        gate = asyncio.Event()
        started = asyncio.Event()

        async def blocker() -> None:
            started.set()
            await gate.wait()

        async def noop() -> None:
            pass

        pool = WorkerPool(workers=1)
        await pool.submit(blocker)
        await started.wait()
        await pool.submit(noop)
        await pool.submit(noop)

        pending = asyncio.create_task(pool.submit(noop))
        await asyncio.sleep(0.01)
        assert not pending.done()

        gate.set()
        assert await asyncio.wait_for(pending, timeout=1.0) is True
        await pool.wait()
        assert pool.stats.completed == 4

    @pytest.mark.asyncio
    async def test_failing_task_is_isolated(self) -> None:
        """Test one failure does not stop the others."""
        ran: list[int] = []

        async def ok(n: int) -> None:
            ran.append(n)

        async def boom() -> None:
            raise RuntimeError("boom")

        async with WorkerPool(workers=2) as pool:
            await pool.submit(lambda: ok(1))
            await pool.submit(boom)
            await pool.submit(lambda: ok(2))

        assert sorted(ran) == [1, 2]
        assert pool.stats.failed == 1
        assert pool.stats.completed == 2

    @pytest.mark.asyncio
    async def test_submit_after_wait_raises(self) -> None:
        """Test a closed pool rejects new work."""
        pool = WorkerPool(workers=1)
        await pool.wait()

        async def noop() -> None:
            pass

        with pytest.raises(RuntimeError):
            await pool.submit(noop)

    @pytest.mark.asyncio
    async def test_wait_on_idle_pool(self) -> None:
        """Test waiting on a pool that never got work returns."""
        pool = WorkerPool(workers=3)

        await asyncio.wait_for(pool.wait(), timeout=1.0)

        assert pool.closed


class TestCancellation:
    """Tests for shutdown and the parent stop event."""

    @pytest.mark.asyncio
    async def test_shutdown_drops_queued_tasks(self) -> None:
        """Test running tasks finish and queued ones are discarded."""
        gate = asyncio.Event()
        started = asyncio.Event()
        ran: list[str] = []

        async def blocker() -> None:
            started.set()
            await gate.wait()
            ran.append("blocker")

        async def queued() -> None:
            ran.append("queued")

        pool = WorkerPool(workers=1)
        await pool.submit(blocker)
        await started.wait()
        await pool.submit(queued)
        await pool.submit(queued)

        stopping = asyncio.create_task(pool.shutdown())
        await asyncio.sleep(0.01)
        gate.set()
        await asyncio.wait_for(stopping, timeout=1.0)

        assert ran == ["blocker"]
        assert pool.stats.completed == 1
        assert pool.stats.dropped == 2

    @pytest.mark.asyncio
    async def test_submit_after_shutdown_signal_is_dropped(self) -> None:
        """Test the parent stop event turns submits into drops."""
        stop = asyncio.Event()
        pool = WorkerPool(workers=2, stop_event=stop)
        pool.start()
        stop.set()
        await asyncio.sleep(0.01)

        async def noop() -> None:
            pass

        assert await pool.submit(noop) is False
        await pool.wait()
        assert pool.stats.dropped == 1

    @pytest.mark.asyncio
    async def test_blocked_submit_released_by_stop_event(self) -> None:
        """Test a producer blocked on a full queue is released on stop."""
        gate = asyncio.Event()
        started = asyncio.Event()
        stop = asyncio.Event()

        async def blocker() -> None:
            started.set()
            await gate.wait()

        async def noop() -> None:
            pass

        pool = WorkerPool(workers=1, stop_event=stop)
        await pool.submit(blocker)
        await started.wait()
        await pool.submit(noop)
        await pool.submit(noop)

        pending = asyncio.create_task(pool.submit(noop))
        await asyncio.sleep(0.01)
        stop.set()

        assert await asyncio.wait_for(pending, timeout=1.0) is False
        gate.set()
        await pool.wait()
        assert pool.stats.dropped == 3

    @pytest.mark.asyncio
    async def test_exception_in_block_shuts_down(self) -> None:
        """Test leaving the context with an error cancels queued work."""
        gate = asyncio.Event()
        started = asyncio.Event()

        async def blocker() -> None:
            started.set()
            await gate.wait()

        async def noop() -> None:
            pass

        pool = WorkerPool(workers=1)
        with pytest.raises(KeyError):
            async with pool:
                await pool.submit(blocker)
                await started.wait()
                await pool.submit(noop)
                asyncio.get_running_loop().call_later(0.01, gate.set)
                raise KeyError("producer failed")

        assert pool.cancelled
        assert pool.stats.dropped == 1


class TestPoolStats:
    """Tests for PoolStats."""

    def test_str(self) -> None:
        """Test the summary line."""
        stats = PoolStats(submitted=3, completed=2, failed=1)

        assert str(stats) == "Submitted: 3 | Completed: 2 | Failed: 1 | Dropped: 0"
