"""
Tests for the token-bucket rate limiter.
"""

import asyncio

import pytest

from conftest import FakeClock
from mangasync.client.ratelimit import TokenBucket, interruptible_sleep
from mangasync.errors import Cancelled


class TestTokenBucketInit:
    """Tests for TokenBucket construction."""

    def test_starts_full(self, clock: FakeClock) -> None:
        """Test a new bucket holds ``burst`` tokens."""
        bucket = TokenBucket(rate=1.0, burst=5, clock=clock, sleep=clock.sleep)

        assert bucket.tokens == 5

    def test_rejects_bad_rate(self) -> None:
        """Test rate must be positive."""
        with pytest.raises(ValueError):
            TokenBucket(rate=0, burst=5)

    def test_rejects_bad_burst(self) -> None:
        """Test burst must be at least one."""
        with pytest.raises(ValueError):
            TokenBucket(rate=1.0, burst=0)


class TestTryAcquire:
    """Tests for non-blocking acquisition."""

    def test_burst_then_empty(self, clock: FakeClock) -> None:
        """Test exactly ``burst`` tokens are available up front."""
        bucket = TokenBucket(rate=1.0, burst=3, clock=clock, sleep=clock.sleep)

        assert [bucket.try_acquire() for _ in range(4)] == [True, True, True, False]

    def test_refills_over_time(self, clock: FakeClock) -> None:
        """Test tokens come back at ``rate`` per second."""
        bucket = TokenBucket(rate=2.0, burst=2, clock=clock, sleep=clock.sleep)
        bucket.try_acquire()
        bucket.try_acquire()

        clock.now += 0.5

        assert bucket.try_acquire() is True
        assert bucket.try_acquire() is False

    def test_refill_capped_at_burst(self, clock: FakeClock) -> None:
        """Test a long idle period never exceeds burst."""
        bucket = TokenBucket(rate=10.0, burst=3, clock=clock, sleep=clock.sleep)

        clock.now += 3600

        assert bucket.tokens == 3


class TestAcquire:
    """Tests for blocking acquisition."""

    @pytest.mark.asyncio
    async def test_no_wait_while_tokens_left(self, clock: FakeClock) -> None:
        """Test acquiring within the burst never sleeps."""
        bucket = TokenBucket(rate=1.0, burst=5, clock=clock, sleep=clock.sleep)

        for _ in range(5):
            await bucket.acquire()

        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_waits_for_refill(self, clock: FakeClock) -> None:
        """Test an empty bucket waits roughly 1/rate."""
        bucket = TokenBucket(rate=4.0, burst=1, clock=clock, sleep=clock.sleep)
        await bucket.acquire()

        await bucket.acquire()

        assert sum(clock.sleeps) == pytest.approx(0.25)

    @pytest.mark.asyncio
    async def test_at_most_burst_plus_rate_per_second(self, clock: FakeClock) -> None:
        """Test no rolling one-second window sees more than B + R grants."""
        rate, burst = 2.0, 5
        bucket = TokenBucket(rate=rate, burst=burst, clock=clock, sleep=clock.sleep)

        grants = []
        for _ in range(40):
            await bucket.acquire()
            grants.append(clock.now)

        for start in grants:
            in_window = [t for t in grants if start <= t < start + 1.0]
            assert len(in_window) <= burst + rate

    @pytest.mark.asyncio
    async def test_sustained_rate(self, clock: FakeClock) -> None:
        """Test long-run throughput converges to the rate."""
        bucket = TokenBucket(rate=5.0, burst=1, clock=clock, sleep=clock.sleep)
        start = clock.now

        for _ in range(51):
            await bucket.acquire()

        assert clock.now - start == pytest.approx(10.0, rel=0.01)

    @pytest.mark.asyncio
    async def test_cancelled_while_waiting(self) -> None:
        """Test a stop event interrupts a limiter wait."""
        bucket = TokenBucket(rate=0.01, burst=1)
        stop = asyncio.Event()
        await bucket.acquire(stop)

        waiter = asyncio.create_task(bucket.acquire(stop))
        await asyncio.sleep(0.01)
        stop.set()

        with pytest.raises(Cancelled):
            await asyncio.wait_for(waiter, timeout=1.0)

    @pytest.mark.asyncio
    async def test_cancelled_before_waiting(self, clock: FakeClock) -> None:
        """Test an already-set stop event fails fast."""
        bucket = TokenBucket(rate=1.0, burst=1, clock=clock, sleep=clock.sleep)
        stop = asyncio.Event()
        stop.set()

        with pytest.raises(Cancelled):
            await bucket.acquire(stop)


class TestInterruptibleSleep:
    """Tests for interruptible_sleep."""

    @pytest.mark.asyncio
    async def test_sleeps_without_event(self, clock: FakeClock) -> None:
        """Test plain sleep when no stop event is given."""
        await interruptible_sleep(3.0, None, clock.sleep)

        assert clock.sleeps == [3.0]

    @pytest.mark.asyncio
    async def test_raises_when_set(self) -> None:
        """Test a set stop event raises immediately."""
        stop = asyncio.Event()
        stop.set()

        with pytest.raises(Cancelled):
            await interruptible_sleep(60.0, stop)

    @pytest.mark.asyncio
    async def test_interrupted_mid_sleep(self) -> None:
        """Test setting the event ends a long sleep early."""
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, stop.set)

        with pytest.raises(Cancelled):
            await asyncio.wait_for(interruptible_sleep(60.0, stop), timeout=1.0)
