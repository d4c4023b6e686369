"""
Token-bucket rate limiting.

The bucket starts full with ``burst`` tokens and refills at ``rate`` tokens
per second. Clock and sleep are injectable so the limiter can be driven by a
fake clock in tests.
"""

import asyncio
import time
from typing import Awaitable, Callable

from mangasync.errors import Cancelled

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


async def interruptible_sleep(
    delay: float,
    stop_event: asyncio.Event | None,
    sleep: Sleep = asyncio.sleep,
) -> None:
    """
    Sleep for ``delay`` seconds unless ``stop_event`` fires first.

    Raises:
        Cancelled: If the stop event is (or becomes) set.
    """
    if stop_event is None:
        await sleep(delay)
        return
    if stop_event.is_set():
        raise Cancelled()

    sleeper = asyncio.ensure_future(sleep(delay))
    stopper = asyncio.ensure_future(stop_event.wait())
    try:
        await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for fut in (sleeper, stopper):
            if not fut.done():
                fut.cancel()

    if stop_event.is_set():
        raise Cancelled()


class TokenBucket:
    """
    Token bucket allowing bursts of ``burst`` and a sustained ``rate``/s.

    Over any window of one second at most ``burst + rate`` acquisitions
    succeed.
    """

    def __init__(
        self,
        rate: float,
        burst: int,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")

        self.rate = rate
        self.burst = burst
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(burst)
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    @property
    def tokens(self) -> float:
        """Tokens currently available (after refilling)."""
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._last_refill = now

    def try_acquire(self) -> bool:
        """Take a token without waiting. Returns False if none is available."""
        self._refill()
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return True
        return False

    async def acquire(self, stop_event: asyncio.Event | None = None) -> None:
        """
        Wait until a token is available and take it.

        Waiters are served one at a time in arrival order.

        Raises:
            Cancelled: If ``stop_event`` fires while waiting.
        """
        async with self._lock:
            while True:
                if stop_event is not None and stop_event.is_set():
                    raise Cancelled("Rate limiter wait cancelled")
                if self.try_acquire():
                    return
                wait = (1.0 - self._tokens) / self.rate
                await interruptible_sleep(wait, stop_event, self._sleep)
