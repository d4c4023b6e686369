"""
Retry policy: bounded exponential backoff with Retry-After support.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx

from mangasync.config import settings


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff: ``initial_delay`` doubling per retry, capped at
    ``max_delay``, for at most ``max_retries`` retries.
    """

    max_retries: int = settings.max_retries
    initial_delay: float = settings.initial_backoff
    max_delay: float = settings.max_backoff

    def backoff(self, retry: int) -> float:
        """Computed delay before retry number ``retry`` (0-based)."""
        return min(self.initial_delay * (2 ** retry), self.max_delay)

    def delay_for(self, retry: int, retry_after: float | None = None) -> float:
        """
        Delay before retry ``retry``.

        A server-provided Retry-After value replaces the computed delay for
        this retry only; the next retry falls back to the schedule.
        """
        if retry_after is not None and retry_after >= 0:
            return retry_after
        return self.backoff(retry)

    def schedule(self) -> list[float]:
        """The full computed delay sequence."""
        return [self.backoff(n) for n in range(self.max_retries)]


def is_retryable_status(status_code: int) -> bool:
    """429 and 5xx are worth retrying."""
    return status_code == 429 or status_code >= 500


def parse_retry_after(
    response: httpx.Response,
    now: datetime | None = None,
) -> float | None:
    """
    Parse a Retry-After header (delta-seconds or HTTP date) into seconds.

    Returns None if the header is absent or unparseable.
    """
    value = response.headers.get("Retry-After")
    if not value:
        return None

    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())
