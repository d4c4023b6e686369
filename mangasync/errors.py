"""
Error taxonomy for the sync engine.

- TransientNetworkError / RateLimitedError: retried by the client
- PermanentAPIError: aborts the current page or item only
- MissingRequiredField: extraction failure, the item is skipped
- PersistenceError: a single upsert failed, the item is skipped
- Cancelled: the shared stop event fired
- NotificationError: a notification could not be delivered (logged only)
"""


class SyncError(Exception):
    """Base class for all sync engine errors."""


class TransientNetworkError(SyncError):
    """A failure that may succeed on retry (5xx, connection error, timeout)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(message)


class RateLimitedError(TransientNetworkError):
    """HTTP 429 from the provider."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message, status_code=429, retry_after=retry_after)


class PermanentAPIError(SyncError):
    """A well-formed error response that retrying will not fix."""

    def __init__(
        self,
        messages: list[str] | str,
        status_code: int | None = None,
    ) -> None:
        if isinstance(messages, str):
            messages = [messages]
        self.messages = messages
        self.status_code = status_code
        prefix = f"HTTP {status_code}: " if status_code else ""
        super().__init__(prefix + "; ".join(messages))


class MissingRequiredField(SyncError):
    """A raw provider record lacks a field the canonical item requires."""

    def __init__(self, field: str, external_id: str | None = None) -> None:
        self.field = field
        self.external_id = external_id
        where = f" (item {external_id})" if external_id else ""
        super().__init__(f"Missing required field '{field}'{where}")


class PersistenceError(SyncError):
    """Writing to the store failed."""


class Cancelled(SyncError):
    """Raised when a wait is interrupted by the shared stop event."""

    def __init__(self, message: str = "Operation cancelled") -> None:
        super().__init__(message)


class NotificationError(SyncError):
    """The notification collaborator rejected or did not receive an event."""
