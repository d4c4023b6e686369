"""
Sync state machine.

Each operation type moves through::

    not-started -> running -> completed | failed
    completed | failed -> running   (next invocation)

The cursor only moves on ``complete``; ``fail`` keeps the previous one so the
next tick resumes from the last good point.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from mangasync.models import SyncState, SyncStatus
from mangasync.storage import DatabaseStorage

logger = logging.getLogger(__name__)


class Operation(str, Enum):
    """The three polling operations run per provider."""

    BULK_LOAD = "bulk-load"
    DISCOVERY_POLL = "discovery-poll"
    REFRESH_POLL = "refresh-poll"


def sync_type_for(source: str, operation: Operation | str) -> str:
    """State row key, e.g. ``anilist:bulk-load``."""
    op = operation.value if isinstance(operation, Operation) else operation
    return f"{source}:{op}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncStateTracker:
    """Persists the transitions of one operation type."""

    def __init__(
        self,
        storage: DatabaseStorage,
        sync_type: str,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.storage = storage
        self.sync_type = sync_type
        self._clock = clock
        self.state = SyncState(sync_type=sync_type)

    async def load(self) -> SyncState:
        """Read the persisted state; a missing row means not-started."""
        stored = await self.storage.get_sync_state(self.sync_type)
        self.state = stored or SyncState(sync_type=self.sync_type)
        return self.state

    async def begin(self) -> SyncState:
        """Enter running. The cursor is left untouched."""
        self.state = self.state.model_copy(
            update={
                "status": SyncStatus.RUNNING,
                "last_run_at": self._clock(),
                "last_error": None,
            }
        )
        await self.storage.put_sync_state(self.state)
        return self.state

    async def complete(self, cursor: str | None) -> SyncState:
        """running -> completed; the cursor advances."""
        self.state = self.state.model_copy(
            update={
                "status": SyncStatus.COMPLETED,
                "last_success_at": self._clock(),
                "cursor": cursor,
            }
        )
        await self.storage.put_sync_state(self.state)
        return self.state

    async def fail(self, error: str) -> SyncState:
        """running -> failed; the cursor is kept."""
        self.state = self.state.model_copy(
            update={"status": SyncStatus.FAILED, "last_error": error}
        )
        await self.storage.put_sync_state(self.state)
        logger.warning("%s failed: %s", self.sync_type, error)
        return self.state
