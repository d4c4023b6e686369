"""
Canonical catalog types.

Provider payloads are normalized into these models before they reach the
store. Identity is ``(source, external_id)``; the slug is derived from the
title and may collide across items.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class ItemStatus(str, Enum):
    """Publication status of a catalog item."""

    ONGOING = "ongoing"
    COMPLETED = "completed"
    UPCOMING = "upcoming"
    CANCELLED = "cancelled"
    HIATUS = "hiatus"


class CanonicalItem(BaseModel):
    """A catalog entry, independent of the originating provider's schema."""

    source: str
    external_id: str
    title: str
    slug: str
    author: str = ""
    status: ItemStatus = ItemStatus.ONGOING
    chapter_count: int | None = None
    description: str = ""
    cover_url: str | None = None
    rating: float | None = Field(default=None, ge=0, le=10)
    genres: frozenset[str] = Field(default_factory=frozenset)
    source_updated_at: datetime | None = None

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("title must not be empty")
        return value

    @field_validator("genres", mode="before")
    @classmethod
    def drop_blank_genres(cls, value: object) -> object:
        if value is None:
            return frozenset()
        if isinstance(value, (list, tuple, set, frozenset)):
            return frozenset(str(g).strip() for g in value if g and str(g).strip())
        return value


class SyncStatus(str, Enum):
    """Lifecycle of one operation type."""

    NOT_STARTED = "not-started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncState(BaseModel):
    """Persisted progress of one operation type (e.g. ``anilist:bulk-load``)."""

    model_config = {"from_attributes": True}

    sync_type: str
    status: SyncStatus = SyncStatus.NOT_STARTED
    last_run_at: datetime | None = None
    last_success_at: datetime | None = None
    cursor: str | None = None
    last_error: str | None = None
    updated_at: datetime | None = None


class StoredItem(BaseModel):
    """An item as read back from the store (used by the refresh poll)."""

    model_config = {"from_attributes": True}

    id: int
    source: str
    external_id: str
    title: str
    status: ItemStatus
    chapter_count: int | None = None
    rating: float | None = None
    last_synced_at: datetime | None = None
    last_refresh_check_at: datetime | None = None
