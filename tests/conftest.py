"""
Pytest configuration and fixtures.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from mangasync.errors import MissingRequiredField
from mangasync.extraction import map_status, slugify
from mangasync.models import CanonicalItem
from mangasync.notifier import Notification, Notifier
from mangasync.providers.base import CatalogProvider, Page
from mangasync.storage import DatabaseStorage

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


def raw_item(
    external_id: str,
    title: str | None = None,
    chapters: int | None = 10,
    status: str = "RELEASING",
    rating: float | None = 8.0,
    updated_at: datetime | None = None,
    genres: list[str] | None = None,
) -> dict[str, Any]:
    """Raw record in the fake provider's format."""
    return {
        "id": external_id,
        "title": title if title is not None else f"Title {external_id}",
        "chapters": chapters,
        "status": status,
        "rating": rating,
        "updated_at": updated_at,
        "genres": genres or ["Action"],
    }


class FakeProvider(CatalogProvider):
    """In-memory provider; pages are slices of a flat catalog."""

    name = "fake"
    max_page_size = 50

    def __init__(
        self,
        catalog: list[dict[str, Any]] | None = None,
        updated: list[dict[str, Any]] | None = None,
    ) -> None:
        self.catalog = catalog or []
        self.updated = updated or []
        self.details: dict[str, dict[str, Any]] = {}
        self.page_errors: dict[int, Exception] = {}
        self.detail_errors: dict[str, Exception] = {}
        self.popular_calls: list[tuple[int, int]] = []
        self.updated_calls: list[tuple[datetime, int, int]] = []
        self.detail_calls: list[str] = []

    @classmethod
    def from_settings(cls, stop_event=None) -> "FakeProvider":
        return cls()

    @staticmethod
    def _slice(records: list[dict[str, Any]], page: int, per_page: int) -> Page:
        start = (page - 1) * per_page
        items = records[start:start + per_page]
        return Page(
            number=page,
            items=items,
            has_next=start + per_page < len(records),
            total=len(records),
        )

    async def fetch_popular(self, page: int, per_page: int) -> Page:
        self.popular_calls.append((page, per_page))
        if page in self.page_errors:
            raise self.page_errors[page]
        return self._slice(self.catalog, page, per_page)

    async def fetch_recently_updated(self, since: datetime, page: int, per_page: int) -> Page:
        self.updated_calls.append((since, page, per_page))
        if page in self.page_errors:
            raise self.page_errors[page]
        return self._slice(self.updated, page, per_page)

    async def fetch_item(self, external_id: str) -> dict[str, Any]:
        self.detail_calls.append(external_id)
        if external_id in self.detail_errors:
            raise self.detail_errors[external_id]
        return self.details[external_id]

    def extract(self, raw: dict[str, Any]) -> CanonicalItem:
        if not raw.get("title"):
            raise MissingRequiredField("title", raw.get("id"))
        return CanonicalItem(
            source=self.name,
            external_id=raw["id"],
            title=raw["title"],
            slug=slugify(raw["title"]),
            status=map_status(raw.get("status")),
            chapter_count=raw.get("chapters"),
            rating=raw.get("rating"),
            genres=raw.get("genres"),
            source_updated_at=raw.get("updated_at"),
        )


class RecordingNotifier(Notifier):
    """Keeps every event instead of delivering it."""

    name = "recording"

    def __init__(self) -> None:
        super().__init__(queue_size=1000)
        self.events: list[Notification] = []

    def _enqueue(self, event: Notification) -> None:
        self.events.append(event)

    async def send(self, event: Notification) -> None:
        pass

    def of_type(self, event_type: str) -> list[Notification]:
        return [e for e in self.events if e.type == event_type]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def fixed_clock():
    """Wall clock pinned to NOW."""
    return lambda: NOW


@pytest_asyncio.fixture
async def storage(tmp_path: Path):
    """SQLite-backed storage with a fresh schema."""
    async with DatabaseStorage(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}") as store:
        yield store


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider(catalog=[raw_item(str(i)) for i in range(1, 11)])


@pytest.fixture
def hours_ago():
    return lambda hours: NOW - timedelta(hours=hours)


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
