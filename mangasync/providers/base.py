"""
Catalog provider interface.

A provider pairs a rate-limited client with an extractor. The orchestrator
only talks to this interface, so every provider gets bulk load, discovery
and refresh for free.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from mangasync.client import ApiClient
from mangasync.models import CanonicalItem


@dataclass
class Page:
    """One page of raw provider records, in provider order."""

    number: int
    items: list[dict[str, Any]] = field(default_factory=list)
    has_next: bool = False
    total: int | None = None


class CatalogProvider(ABC):
    """Base class for catalog sources."""

    name: str = "unknown"
    max_page_size: int = 50

    def __init__(self, client: ApiClient) -> None:
        self.client = client

    async def __aenter__(self) -> "CatalogProvider":
        await self.client.__aenter__()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.client.__aexit__(exc_type, exc_val, exc_tb)

    @classmethod
    @abstractmethod
    def from_settings(cls, stop_event: asyncio.Event | None = None) -> "CatalogProvider":
        """Build the provider with a client configured from settings."""

    def clamp_page_size(self, per_page: int) -> int:
        return max(1, min(per_page, self.max_page_size))

    @abstractmethod
    async def fetch_popular(self, page: int, per_page: int) -> Page:
        """Fetch a page of the catalog in a stable (popularity) order."""

    @abstractmethod
    async def fetch_recently_updated(
        self,
        since: datetime,
        page: int,
        per_page: int,
    ) -> Page:
        """Fetch a page sorted most-recently-updated first."""

    @abstractmethod
    async def fetch_item(self, external_id: str) -> dict[str, Any]:
        """Fetch the current raw record of a single item."""

    @abstractmethod
    def extract(self, raw: dict[str, Any]) -> CanonicalItem:
        """
        Normalize a raw record.

        Raises:
            MissingRequiredField: If the record has no usable ID or title.
        """
