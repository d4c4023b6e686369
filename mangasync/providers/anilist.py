"""
AniList provider (GraphQL).

Rate limit: AniList allows ~90 requests per minute; the default bucket is
1 request/second with a burst of 5.
"""

import asyncio
from datetime import datetime
from typing import Any

import httpx

from mangasync.client import GraphQLClient, RetryPolicy
from mangasync.config import settings
from mangasync.errors import MissingRequiredField, PermanentAPIError
from mangasync.extraction import (
    clean_description,
    first_nonempty,
    is_author_role,
    map_status,
    parse_datetime,
    rescale_rating,
    slugify,
)
from mangasync.models import CanonicalItem
from mangasync.providers.base import CatalogProvider, Page

MEDIA_FIELDS = """
    id
    idMal
    title {
        english
        romaji
        native
    }
    description
    status
    chapters
    volumes
    coverImage {
        large
        medium
    }
    genres
    averageScore
    staff {
        edges {
            role
            node {
                name {
                    full
                }
            }
        }
    }
    updatedAt
"""

PAGE_QUERY = """
query ($page: Int, $perPage: Int, $sort: [MediaSort]) {
    Page(page: $page, perPage: $perPage) {
        pageInfo {
            total
            currentPage
            lastPage
            hasNextPage
            perPage
        }
        media(type: MANGA, sort: $sort) {
            %s
        }
    }
}
""" % MEDIA_FIELDS

MEDIA_QUERY = """
query ($id: Int) {
    Media(id: $id, type: MANGA) {
        %s
    }
}
""" % MEDIA_FIELDS


def extract_anilist(raw: dict[str, Any]) -> CanonicalItem:
    """
    Extract a canonical item from an AniList ``Media`` object.

    Raises:
        MissingRequiredField: If the record has no ID or no title at all.
    """
    media_id = raw.get("id")
    if media_id is None:
        raise MissingRequiredField("id")
    external_id = str(media_id)

    # Title (prefer English, fallback to Romaji, then Native)
    titles = raw.get("title") or {}
    title = first_nonempty(titles.get("english"), titles.get("romaji"), titles.get("native"))
    if not title:
        raise MissingRequiredField("title", external_id)

    # Author: first staff edge credited with the story
    author = ""
    for edge in (raw.get("staff") or {}).get("edges") or []:
        if is_author_role(edge.get("role")):
            author = ((edge.get("node") or {}).get("name") or {}).get("full") or ""
            break

    cover = raw.get("coverImage") or {}

    return CanonicalItem(
        source=AniListProvider.name,
        external_id=external_id,
        title=title,
        slug=slugify(title),
        author=author,
        status=map_status(raw.get("status")),
        chapter_count=raw.get("chapters"),
        description=clean_description(raw.get("description")),
        cover_url=cover.get("large") or cover.get("medium"),
        rating=rescale_rating(raw.get("averageScore")),
        genres=raw.get("genres") or [],
        source_updated_at=parse_datetime(raw.get("updatedAt")),
    )


class AniListProvider(CatalogProvider):
    """AniList GraphQL catalog source."""

    name = "anilist"
    max_page_size = 50

    client: GraphQLClient

    @classmethod
    def from_settings(
        cls,
        stop_event: asyncio.Event | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "AniListProvider":
        """Build a provider with a client configured from settings."""
        client = GraphQLClient(
            base_url=settings.anilist_api_url,
            source_name=cls.name,
            rate=settings.requests_per_second,
            burst=settings.burst_size,
            max_concurrent=settings.max_concurrent_requests,
            timeout=settings.request_timeout,
            retry_policy=RetryPolicy(
                max_retries=settings.max_retries,
                initial_delay=settings.initial_backoff,
                max_delay=settings.max_backoff,
            ),
            headers={"Content-Type": "application/json"},
            stop_event=stop_event,
            transport=transport,
        )
        return cls(client)

    async def _fetch_page(self, page: int, per_page: int, sort: str) -> Page:
        data = await self.client.execute(
            PAGE_QUERY,
            {"page": page, "perPage": self.clamp_page_size(per_page), "sort": [sort]},
        )
        page_data = data.get("Page")
        if not isinstance(page_data, dict):
            raise PermanentAPIError("AniList response has no Page object")

        page_info = page_data.get("pageInfo") or {}
        return Page(
            number=page,
            items=list(page_data.get("media") or []),
            has_next=bool(page_info.get("hasNextPage")),
            total=page_info.get("total"),
        )

    async def fetch_popular(self, page: int, per_page: int) -> Page:
        return await self._fetch_page(page, per_page, "POPULARITY_DESC")

    async def fetch_recently_updated(
        self,
        since: datetime,
        page: int,
        per_page: int,
    ) -> Page:
        # AniList cannot filter on updatedAt; the orchestrator stops the
        # walk once records fall behind ``since``.
        return await self._fetch_page(page, per_page, "UPDATED_AT_DESC")

    async def fetch_item(self, external_id: str) -> dict[str, Any]:
        try:
            media_id = int(external_id)
        except ValueError as e:
            raise PermanentAPIError(f"Invalid AniList ID: {external_id!r}") from e

        data = await self.client.execute(MEDIA_QUERY, {"id": media_id})
        media = data.get("Media")
        if not isinstance(media, dict):
            raise PermanentAPIError(f"AniList returned no media for {external_id}")
        return media

    def extract(self, raw: dict[str, Any]) -> CanonicalItem:
        return extract_anilist(raw)
