"""
MangaDex provider (REST).

List endpoint: GET /manga with limit/offset paging. MangaDex caps
offset + limit at 10000. A detail fetch also reads the newest English
chapters from /manga/{id}/feed to get the current chapter count.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any

import httpx

from mangasync.client import ApiClient, RetryPolicy
from mangasync.config import settings
from mangasync.errors import MissingRequiredField, PermanentAPIError
from mangasync.extraction import (
    clean_description,
    first_nonempty,
    map_status,
    parse_datetime,
    slugify,
)
from mangasync.models import CanonicalItem
from mangasync.providers.base import CatalogProvider, Page

COVER_BASE_URL = "https://uploads.mangadex.org/covers"
MAX_WINDOW = 10000
INCLUDES = ("author", "cover_art")

# Chapters read from the feed on a detail fetch; lastChapter is often unset
# for ongoing series
FEED_LIMIT = 100
FEED_CHAPTER_KEY = "feedLastChapter"


def _localized(values: Any) -> str:
    """Pick the English entry of a localized string map, else the first value."""
    if not isinstance(values, dict) or not values:
        return ""
    return first_nonempty(values.get("en"), *values.values())


def _chapter_count(last_chapter: Any) -> int | None:
    if last_chapter is None or last_chapter == "":
        return None
    try:
        return int(float(last_chapter))
    except (TypeError, ValueError):
        return None


def _merge_chapters(*counts: int | None) -> int | None:
    known = [c for c in counts if c is not None]
    return max(known) if known else None


def highest_feed_chapter(chapters: list[dict[str, Any]]) -> int | None:
    """Highest whole chapter number in a /manga/{id}/feed page."""
    return _merge_chapters(
        *(
            _chapter_count((chapter.get("attributes") or {}).get("chapter"))
            for chapter in chapters
            if isinstance(chapter, dict)
        )
    )


def extract_mangadex(raw: dict[str, Any]) -> CanonicalItem:
    """
    Extract a canonical item from a MangaDex manga resource.

    Relationships must have been requested with ``includes[]=author`` and
    ``includes[]=cover_art`` for author and cover to be filled.
    """
    manga_id = raw.get("id")
    if not manga_id:
        raise MissingRequiredField("id")
    external_id = str(manga_id)

    attributes = raw.get("attributes") or {}

    title = _localized(attributes.get("title"))
    if not title:
        for alt in attributes.get("altTitles") or []:
            if isinstance(alt, dict) and alt.get("en"):
                title = alt["en"].strip()
                break
    if not title:
        raise MissingRequiredField("title", external_id)

    author = ""
    cover_url = None
    for rel in raw.get("relationships") or []:
        rel_type = rel.get("type")
        rel_attrs = rel.get("attributes") or {}
        if rel_type == "author" and not author:
            author = (rel_attrs.get("name") or "").strip()
        elif rel_type == "cover_art" and cover_url is None:
            file_name = rel_attrs.get("fileName")
            if file_name:
                cover_url = f"{COVER_BASE_URL}/{external_id}/{file_name}"

    genres = []
    for tag in attributes.get("tags") or []:
        tag_attrs = tag.get("attributes") or {}
        if tag_attrs.get("group") == "genre":
            name = _localized(tag_attrs.get("name"))
            if name:
                genres.append(name)

    return CanonicalItem(
        source=MangaDexProvider.name,
        external_id=external_id,
        title=title,
        slug=slugify(title),
        author=author,
        status=map_status(attributes.get("status")),
        chapter_count=_merge_chapters(
            _chapter_count(attributes.get("lastChapter")),
            raw.get(FEED_CHAPTER_KEY),
        ),
        description=clean_description(_localized(attributes.get("description"))),
        cover_url=cover_url,
        rating=None,
        genres=genres,
        source_updated_at=parse_datetime(attributes.get("updatedAt")),
    )


class MangaDexProvider(CatalogProvider):
    """MangaDex REST catalog source."""

    name = "mangadex"
    max_page_size = 100

    @classmethod
    def from_settings(
        cls,
        stop_event: asyncio.Event | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "MangaDexProvider":
        """Build a provider with a client configured from settings."""
        headers = {}
        if settings.mangadex_api_key:
            headers["Authorization"] = f"Bearer {settings.mangadex_api_key}"

        client = ApiClient(
            base_url=settings.mangadex_api_url,
            source_name=cls.name,
            rate=settings.mangadex_requests_per_second,
            burst=settings.mangadex_burst_size,
            max_concurrent=settings.max_concurrent_requests,
            timeout=settings.request_timeout,
            retry_policy=RetryPolicy(
                max_retries=settings.max_retries,
                initial_delay=settings.initial_backoff,
                max_delay=settings.max_backoff,
            ),
            headers=headers,
            stop_event=stop_event,
            transport=transport,
        )
        return cls(client)

    async def _list(
        self,
        page: int,
        per_page: int,
        extra: list[tuple[str, Any]],
    ) -> Page:
        limit = self.clamp_page_size(per_page)
        offset = (page - 1) * limit
        if offset + limit > MAX_WINDOW:
            return Page(number=page)

        params: list[tuple[str, Any]] = [
            ("limit", limit),
            ("offset", offset),
            *(("includes[]", inc) for inc in INCLUDES),
            *extra,
        ]
        body = await self.client.request("GET", "/manga", params=params)
        if not isinstance(body, dict) or body.get("result") == "error":
            raise PermanentAPIError(self._body_errors(body))

        items = list(body.get("data") or [])
        total = body.get("total")
        if isinstance(total, int):
            has_next = offset + len(items) < min(total, MAX_WINDOW)
        else:
            has_next = len(items) == limit
        return Page(number=page, items=items, has_next=has_next and bool(items), total=total)

    async def fetch_popular(self, page: int, per_page: int) -> Page:
        return await self._list(page, per_page, [("order[followedCount]", "desc")])

    async def fetch_recently_updated(
        self,
        since: datetime,
        page: int,
        per_page: int,
    ) -> Page:
        # updatedAtSince takes a naive UTC timestamp without fractional seconds
        since_utc = since.astimezone(timezone.utc).replace(tzinfo=None, microsecond=0)
        return await self._list(
            page,
            per_page,
            [
                ("order[updatedAt]", "desc"),
                ("updatedAtSince", since_utc.isoformat()),
            ],
        )

    async def fetch_item(self, external_id: str) -> dict[str, Any]:
        params = [("includes[]", inc) for inc in INCLUDES]
        body = await self.client.request("GET", f"/manga/{external_id}", params=params)
        if not isinstance(body, dict) or body.get("result") == "error":
            raise PermanentAPIError(self._body_errors(body))
        data = body.get("data")
        if not isinstance(data, dict):
            raise PermanentAPIError(f"MangaDex returned no manga for {external_id}")

        latest = await self._latest_chapter(external_id)
        if latest is not None:
            data = {**data, FEED_CHAPTER_KEY: latest}
        return data

    async def _latest_chapter(self, external_id: str) -> int | None:
        params = [
            ("limit", FEED_LIMIT),
            ("translatedLanguage[]", "en"),
            ("order[chapter]", "desc"),
        ]
        body = await self.client.request("GET", f"/manga/{external_id}/feed", params=params)
        if not isinstance(body, dict) or body.get("result") == "error":
            raise PermanentAPIError(self._body_errors(body))
        return highest_feed_chapter(list(body.get("data") or []))

    def extract(self, raw: dict[str, Any]) -> CanonicalItem:
        return extract_mangadex(raw)

    @staticmethod
    def _body_errors(body: Any) -> list[str]:
        if isinstance(body, dict):
            errors = body.get("errors") or []
            messages = [
                str(e.get("detail") or e.get("title") or e) for e in errors if isinstance(e, dict)
            ]
            if messages:
                return messages
        return ["Malformed MangaDex response"]
