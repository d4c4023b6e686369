"""
Tests for the AniList and MangaDex providers against a mocked API.
"""

import json
from datetime import datetime, timezone

import httpx
import pytest

from conftest import FakeProvider
from mangasync.client import GraphQLClient, ApiClient, RetryPolicy
from mangasync.errors import PermanentAPIError
from mangasync.providers.base import CatalogProvider
from mangasync.providers import (
    AniListProvider,
    MangaDexProvider,
    PROVIDERS,
    create_provider,
)


def anilist_provider(handler) -> AniListProvider:
    client = GraphQLClient(
        base_url="https://graphql.anilist.test",
        source_name="anilist",
        rate=1000.0,
        burst=1000,
        retry_policy=RetryPolicy(max_retries=0, initial_delay=0.0, max_delay=0.0),
        transport=httpx.MockTransport(handler),
    )
    return AniListProvider(client)


def mangadex_provider(handler) -> MangaDexProvider:
    client = ApiClient(
        base_url="https://api.mangadex.test",
        source_name="mangadex",
        rate=1000.0,
        burst=1000,
        retry_policy=RetryPolicy(max_retries=0, initial_delay=0.0, max_delay=0.0),
        transport=httpx.MockTransport(handler),
    )
    return MangaDexProvider(client)


class TestRegistry:
    """Tests for provider lookup."""

    def test_known_providers(self) -> None:
        """Test both providers are registered."""
        assert set(PROVIDERS) == {"anilist", "mangadex"}

    def test_create_provider(self) -> None:
        """Test a configured provider is built from settings."""
        provider = create_provider("anilist")

        assert isinstance(provider, AniListProvider)
        assert isinstance(provider.client, GraphQLClient)
        assert provider.client.limiter.rate == 1.0

    def test_unknown_provider(self) -> None:
        """Test an unknown name is rejected."""
        with pytest.raises(ValueError):
            create_provider("kitsu")

    def test_from_settings_is_required(self) -> None:
        """Test a provider without from_settings cannot be instantiated."""

        class Bare(CatalogProvider):
            name = "bare"
            fetch_popular = FakeProvider.fetch_popular
            fetch_recently_updated = FakeProvider.fetch_recently_updated
            fetch_item = FakeProvider.fetch_item
            extract = FakeProvider.extract

        with pytest.raises(TypeError):
            Bare(None)


class TestAniListProvider:
    """Tests for AniList paging and detail fetches."""

    @pytest.mark.asyncio
    async def test_fetch_popular(self) -> None:
        """Test popularity paging sends the right variables."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={
                    "data": {
                        "Page": {
                            "pageInfo": {"total": 120, "hasNextPage": True},
                            "media": [{"id": 1}, {"id": 2}],
                        }
                    }
                },
            )

        async with anilist_provider(handler) as provider:
            page = await provider.fetch_popular(page=2, per_page=500)

        assert [m["id"] for m in page.items] == [1, 2]
        assert page.has_next is True
        assert page.number == 2
        assert seen[0]["variables"] == {"page": 2, "perPage": 50, "sort": ["POPULARITY_DESC"]}

    @pytest.mark.asyncio
    async def test_fetch_recently_updated_sort(self) -> None:
        """Test discovery pages sort by update time."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={"data": {"Page": {"pageInfo": {"hasNextPage": False}, "media": []}}},
            )

        async with anilist_provider(handler) as provider:
            page = await provider.fetch_recently_updated(
                datetime(2026, 1, 1, tzinfo=timezone.utc), page=1, per_page=10
            )

        assert page.items == []
        assert page.has_next is False
        assert seen[0]["variables"]["sort"] == ["UPDATED_AT_DESC"]

    @pytest.mark.asyncio
    async def test_fetch_item(self) -> None:
        """Test detail fetch sends a numeric id."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"data": {"Media": {"id": 30013, "chapters": 12}}})

        async with anilist_provider(handler) as provider:
            media = await provider.fetch_item("30013")

        assert media["chapters"] == 12
        assert seen[0]["variables"] == {"id": 30013}

    @pytest.mark.asyncio
    async def test_fetch_item_not_found(self) -> None:
        """Test a GraphQL not-found error is permanent."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                404, json={"data": {"Media": None}, "errors": [{"message": "Not Found.", "status": 404}]}
            )

        async with anilist_provider(handler) as provider:
            with pytest.raises(PermanentAPIError):
                await provider.fetch_item("1")

    @pytest.mark.asyncio
    async def test_fetch_item_bad_id(self) -> None:
        """Test a non-numeric id never reaches the API."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        async with anilist_provider(handler) as provider:
            with pytest.raises(PermanentAPIError):
                await provider.fetch_item("abc")


class TestMangaDexProvider:
    """Tests for MangaDex paging and detail fetches."""

    @pytest.mark.asyncio
    async def test_fetch_popular(self) -> None:
        """Test offset paging, includes and has_next from total."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={"result": "ok", "data": [{"id": "a"}, {"id": "b"}], "total": 5},
            )

        async with mangadex_provider(handler) as provider:
            page = await provider.fetch_popular(page=2, per_page=2)

        params = seen[0].url.params
        assert seen[0].url.path == "/manga"
        assert params["limit"] == "2"
        assert params["offset"] == "2"
        assert params.get_list("includes[]") == ["author", "cover_art"]
        assert params["order[followedCount]"] == "desc"
        assert page.has_next is True

    @pytest.mark.asyncio
    async def test_last_page(self) -> None:
        """Test has_next is False once total is reached."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"result": "ok", "data": [{"id": "e"}], "total": 5})

        async with mangadex_provider(handler) as provider:
            page = await provider.fetch_popular(page=3, per_page=2)

        assert page.has_next is False

    @pytest.mark.asyncio
    async def test_fetch_recently_updated(self) -> None:
        """Test updatedAtSince is sent as naive UTC."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"result": "ok", "data": [], "total": 0})

        since = datetime(2026, 1, 14, 12, 30, 15, 123456, tzinfo=timezone.utc)
        async with mangadex_provider(handler) as provider:
            page = await provider.fetch_recently_updated(since, page=1, per_page=10)

        assert seen[0].url.params["updatedAtSince"] == "2026-01-14T12:30:15"
        assert seen[0].url.params["order[updatedAt]"] == "desc"
        assert page.items == []
        assert page.has_next is False

    @pytest.mark.asyncio
    async def test_window_limit(self) -> None:
        """Test pages beyond the 10000 offset window are empty without a request."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        async with mangadex_provider(handler) as provider:
            page = await provider.fetch_popular(page=101, per_page=100)

        assert page.items == []
        assert page.has_next is False

    @pytest.mark.asyncio
    async def test_fetch_item(self) -> None:
        """Test detail fetch unwraps the data object."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/manga/abc/feed":
                return httpx.Response(200, json={"result": "ok", "data": [], "total": 0})
            assert request.url.path == "/manga/abc"
            return httpx.Response(200, json={"result": "ok", "data": {"id": "abc"}})

        async with mangadex_provider(handler) as provider:
            manga = await provider.fetch_item("abc")

        assert manga == {"id": "abc"}

    @pytest.mark.asyncio
    async def test_fetch_item_reads_chapter_feed(self) -> None:
        """Test the chapter count comes from the feed when lastChapter is unset."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.url.path == "/manga/abc/feed":
                chapters = ["12.5", "12", None, "oneshot", "3"]
                return httpx.Response(
                    200,
                    json={
                        "result": "ok",
                        "data": [{"attributes": {"chapter": c}} for c in chapters],
                        "total": 5,
                    },
                )
            return httpx.Response(
                200,
                json={
                    "result": "ok",
                    "data": {
                        "id": "abc",
                        "attributes": {"title": {"en": "Berserk"}, "lastChapter": ""},
                    },
                },
            )

        async with mangadex_provider(handler) as provider:
            item = provider.extract(await provider.fetch_item("abc"))

        feed = seen[1].url.params
        assert feed["order[chapter]"] == "desc"
        assert feed["translatedLanguage[]"] == "en"
        assert feed["limit"] == "100"
        assert item.chapter_count == 12

    @pytest.mark.asyncio
    async def test_fetch_item_empty_feed_keeps_last_chapter(self) -> None:
        """Test lastChapter is used when the feed has no numbered chapters."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/feed"):
                return httpx.Response(200, json={"result": "ok", "data": [], "total": 0})
            return httpx.Response(
                200,
                json={
                    "result": "ok",
                    "data": {
                        "id": "abc",
                        "attributes": {"title": {"en": "Berserk"}, "lastChapter": "374"},
                    },
                },
            )

        async with mangadex_provider(handler) as provider:
            item = provider.extract(await provider.fetch_item("abc"))

        assert item.chapter_count == 374

    @pytest.mark.asyncio
    async def test_fetch_item_not_found(self) -> None:
        """Test a 404 error body is permanent."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                404,
                json={"result": "error", "errors": [{"status": 404, "detail": "Manga not found"}]},
            )

        async with mangadex_provider(handler) as provider:
            with pytest.raises(PermanentAPIError) as exc_info:
                await provider.fetch_item("missing")

        assert exc_info.value.messages == ["Manga not found"]
