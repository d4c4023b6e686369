"""Catalog providers."""

import asyncio

from mangasync.providers.anilist import AniListProvider, extract_anilist
from mangasync.providers.base import CatalogProvider, Page
from mangasync.providers.mangadex import MangaDexProvider, extract_mangadex

PROVIDERS: dict[str, type[CatalogProvider]] = {
    AniListProvider.name: AniListProvider,
    MangaDexProvider.name: MangaDexProvider,
}


def create_provider(name: str, stop_event: asyncio.Event | None = None) -> CatalogProvider:
    """Instantiate a configured provider by name."""
    try:
        provider_cls = PROVIDERS[name]
    except KeyError:
        raise ValueError(
            f"Unknown provider: {name!r} (available: {', '.join(sorted(PROVIDERS))})"
        ) from None
    return provider_cls.from_settings(stop_event=stop_event)


__all__ = [
    "AniListProvider",
    "CatalogProvider",
    "MangaDexProvider",
    "PROVIDERS",
    "Page",
    "create_provider",
    "extract_anilist",
    "extract_mangadex",
]
