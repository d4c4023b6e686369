"""Storage module - Data persistence."""

from mangasync.storage.database import DatabaseStorage, UpsertResult
from mangasync.storage.models import Base, Genre, Manga, SyncStateRow, manga_genres

__all__ = [
    "Base",
    "DatabaseStorage",
    "Genre",
    "Manga",
    "SyncStateRow",
    "UpsertResult",
    "manga_genres",
]
