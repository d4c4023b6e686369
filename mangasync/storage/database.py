"""
Catalog Storage

Async database operations with upsert support. Uses ON CONFLICT for
insert-or-update on PostgreSQL (asyncpg) and SQLite (aiosqlite).
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from mangasync.config import settings
from mangasync.errors import PersistenceError
from mangasync.models import CanonicalItem, ItemStatus, StoredItem, SyncState, SyncStatus
from mangasync.storage.models import Base, Genre, Manga, SyncStateRow, manga_genres

logger = logging.getLogger(__name__)

REFRESH_FIELDS = frozenset({"chapter_count", "status", "rating"})


def _utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class UpsertResult:
    """Outcome of storing one item."""

    item_id: int
    created: bool


class DatabaseStorage:
    """
    Async storage for catalog items and sync state.

    Features:
    - Async SQLAlchemy (asyncpg in production, aiosqlite in tests)
    - Upsert keyed on (source, external_id) using ON CONFLICT
    - Genre set replaced on every upsert
    - One transaction per item
    """

    def __init__(self, database_url: str | None = None) -> None:
        """
        Initialize database storage.

        Args:
            database_url: Database connection URL. Defaults to settings.
        """
        self.database_url = database_url or settings.database_url

        engine_kwargs: dict[str, Any] = {"echo": False}
        if not self.database_url.startswith("sqlite"):
            engine_kwargs.update(pool_size=10, max_overflow=20, pool_pre_ping=True)

        self._engine = create_async_engine(self.database_url, **engine_kwargs)
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    def _insert(self, table: Any) -> Any:
        if self.dialect == "sqlite":
            return sqlite_insert(table)
        return pg_insert(table)

    async def initialize(self) -> None:
        """Create any missing tables."""
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Schema initialization failed: {e}") from e

    async def close(self) -> None:
        """Close the database connection."""
        await self._engine.dispose()

    async def __aenter__(self) -> "DatabaseStorage":
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    def get_session(self) -> AsyncSession:
        """Get a new database session."""
        return self._session_factory()

    # ========== Item Operations ==========

    async def upsert_item(self, item: CanonicalItem) -> UpsertResult:
        """
        Insert or update an item and replace its genre set.

        Raises:
            PersistenceError: The write failed; nothing was committed.
        """
        now = datetime.now(timezone.utc)
        try:
            async with self.get_session() as session:
                existing = await session.scalar(
                    select(Manga.id).where(
                        Manga.source == item.source,
                        Manga.external_id == item.external_id,
                    )
                )

                stmt = self._insert(Manga).values(
                    source=item.source,
                    external_id=item.external_id,
                    title=item.title,
                    slug=item.slug,
                    author=item.author,
                    status=item.status.value,
                    chapter_count=item.chapter_count,
                    description=item.description,
                    cover_url=item.cover_url,
                    rating=item.rating,
                    source_updated_at=item.source_updated_at,
                    last_synced_at=now,
                    created_at=now,
                    updated_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["source", "external_id"],
                    set_={
                        "title": stmt.excluded.title,
                        "slug": stmt.excluded.slug,
                        "author": stmt.excluded.author,
                        "status": stmt.excluded.status,
                        "chapter_count": stmt.excluded.chapter_count,
                        "description": stmt.excluded.description,
                        "cover_url": stmt.excluded.cover_url,
                        "rating": stmt.excluded.rating,
                        "source_updated_at": stmt.excluded.source_updated_at,
                        "last_synced_at": stmt.excluded.last_synced_at,
                        "updated_at": stmt.excluded.updated_at,
                    },
                ).returning(Manga.id)

                item_id = (await session.execute(stmt)).scalar_one()
                await self._replace_genres(session, item_id, item.genres)
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to store {item.source}:{item.external_id}: {e}"
            ) from e

        return UpsertResult(item_id=item_id, created=existing is None)

    async def _replace_genres(
        self,
        session: AsyncSession,
        item_id: int,
        genres: frozenset[str],
    ) -> None:
        await session.execute(delete(manga_genres).where(manga_genres.c.manga_id == item_id))
        if not genres:
            return

        names = sorted(genres)
        await session.execute(
            self._insert(Genre)
            .values([{"name": name} for name in names])
            .on_conflict_do_nothing(index_elements=["name"])
        )
        genre_ids = (
            await session.scalars(select(Genre.id).where(Genre.name.in_(names)))
        ).all()
        await session.execute(
            manga_genres.insert(),
            [{"manga_id": item_id, "genre_id": genre_id} for genre_id in genre_ids],
        )

    async def get_item(self, source: str, external_id: str) -> StoredItem | None:
        """Get a stored item by identity."""
        async with self.get_session() as session:
            row = await session.scalar(
                select(Manga).where(Manga.source == source, Manga.external_id == external_id)
            )
            return self._to_stored(row) if row else None

    async def get_item_genres(self, source: str, external_id: str) -> set[str]:
        """Get the genre names attached to an item."""
        async with self.get_session() as session:
            stmt = (
                select(Genre.name)
                .join(manga_genres, manga_genres.c.genre_id == Genre.id)
                .join(Manga, Manga.id == manga_genres.c.manga_id)
                .where(Manga.source == source, Manga.external_id == external_id)
            )
            return set((await session.scalars(stmt)).all())

    async def count_items(self, source: str | None = None) -> int:
        """Count stored items, optionally for one source."""
        async with self.get_session() as session:
            stmt = select(func.count(Manga.id))
            if source:
                stmt = stmt.where(Manga.source == source)
            return (await session.scalar(stmt)) or 0

    async def find_stale(
        self,
        source: str,
        threshold: datetime,
        limit: int,
    ) -> list[StoredItem]:
        """
        Items of ``source`` never refresh-checked or last checked before
        ``threshold``. Never-checked items come first, then oldest check.
        """
        try:
            async with self.get_session() as session:
                stmt = (
                    select(Manga)
                    .where(
                        Manga.source == source,
                        (Manga.last_refresh_check_at.is_(None))
                        | (Manga.last_refresh_check_at < threshold),
                    )
                    .order_by(
                        Manga.last_refresh_check_at.is_not(None),
                        Manga.last_refresh_check_at,
                        Manga.id,
                    )
                    .limit(limit)
                )
                rows = (await session.scalars(stmt)).all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to select stale items: {e}") from e
        return [self._to_stored(row) for row in rows]

    async def apply_refresh(
        self,
        source: str,
        external_id: str,
        changes: dict[str, Any],
        checked_at: datetime,
    ) -> None:
        """
        Record a refresh check. Changed tracked fields are written and
        ``last_synced_at`` stamped; ``last_refresh_check_at`` is always set.
        """
        unknown = set(changes) - REFRESH_FIELDS
        if unknown:
            raise ValueError(f"Not refreshable: {', '.join(sorted(unknown))}")

        values: dict[str, Any] = {"last_refresh_check_at": checked_at}
        if changes:
            for field, value in changes.items():
                values[field] = value.value if isinstance(value, ItemStatus) else value
            values["last_synced_at"] = checked_at
            values["updated_at"] = checked_at

        try:
            async with self.get_session() as session:
                await session.execute(
                    update(Manga)
                    .where(Manga.source == source, Manga.external_id == external_id)
                    .values(**values)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to record refresh of {source}:{external_id}: {e}"
            ) from e

    @staticmethod
    def _to_stored(row: Manga) -> StoredItem:
        return StoredItem(
            id=row.id,
            source=row.source,
            external_id=row.external_id,
            title=row.title,
            status=ItemStatus(row.status),
            chapter_count=row.chapter_count,
            rating=row.rating,
            last_synced_at=_utc(row.last_synced_at),
            last_refresh_check_at=_utc(row.last_refresh_check_at),
        )

    # ========== Sync State Operations ==========

    async def get_sync_state(self, sync_type: str) -> SyncState | None:
        """Get the state row of an operation type, if it was ever run."""
        try:
            async with self.get_session() as session:
                row = await session.scalar(
                    select(SyncStateRow).where(SyncStateRow.sync_type == sync_type)
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read sync state {sync_type}: {e}") from e
        return self._to_state(row) if row else None

    async def put_sync_state(self, state: SyncState) -> None:
        """Insert or replace the state row of an operation type."""
        now = datetime.now(timezone.utc)
        try:
            async with self.get_session() as session:
                stmt = self._insert(SyncStateRow).values(
                    sync_type=state.sync_type,
                    status=state.status.value,
                    last_run_at=state.last_run_at,
                    last_success_at=state.last_success_at,
                    cursor=state.cursor,
                    last_error=state.last_error,
                    updated_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["sync_type"],
                    set_={
                        "status": stmt.excluded.status,
                        "last_run_at": stmt.excluded.last_run_at,
                        "last_success_at": stmt.excluded.last_success_at,
                        "cursor": stmt.excluded.cursor,
                        "last_error": stmt.excluded.last_error,
                        "updated_at": stmt.excluded.updated_at,
                    },
                )
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to write sync state {state.sync_type}: {e}") from e

    async def reset_sync_state(self, sync_type: str) -> bool:
        """Delete the state row so the operation starts from scratch."""
        async with self.get_session() as session:
            result = await session.execute(
                delete(SyncStateRow).where(SyncStateRow.sync_type == sync_type)
            )
            await session.commit()
            return result.rowcount > 0

    async def list_sync_states(self) -> list[SyncState]:
        """All state rows, ordered by type."""
        async with self.get_session() as session:
            rows = (
                await session.scalars(select(SyncStateRow).order_by(SyncStateRow.sync_type))
            ).all()
            return [self._to_state(row) for row in rows]

    @staticmethod
    def _to_state(row: SyncStateRow) -> SyncState:
        return SyncState(
            sync_type=row.sync_type,
            status=SyncStatus(row.status),
            last_run_at=_utc(row.last_run_at),
            last_success_at=_utc(row.last_success_at),
            cursor=row.cursor,
            last_error=row.last_error,
            updated_at=_utc(row.updated_at),
        )
