"""
Notification Module

Fire-and-forget notifications about new items and changed fields.

``notify_*`` never blocks and never raises: events go into a bounded queue
that a background dispatcher drains. When the queue is full the new event is
dropped (logged and counted). Delivery failures are logged only.

Backends:
- http  - POST JSON to <notifier_url>/notify/{new-manga,chapter-update,manga-update}
- redis - PUBLISH JSON to the ``mangasync:notifications`` channel
- none  - discard
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx
import redis.asyncio as redis

from mangasync.config import settings
from mangasync.errors import NotificationError
from mangasync.metrics import metrics

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Notification kinds."""

    NEW_MANGA = "new_manga"
    CHAPTER_UPDATE = "chapter_update"
    MANGA_UPDATE = "manga_update"


ENDPOINTS = {
    EventType.NEW_MANGA: "/notify/new-manga",
    EventType.CHAPTER_UPDATE: "/notify/chapter-update",
    EventType.MANGA_UPDATE: "/notify/manga-update",
}


@dataclass
class Notification:
    """One notification event."""

    type: str
    source: str
    id: str
    title: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    # For field changes
    field_name: str | None = None
    old_value: Any = None
    new_value: Any = None

    # For chapter updates
    old_chapters: int | None = None
    new_chapters: int | None = None

    @property
    def endpoint(self) -> str:
        return ENDPOINTS[EventType(self.type)]

    def to_dict(self) -> dict[str, Any]:
        data = {k: v for k, v in asdict(self).items() if v is not None}
        # an unknown previous value is still worth reporting as null
        if self.field_name is not None:
            data.setdefault("old_value", None)
        return data

    def to_json(self) -> str:
        """Convert event to JSON string."""
        return json.dumps(self.to_dict(), default=str)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class Notifier(ABC):
    """
    Base notifier: bounded queue plus a background dispatcher.

    Usage:
        async with create_notifier() as notifier:
            notifier.notify_new_item("anilist", "30013", "One Piece")
    """

    name = "base"

    def __init__(self, queue_size: int | None = None, drain_timeout: float = 5.0) -> None:
        self._queue: asyncio.Queue[Notification] = asyncio.Queue(
            maxsize=queue_size if queue_size is not None else settings.notifier_queue_size
        )
        self._dispatcher: asyncio.Task[None] | None = None
        self.drain_timeout = drain_timeout

        self.sent = 0
        self.failed = 0
        self.dropped = 0

    async def __aenter__(self) -> "Notifier":
        """Async context manager entry."""
        await self.open()
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="notifier")
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit. Pending events get a short grace period."""
        if self._dispatcher is not None:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=self.drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Notifier closed with %d undelivered events", self._queue.qsize()
                )
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        await self.close()

    async def open(self) -> None:
        """Acquire backend resources."""

    async def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    async def send(self, event: Notification) -> None:
        """Deliver one event. Raise on failure."""

    # ========== Public API ==========

    def notify_new_item(self, source: str, external_id: str, title: str) -> None:
        """Report a newly discovered item."""
        self._enqueue(
            Notification(
                type=EventType.NEW_MANGA.value,
                source=source,
                id=external_id,
                title=title,
            )
        )

    def notify_field_change(
        self,
        source: str,
        external_id: str,
        title: str,
        field_name: str,
        old: Any,
        new: Any,
    ) -> None:
        """Report one changed tracked field of a stored item."""
        old, new = _plain(old), _plain(new)
        event = Notification(
            type=EventType.MANGA_UPDATE.value,
            source=source,
            id=external_id,
            title=title,
            field_name=field_name,
            old_value=old,
            new_value=new,
        )
        if field_name == "chapter_count":
            event.type = EventType.CHAPTER_UPDATE.value
            event.old_chapters = old if old is not None else 0
            event.new_chapters = new
        self._enqueue(event)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # ========== Internals ==========

    def _enqueue(self, event: Notification) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            metrics.record_notification_dropped("queue_full")
            logger.warning(
                "Notification queue full, dropping %s for %s:%s",
                event.type,
                event.source,
                event.id,
            )

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.send(event)
                self.sent += 1
            except Exception as e:
                # Never fail a sync because of a notification
                self.failed += 1
                metrics.record_notification_dropped("delivery_failed")
                logger.warning(
                    "Failed to send %s notification for %s:%s: %s",
                    event.type,
                    event.source,
                    event.id,
                    e,
                )
            finally:
                self._queue.task_done()


class HttpNotifier(Notifier):
    """POSTs events to the notification service."""

    name = "http"

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.base_url = (base_url or settings.notifier_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.notifier_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def open(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout),
            headers={"Content-Type": "application/json"},
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send(self, event: Notification) -> None:
        if not self._client:
            raise NotificationError("HTTP notifier is not open")
        try:
            response = await self._client.post(event.endpoint, json=event.to_dict())
        except httpx.HTTPError as e:
            raise NotificationError(f"Request to {event.endpoint} failed: {e}") from e
        if not response.is_success:
            raise NotificationError(f"Unexpected status code: {response.status_code}")


class RedisNotifier(Notifier):
    """Publishes events to a Redis Pub/Sub channel."""

    name = "redis"
    CHANNEL = "mangasync:notifications"

    def __init__(
        self,
        redis_url: str | None = None,
        client: redis.Redis | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.redis_url = redis_url or settings.redis_url
        self._client = client
        self._owns_client = client is None

    async def open(self) -> None:
        if self._client is not None:
            return
        self._client = redis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        try:
            await self._client.ping()
            logger.info("Notifier connected to Redis")
        except redis.RedisError as e:
            # Events will fail per delivery and be logged
            logger.warning("Redis not reachable for notifications: %s", e)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def send(self, event: Notification) -> None:
        if self._client is None:
            raise NotificationError("Redis notifier is not open")
        try:
            await self._client.publish(self.CHANNEL, event.to_json())
        except redis.RedisError as e:
            raise NotificationError(f"Publish failed: {e}") from e


class NullNotifier(Notifier):
    """Discards every event."""

    name = "none"

    async def send(self, event: Notification) -> None:
        logger.debug("Discarding %s notification for %s:%s", event.type, event.source, event.id)


NOTIFIERS: dict[str, type[Notifier]] = {
    HttpNotifier.name: HttpNotifier,
    RedisNotifier.name: RedisNotifier,
    NullNotifier.name: NullNotifier,
}


def create_notifier(backend: str | None = None) -> Notifier:
    """Build the configured notifier backend."""
    backend = (backend or settings.notifier_backend).lower()
    try:
        return NOTIFIERS[backend]()
    except KeyError:
        raise ValueError(
            f"Unknown notifier backend: {backend!r} (available: {', '.join(NOTIFIERS)})"
        ) from None
