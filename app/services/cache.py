"""TTL-bounded caches for show ratings and Plex server connections."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Generic, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..db_models import CachedServer, CachedShow
from ..models import ServerCacheEntry, ShowCacheEntry
from ..utils import safe_error_message, server_cache_key

logger = logging.getLogger(__name__)

EntryT = TypeVar("EntryT", bound=BaseModel)
Clock = Callable[[], float]


class TTLCache(Generic[EntryT]):
    """Key-scoped cache whose rows expire ``ttl_seconds`` after their last write.

    Every mutation runs under one ``asyncio.Lock`` per cache, so cleanup passes
    and writes never interleave. Store failures degrade to a miss or a no-op.
    """

    record_type: type[CachedShow] | type[CachedServer]
    entry_type: type[EntryT]

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl_seconds: int,
        max_entries: int | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._session_factory = session_factory
        self._ttl_seconds = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def now(self) -> int:
        return int(self._clock())

    def is_expired(self, timestamp: int | None) -> bool:
        if not timestamp:
            return True
        return self.now() - timestamp > self._ttl_seconds

    def _is_usable(self, entry: EntryT) -> bool:
        return True

    async def get(self, key: str) -> EntryT | None:
        """Return the entry for ``key`` unless it is missing or expired."""

        try:
            async with self._lock:
                async with self._session_factory() as session:
                    record = await session.get(self.record_type, key)
                    if record is None:
                        return None
                    entry = self._decode(record)
                    if (
                        entry is None
                        or self.is_expired(record.timestamp)
                        or not self._is_usable(entry)
                    ):
                        await session.delete(record)
                        await session.commit()
                        return None
                    return entry
        except SQLAlchemyError as exc:
            logger.error("Cache read error for %s: %s", key, safe_error_message(exc))
            return None

    async def set(self, key: str, entry: EntryT) -> EntryT | None:
        """Insert or replace ``key``, stamping it with the current time."""

        timestamp = self.now()
        stamped = entry.model_copy(update={"timestamp": timestamp})
        payload = stamped.model_dump(mode="json")
        try:
            async with self._lock:
                async with self._session_factory() as session:
                    if self._max_entries is not None:
                        await self._evict_oldest(
                            session, keep=self._max_entries - 1, exclude=key
                        )
                    record = await session.get(self.record_type, key)
                    if record is None:
                        session.add(
                            self.record_type(key=key, payload=payload, timestamp=timestamp)
                        )
                    else:
                        record.payload = payload
                        record.timestamp = timestamp
                    await session.commit()
        except SQLAlchemyError as exc:
            logger.error("Cache write error for %s: %s", key, safe_error_message(exc))
            return None
        return stamped

    async def cleanup(self) -> int:
        """Drop expired rows and prune to capacity; return the expired count."""

        cutoff = self.now() - self._ttl_seconds
        try:
            async with self._lock:
                async with self._session_factory() as session:
                    result = await session.execute(
                        delete(self.record_type).where(self.record_type.timestamp < cutoff)
                    )
                    cleaned = result.rowcount or 0
                    if self._max_entries is not None:
                        await self._evict_oldest(session, keep=self._max_entries)
                    await session.commit()
        except SQLAlchemyError as exc:
            logger.error("Cache cleanup failed: %s", safe_error_message(exc))
            return 0
        if cleaned:
            logger.info("Removed %s expired %s entries", cleaned, self.record_type.__tablename__)
        return cleaned

    async def keys(self) -> list[str]:
        """Return stored keys, oldest first (including not yet swept rows)."""

        async with self._session_factory() as session:
            result = await session.execute(
                select(self.record_type.key).order_by(
                    self.record_type.timestamp, self.record_type.key
                )
            )
            return [row[0] for row in result.all()]

    async def _evict_oldest(
        self, session: AsyncSession, *, keep: int, exclude: str | None = None
    ) -> int:
        stmt = select(self.record_type.key).order_by(
            self.record_type.timestamp, self.record_type.key
        )
        if exclude is not None:
            stmt = stmt.where(self.record_type.key != exclude)
        result = await session.execute(stmt)
        keys = [row[0] for row in result.all()]
        overflow = len(keys) - max(keep, 0)
        if overflow <= 0:
            return 0
        victims = keys[:overflow]
        await session.execute(
            delete(self.record_type).where(self.record_type.key.in_(victims))
        )
        logger.debug("Evicted %s oldest %s entries", overflow, self.record_type.__tablename__)
        return overflow

    def _decode(self, record: CachedShow | CachedServer) -> EntryT | None:
        try:
            return self.entry_type.model_validate(
                {**(record.payload or {}), "timestamp": record.timestamp}
            )
        except ValidationError:
            logger.warning("Discarding malformed cache entry %s", record.key)
            return None


class ShowCache(TTLCache[ShowCacheEntry]):
    """Serializd ratings and season maps, keyed by ``<title>-<year>``."""

    record_type = CachedShow
    entry_type = ShowCacheEntry

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Clock = time.time,
    ) -> "ShowCache":
        return cls(
            session_factory, ttl_seconds=settings.show_cache_ttl_seconds, clock=clock
        )


class ServerCache(TTLCache[ServerCacheEntry]):
    """Short-lived Plex server connection details, keyed by server id."""

    record_type = CachedServer
    entry_type = ServerCacheEntry

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Clock = time.time,
    ) -> "ServerCache":
        return cls(
            session_factory,
            ttl_seconds=settings.server_cache_ttl_seconds,
            max_entries=settings.server_cache_max_entries,
            clock=clock,
        )

    def _is_usable(self, entry: ServerCacheEntry) -> bool:
        return entry.is_usable()

    async def get_server(self, server_id: str) -> ServerCacheEntry | None:
        return await self.get(server_cache_key(server_id))

    async def set_server(
        self, server_id: str, entry: ServerCacheEntry
    ) -> ServerCacheEntry | None:
        if not entry.is_usable():
            return None
        return await self.set(server_cache_key(server_id), entry)
