"""
Storage backends consumed by the wallpaper engine.

Two stores are used:
- BinaryStore: binary payloads with expiry, keyed by opaque strings
- MarkerStore: small durable strings (success markers, daily-check gate)

Each has a SQLAlchemy implementation for the running app and an
in-memory one for tests and ephemeral setups. All methods are coroutines;
the SQL implementations run their sessions in worker threads.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from dashboard.models import CacheRecord, DayMarker
from .core import CacheEntry

logger = logging.getLogger("cache.stores")


class StorageError(Exception):
    """Raised when a store rejects a read or write."""
    pass


class BinaryStore(ABC):
    """Binary key-value store with per-entry expiry."""

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        """
        Get the entry stored under key.

        Returns:
            The entry, or None if missing or past its TTL
        """
        pass

    @abstractmethod
    async def set(
        self,
        key: str,
        data: bytes,
        ttl_seconds: float,
        mime_type: str = "application/octet-stream",
    ) -> None:
        """Store data under key, replacing any previous entry."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete key. Missing keys are ignored."""
        pass

    @abstractmethod
    async def list_keys(self) -> List[str]:
        """List every stored key (expired entries may still appear)."""
        pass

    @abstractmethod
    async def purge_expired(self) -> int:
        """Delete entries past their TTL. Returns the number removed."""
        pass


class MarkerStore(ABC):
    """Durable string store for day markers."""

    @abstractmethod
    async def get_item(self, name: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set_item(self, name: str, value: str) -> None:
        pass

    @abstractmethod
    async def remove_item(self, name: str) -> None:
        pass


# =============================================================================
# In-memory implementations
# =============================================================================

class MemoryBinaryStore(BinaryStore):
    """Dict-backed binary store. Contents are lost with the process."""

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}

    async def get(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired():
            del self._entries[key]
            return None
        return entry

    async def set(
        self,
        key: str,
        data: bytes,
        ttl_seconds: float,
        mime_type: str = "application/octet-stream",
    ) -> None:
        self._entries[key] = CacheEntry.create(data, mime_type, ttl_seconds)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def list_keys(self) -> List[str]:
        return list(self._entries.keys())

    async def purge_expired(self) -> int:
        now = datetime.now()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)


class MemoryMarkerStore(MarkerStore):
    """Dict-backed marker store."""

    def __init__(self):
        self._items: Dict[str, str] = {}

    async def get_item(self, name: str) -> Optional[str]:
        return self._items.get(name)

    async def set_item(self, name: str, value: str) -> None:
        self._items[name] = value

    async def remove_item(self, name: str) -> None:
        self._items.pop(name, None)


# =============================================================================
# SQLAlchemy implementations
# =============================================================================

class SQLBinaryStore(BinaryStore):
    """
    Binary store on a SQL table (SQLite by default).

    Expired rows are dropped lazily on read and in bulk by purge_expired().
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def get(self, key: str) -> Optional[CacheEntry]:
        return await asyncio.to_thread(self._get, key)

    def _get(self, key: str) -> Optional[CacheEntry]:
        try:
            with self._session_factory() as db:
                record = db.get(CacheRecord, key)
                if record is None:
                    return None
                if record.expires_at <= datetime.now():
                    db.delete(record)
                    db.commit()
                    logger.debug(f"Dropped expired entry {key}")
                    return None
                return CacheEntry(
                    data=record.payload,
                    mime_type=record.mime_type,
                    created_at=record.created_at,
                    expires_at=record.expires_at,
                )
        except SQLAlchemyError as e:
            raise StorageError(f"Read failed for {key}: {e}") from e

    async def set(
        self,
        key: str,
        data: bytes,
        ttl_seconds: float,
        mime_type: str = "application/octet-stream",
    ) -> None:
        entry = CacheEntry.create(data, mime_type, ttl_seconds)
        await asyncio.to_thread(self._set, key, entry)

    def _set(self, key: str, entry: CacheEntry) -> None:
        try:
            with self._session_factory() as db:
                db.merge(CacheRecord(
                    key=key,
                    payload=entry.data,
                    mime_type=entry.mime_type,
                    created_at=entry.created_at,
                    expires_at=entry.expires_at,
                ))
                db.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Write failed for {key}: {e}") from e

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete, key)

    def _delete(self, key: str) -> None:
        try:
            with self._session_factory() as db:
                db.query(CacheRecord).filter(CacheRecord.key == key).delete()
                db.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Delete failed for {key}: {e}") from e

    async def list_keys(self) -> List[str]:
        return await asyncio.to_thread(self._list_keys)

    def _list_keys(self) -> List[str]:
        try:
            with self._session_factory() as db:
                return [row[0] for row in db.query(CacheRecord.key).all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Listing keys failed: {e}") from e

    async def purge_expired(self) -> int:
        return await asyncio.to_thread(self._purge_expired)

    def _purge_expired(self) -> int:
        try:
            with self._session_factory() as db:
                removed = (
                    db.query(CacheRecord)
                    .filter(CacheRecord.expires_at <= datetime.now())
                    .delete()
                )
                db.commit()
                return removed
        except SQLAlchemyError as e:
            raise StorageError(f"Purge failed: {e}") from e


class SQLMarkerStore(MarkerStore):
    """Marker store on a SQL table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def get_item(self, name: str) -> Optional[str]:
        return await asyncio.to_thread(self._get_item, name)

    def _get_item(self, name: str) -> Optional[str]:
        try:
            with self._session_factory() as db:
                marker = db.get(DayMarker, name)
                return marker.value if marker else None
        except SQLAlchemyError as e:
            raise StorageError(f"Read failed for marker {name}: {e}") from e

    async def set_item(self, name: str, value: str) -> None:
        await asyncio.to_thread(self._set_item, name, value)

    def _set_item(self, name: str, value: str) -> None:
        try:
            with self._session_factory() as db:
                db.merge(DayMarker(name=name, value=value))
                db.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Write failed for marker {name}: {e}") from e

    async def remove_item(self, name: str) -> None:
        await asyncio.to_thread(self._remove_item, name)

    def _remove_item(self, name: str) -> None:
        try:
            with self._session_factory() as db:
                db.query(DayMarker).filter(DayMarker.name == name).delete()
                db.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Delete failed for marker {name}: {e}") from e
