"""
Core cache data structures.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from enum import Enum


class FreshnessTier(Enum):
    """Resolution precedence for cached wallpapers."""
    TODAY = "today"
    YESTERDAY = "yesterday"
    LATEST = "latest"               # Most recent date still in the store
    STATIC_DEFAULT = "static_default"


@dataclass
class CacheEntry:
    """
    A binary payload stored under an opaque key, with expiry tracking.
    """
    data: bytes
    mime_type: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def create(
        cls,
        data: bytes,
        mime_type: str,
        ttl_seconds: float,
        now: Optional[datetime] = None,
    ) -> "CacheEntry":
        """Build an entry that expires ttl_seconds after now."""
        created = now or datetime.now()
        return cls(
            data=data,
            mime_type=mime_type,
            created_at=created,
            expires_at=created + timedelta(seconds=ttl_seconds),
        )

    @property
    def size(self) -> int:
        """Payload size in bytes."""
        return len(self.data)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check if the entry is past its own TTL."""
        return (now or datetime.now()) >= self.expires_at
