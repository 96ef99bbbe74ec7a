"""
Ephemeral handles for displaying cached binary payloads.

A handle is an opaque id mapped to an in-memory copy of a payload. Every
read of the cache mints its own handle; whoever minted a handle releases
it once the image is no longer displayed. Releasing twice, or releasing
an id this registry never issued, is a no-op.

Clients that never release are bounded two ways: handles idle longer than
max_idle_seconds are reclaimed, and past max_handles the least recently
used handle is evicted. A reclaimed handle behaves exactly like a released
one.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("cache.handles")


@dataclass
class HandleRecord:
    """Payload held alive by a handle."""
    data: bytes
    mime_type: str
    tag: str
    created_at: datetime
    last_used: datetime


class HandleRegistry:
    """Allocator for ephemeral payload handles."""

    def __init__(
        self,
        max_idle_seconds: Optional[float] = None,
        max_handles: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Args:
            max_idle_seconds: Reclaim handles not read for this long (None: never)
            max_handles: Live handle cap, oldest-used evicted first (None: no cap)
            clock: Source of the current time
        """
        self.max_idle_seconds = max_idle_seconds
        self.max_handles = max_handles
        self._clock = clock
        self._handles: Dict[str, HandleRecord] = {}
        self._released = 0
        self._reclaimed = 0

    def create_handle(self, data: bytes, mime_type: str, tag: str) -> str:
        """Register a payload and return a fresh handle for it."""
        self.reclaim_idle()
        if self.max_handles is not None:
            while self._handles and len(self._handles) >= self.max_handles:
                oldest = min(self._handles, key=lambda h: self._handles[h].last_used)
                self._forget(oldest, reason="evicted")

        now = self._clock()
        handle = uuid.uuid4().hex
        self._handles[handle] = HandleRecord(
            data=data,
            mime_type=mime_type,
            tag=tag,
            created_at=now,
            last_used=now,
        )
        logger.debug(f"Created {tag} handle {handle} ({len(data)} bytes)")
        return handle

    def get(self, handle: str) -> Optional[HandleRecord]:
        """Look up a live handle. Released or reclaimed handles return None."""
        record = self._handles.get(handle)
        if record is not None:
            record.last_used = self._clock()
        return record

    def release_handle(self, handle: Optional[str]) -> bool:
        """
        Release a handle.

        Returns:
            True if the handle was live and is now released
        """
        if not handle:
            return False
        record = self._handles.pop(handle, None)
        if record is None:
            return False
        self._released += 1
        logger.debug(f"Released {record.tag} handle {handle}")
        return True

    def reclaim_idle(self) -> int:
        """Drop handles idle past max_idle_seconds. Returns how many."""
        if self.max_idle_seconds is None or not self._handles:
            return 0
        cutoff = self._clock() - timedelta(seconds=self.max_idle_seconds)
        idle = [h for h, record in self._handles.items() if record.last_used < cutoff]
        for handle in idle:
            self._forget(handle, reason="idle")
        if idle:
            logger.info(f"Reclaimed {len(idle)} idle handles")
        return len(idle)

    def _forget(self, handle: str, reason: str) -> None:
        record = self._handles.pop(handle)
        self._reclaimed += 1
        logger.debug(f"Reclaimed {record.tag} handle {handle} ({reason})")

    def release_all(self) -> int:
        """Release every live handle. Returns the number released."""
        count = len(self._handles)
        self._handles.clear()
        self._released += count
        return count

    def get_stats(self) -> Dict[str, Any]:
        """Get handle statistics."""
        by_tag: Dict[str, int] = {}
        for record in self._handles.values():
            by_tag[record.tag] = by_tag.get(record.tag, 0) + 1
        return {
            "live_handles": len(self._handles),
            "live_bytes": sum(len(r.data) for r in self._handles.values()),
            "released_total": self._released,
            "reclaimed_total": self._reclaimed,
            "by_tag": by_tag,
        }
