"""
Data models for wallpaper acquisition results.
"""
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from dashboard.cache.core import FreshnessTier


@dataclass
class CachedWallpaper:
    """A cached wallpaper found by the resolver, with a freshly minted handle."""
    handle: str
    url: str
    is_today: bool
    tier: FreshnessTier
    cache_key: str
    origin_url: Optional[str] = None  # None for entries stored before origin tracking


@dataclass
class DownloadResult:
    """Outcome of a successful download."""
    handle: str
    url: str
    origin_url: str
    is_fallback: bool = False  # Accepted but suspect; success is not recorded
    persisted: bool = True


@dataclass
class WallpaperResult:
    """
    What a caller receives for a category. Always displayable.

    handle is None when url points at the static default image.
    """
    url: str
    is_from_cache: bool
    is_today: bool
    needs_update: bool
    handle: Optional[str] = None
    origin_url: Optional[str] = None

    @classmethod
    def from_cache(
        cls,
        cached: CachedWallpaper,
        needs_update: bool,
        is_today: Optional[bool] = None,
    ) -> "WallpaperResult":
        return cls(
            url=cached.url,
            handle=cached.handle,
            is_from_cache=True,
            is_today=cached.is_today if is_today is None else is_today,
            needs_update=needs_update,
            origin_url=cached.origin_url,
        )

    @classmethod
    def static_default(cls, url: str, needs_update: bool = True) -> "WallpaperResult":
        return cls(
            url=url,
            is_from_cache=False,
            is_today=True,
            needs_update=needs_update,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
