"""
Pydantic schemas for API response models
"""
from pydantic import BaseModel
from typing import Dict, List, Optional


# ===== WALLPAPER SCHEMAS =====

class WallpaperResponse(BaseModel):
    """Wallpaper for one category, with freshness flags"""
    category: str
    url: str
    handle: Optional[str] = None
    is_from_cache: bool
    is_today: bool
    needs_update: bool
    origin_url: Optional[str] = None


class RefreshAccepted(BaseModel):
    """Background refresh was dispatched"""
    category: str
    status: str = "accepted"


class VisibilityResponse(BaseModel):
    """Categories refreshed because the page became visible"""
    refreshed: List[str]


class CacheCleared(BaseModel):
    """A day's cache entry was removed"""
    category: str
    cache_key: str


class CustomWallpaperStored(BaseModel):
    """The user's own wallpaper was saved"""
    cache_key: str
    size: int


# ===== CACHE STATS SCHEMAS =====

class RetryStats(BaseModel):
    attempts: int
    pending: bool
    next_delay_seconds: Optional[float] = None


class CacheStats(BaseModel):
    """Wallpaper cache statistics"""
    total_count: int
    today_count: int
    total_size: int
    cache_keys: List[str]
    retries: Dict[str, RetryStats]
    background_tasks: int
    refresh_loop_running: bool
    live_handles: int
    in_flight: List[str]
