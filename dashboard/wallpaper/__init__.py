"""
Daily wallpaper acquisition with tiered caching and background refresh.

This module provides:
- Date-scoped cache keys and once-per-day success tracking
- Today / yesterday / latest / static-default fallback
- Validated downloads from ordered candidate sources
- Cycling exponential backoff retries
- Interval, visibility, and daily background refresh
"""

from .errors import (
    WallpaperError,
    NetworkError,
    InvalidPayloadError,
    DownloadError,
)
from .models import (
    CachedWallpaper,
    DownloadResult,
    WallpaperResult,
)
from .policy import (
    FreshnessPolicy,
    local_date_string,
    cache_key_for,
    metadata_key_for,
    date_from_key,
)
from .resolver import TieredCacheResolver
from .downloader import (
    DownloaderConfig,
    WallpaperDownloader,
)
from .retry import (
    RetryScheduler,
    RETRY_DELAYS_SECONDS,
    MAX_RETRY_COUNT,
)
from .refresh import BackgroundRefreshDriver
from .transport import HttpTransport, TransportResponse
from .service import WallpaperService

__all__ = [
    # Errors
    "WallpaperError",
    "NetworkError",
    "InvalidPayloadError",
    "DownloadError",
    # Models
    "CachedWallpaper",
    "DownloadResult",
    "WallpaperResult",
    # Policy
    "FreshnessPolicy",
    "local_date_string",
    "cache_key_for",
    "metadata_key_for",
    "date_from_key",
    # Components
    "TieredCacheResolver",
    "DownloaderConfig",
    "WallpaperDownloader",
    "RetryScheduler",
    "RETRY_DELAYS_SECONDS",
    "MAX_RETRY_COUNT",
    "BackgroundRefreshDriver",
    "HttpTransport",
    "TransportResponse",
    # Service
    "WallpaperService",
]
