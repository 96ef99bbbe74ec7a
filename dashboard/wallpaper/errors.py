"""Wallpaper acquisition errors."""
from typing import List, Optional


class WallpaperError(Exception):
    """Base error for the wallpaper engine."""
    pass


class NetworkError(WallpaperError):
    """Request failed: timeout, connection error, or non-success status."""

    def __init__(self, message: str, url: str, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class InvalidPayloadError(WallpaperError):
    """Response arrived but is not an acceptable image."""

    def __init__(self, message: str, url: str):
        super().__init__(message)
        self.url = url


class DownloadError(WallpaperError):
    """Every candidate source failed."""

    def __init__(self, category: str, failures: List[WallpaperError]):
        summary = "; ".join(str(f) for f in failures) or "no candidate sources"
        super().__init__(f"No usable wallpaper for {category}: {summary}")
        self.category = category
        self.failures = failures
