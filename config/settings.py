"""Configuration management using pydantic-settings."""
from typing import Dict, List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Wallpaper edge service
    wallpaper_service_url: Optional[str] = None
    wallpaper_service_key: Optional[str] = None

    # Categories (resolutions) kept warm by the background driver
    wallpaper_categories: List[str] = ["1080p", "720p", "4k", "mobile"]
    resolution_map: Dict[str, str] = {
        "4k": "uhd",
        "1080p": "1920x1080",
        "720p": "1366x768",
        "mobile": "mobile",
    }

    # Additional sources tried after the primary endpoint.
    # Templates may use {resolution} and {date}.
    extra_sources: List[str] = []
    proxy_template: Optional[str] = "https://corsproxy.io/?{url}"
    proxied_hosts: List[str] = ["bing.com", "unsplash.com"]

    # Cache settings
    cache_namespace: str = "wallpaper-optimized"
    cache_database_url: str = "sqlite:///./wallpaper_cache.db"
    wallpaper_ttl_seconds: int = 48 * 60 * 60
    retention_days: int = 3

    # Display
    fallback_image_url: str = "/icon/favicon.png"
    blob_url_prefix: str = "/blobs/"
    # Handles nobody released are reclaimed after this long, or past the cap
    handle_idle_seconds: int = 30 * 60
    max_live_handles: int = 64

    # Download validation
    download_timeout_seconds: float = 12.0
    min_payload_bytes: int = 1024
    suspicious_size_floor: Dict[str, int] = {"4k": 500 * 1024}

    # Background refresh and retry
    refresh_interval_seconds: int = 6 * 60 * 60
    retry_delays_seconds: List[float] = [30, 60, 120, 240]
    max_retries: int = 8

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
