"""
Tiered lookup of cached wallpapers: today, yesterday, then latest available.
"""
import json
import logging
from typing import Optional

from dashboard.cache.core import CacheEntry, FreshnessTier
from dashboard.cache.handles import HandleRegistry
from dashboard.cache.stores import BinaryStore, StorageError
from .models import CachedWallpaper
from .policy import FreshnessPolicy, dated_key_date, metadata_key_for

logger = logging.getLogger("wallpaper.resolver")

HANDLE_TAG = "wallpaper"


class TieredCacheResolver:
    """
    Finds the best cached wallpaper for a category.

    Every successful resolve mints a new handle; the caller owns it and
    must release it when the image is no longer displayed.
    """

    def __init__(
        self,
        store: BinaryStore,
        handles: HandleRegistry,
        policy: FreshnessPolicy,
        blob_url_prefix: str = "/blobs/",
    ):
        self.store = store
        self.handles = handles
        self.policy = policy
        self.blob_url_prefix = blob_url_prefix

    def handle_url(self, handle: str) -> str:
        return f"{self.blob_url_prefix}{handle}"

    async def resolve(self, category: str) -> Optional[CachedWallpaper]:
        """
        Resolve the freshest cached wallpaper for category.

        Returns:
            CachedWallpaper with a new handle, or None if nothing is cached
        """
        try:
            today_key = self.policy.today_key(category)
            entry = await self.store.get(today_key)
            if entry is not None and entry.size > 0:
                logger.info(f"Using today's wallpaper cache for {category}")
                return await self._mint(today_key, entry, FreshnessTier.TODAY)

            yesterday_key = self.policy.yesterday_key(category)
            entry = await self.store.get(yesterday_key)
            if entry is not None and entry.size > 0:
                logger.info(f"Using yesterday's wallpaper cache for {category}")
                return await self._mint(yesterday_key, entry, FreshnessTier.YESTERDAY)

            candidates = [
                key for key in await self.store.list_keys()
                if dated_key_date(key, category, self.policy.namespace) is not None
            ]
            # Dates sort lexicographically, newest first
            for key in sorted(candidates, reverse=True):
                entry = await self.store.get(key)
                if entry is not None and entry.size > 0:
                    logger.info(f"Using latest available wallpaper cache: {key}")
                    return await self._mint(key, entry, FreshnessTier.LATEST)
        except StorageError as e:
            logger.warning(f"Cache lookup failed for {category}: {e}")

        return None

    async def read_origin_url(self, cache_key: str) -> Optional[str]:
        """Origin URL stored in the metadata beside cache_key, if any."""
        try:
            entry = await self.store.get(metadata_key_for(cache_key))
            if entry is None:
                return None
            metadata = json.loads(entry.data.decode("utf-8"))
            return metadata.get("originalUrl") or None
        except (StorageError, ValueError, AttributeError) as e:
            logger.debug(f"Could not read wallpaper metadata for {cache_key}: {e}")
            return None

    async def _mint(
        self,
        cache_key: str,
        entry: CacheEntry,
        tier: FreshnessTier,
    ) -> CachedWallpaper:
        origin_url = await self.read_origin_url(cache_key)
        handle = self.handles.create_handle(entry.data, entry.mime_type, HANDLE_TAG)
        return CachedWallpaper(
            handle=handle,
            url=self.handle_url(handle),
            is_today=tier is FreshnessTier.TODAY,
            tier=tier,
            cache_key=cache_key,
            origin_url=origin_url,
        )
