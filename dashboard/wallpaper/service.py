"""
Wallpaper acquisition service.

Built once at startup and shared by everything that needs wallpapers:
- Cached copies are returned immediately, best freshness tier first
- Stale or missing entries are refreshed in background tasks
- At most one download per category is in flight at any time
- Failed or suspect downloads are retried with cycling backoff
- Every caller gets its own display handle
"""
import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Coroutine, Dict, List, Optional, Set, Union

from dashboard.cache.coalescer import RequestCoalescer
from dashboard.cache.handles import HandleRegistry
from dashboard.cache.stores import BinaryStore, MarkerStore, StorageError
from .downloader import DownloaderConfig, WallpaperDownloader
from .errors import DownloadError, InvalidPayloadError
from .models import DownloadResult, WallpaperResult
from .policy import (
    CUSTOM_CATEGORY,
    Clock,
    DEFAULT_NAMESPACE,
    FreshnessPolicy,
    custom_wallpaper_key,
    date_from_key,
    metadata_key_for,
)
from .refresh import BackgroundRefreshDriver
from .resolver import HANDLE_TAG, TieredCacheResolver
from .retry import MAX_RETRY_COUNT, RETRY_DELAYS_SECONDS, RetryScheduler
from .transport import HttpTransport

logger = logging.getLogger("wallpaper.service")

DEFAULT_CATEGORIES = ["1080p", "720p", "4k", "mobile"]

# User uploads are kept until replaced or cleared
CUSTOM_TTL_SECONDS = 10 * 365 * 24 * 60 * 60

Shareable = Union[WallpaperResult, DownloadResult]


@dataclass
class _SharedOutcome:
    """
    A result shared by coalesced callers, detached from any handle.

    Each caller mints its own handle from data, so releasing one caller's
    handle never invalidates another's.
    """
    value: Shareable
    data: Optional[bytes] = None
    mime_type: Optional[str] = None


class WallpaperService:
    """Long-lived wallpaper engine. Call shutdown() when the host goes away."""

    def __init__(
        self,
        store: BinaryStore,
        markers: MarkerStore,
        config: DownloaderConfig,
        transport: Optional[HttpTransport] = None,
        handles: Optional[HandleRegistry] = None,
        categories: Optional[List[str]] = None,
        namespace: str = DEFAULT_NAMESPACE,
        fallback_image_url: str = "/icon/favicon.png",
        blob_url_prefix: str = "/blobs/",
        retention_days: int = 3,
        refresh_interval_seconds: float = 6 * 60 * 60,
        retry_delays: Optional[List[float]] = None,
        max_retries: int = MAX_RETRY_COUNT,
        handle_idle_seconds: Optional[float] = None,
        max_live_handles: Optional[int] = None,
        clock: Clock = datetime.now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.markers = markers
        self.transport = transport or HttpTransport()
        self.handles = handles or HandleRegistry(
            max_idle_seconds=handle_idle_seconds,
            max_handles=max_live_handles,
            clock=clock,
        )
        self.categories = list(categories or DEFAULT_CATEGORIES)
        self.fallback_image_url = fallback_image_url
        self.retention_days = retention_days

        self.retry = RetryScheduler(
            on_retry=self.refresh,
            delays=retry_delays or RETRY_DELAYS_SECONDS,
            max_retries=max_retries,
            sleep=sleep,
        )
        self.policy = FreshnessPolicy(
            markers,
            namespace=namespace,
            clock=clock,
            on_success=self.retry.reset,
        )
        self.resolver = TieredCacheResolver(store, self.handles, self.policy, blob_url_prefix)
        self.downloader = WallpaperDownloader(
            store, self.handles, self.policy, self.resolver, self.transport, config
        )
        self.driver = BackgroundRefreshDriver(
            categories=self.categories,
            policy=self.policy,
            store=store,
            markers=markers,
            dispatch_refresh=self.dispatch_refresh,
            cleanup=self.cleanup_expired,
            interval_seconds=refresh_interval_seconds,
            reclaim=self.handles.reclaim_idle,
            sleep=sleep,
        )

        self._coalescer = RequestCoalescer()
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings,
        store: BinaryStore,
        markers: MarkerStore,
        transport: Optional[HttpTransport] = None,
    ) -> "WallpaperService":
        """Build a service from application settings."""
        return cls(
            store=store,
            markers=markers,
            config=DownloaderConfig.from_settings(settings),
            transport=transport,
            categories=settings.wallpaper_categories,
            namespace=settings.cache_namespace,
            fallback_image_url=settings.fallback_image_url,
            blob_url_prefix=settings.blob_url_prefix,
            retention_days=settings.retention_days,
            refresh_interval_seconds=settings.refresh_interval_seconds,
            retry_delays=settings.retry_delays_seconds,
            max_retries=settings.max_retries,
            handle_idle_seconds=settings.handle_idle_seconds,
            max_live_handles=settings.max_live_handles,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the background refresh loop."""
        self.driver.start()

    async def shutdown(self) -> None:
        """Stop timers and background work and release every handle."""
        self.driver.stop()
        await self.retry.shutdown()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        released = self.handles.release_all()
        self.transport.close()
        logger.info(f"Wallpaper service shut down ({released} handles released)")

    def dispatch(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        """Run coro as a tracked background task. Its errors are only logged."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background task {task.get_name()} failed: {error}")

    def dispatch_refresh(self, category: str) -> asyncio.Task:
        return self.dispatch(self.refresh(category), name=f"wallpaper-refresh-{category}")

    async def wait_idle(self) -> None:
        """Wait until no dispatched background task is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def on_visible(self) -> List[str]:
        """Host page became visible."""
        return await self.driver.on_visible()

    # =========================================================================
    # Handles
    # =========================================================================

    def _detach(self, value: Shareable) -> _SharedOutcome:
        if value.handle is None:
            return _SharedOutcome(value=value)
        record = self.handles.get(value.handle)
        self.handles.release_handle(value.handle)
        if record is None:
            return _SharedOutcome(value=replace(value, handle=None))
        return _SharedOutcome(value=value, data=record.data, mime_type=record.mime_type)

    def _claim(self, shared: _SharedOutcome) -> Shareable:
        if shared.data is None:
            return shared.value
        handle = self.handles.create_handle(shared.data, shared.mime_type, HANDLE_TAG)
        return replace(shared.value, handle=handle, url=self.resolver.handle_url(handle))

    def release_handle(self, handle: Optional[str]) -> bool:
        """Release a handle previously returned to a caller. Idempotent."""
        return self.handles.release_handle(handle)

    def _release_cached(self, cached) -> None:
        if cached is not None:
            self.handles.release_handle(cached.handle)

    # =========================================================================
    # Acquisition
    # =========================================================================

    async def get_wallpaper(self, category: str) -> WallpaperResult:
        """
        Get the wallpaper for category. Never raises for acquisition failures.

        Concurrent calls for the same category share one load; each caller
        still receives a handle of its own.
        """
        async def load() -> _SharedOutcome:
            return self._detach(await self._load(category))

        shared = await self._coalescer.get_or_start(f"load:{category}", load)
        return self._claim(shared)

    async def _download(self, category: str, claim: bool = True) -> Optional[DownloadResult]:
        """Download through the per-category single-flight gate."""
        async def download() -> _SharedOutcome:
            return self._detach(await self.downloader.download(category))

        shared = await self._coalescer.get_or_start(f"download:{category}", download)
        if not claim:
            return shared.value
        return self._claim(shared)

    async def _load(self, category: str) -> WallpaperResult:
        fallback_cache = None
        try:
            if category == CUSTOM_CATEGORY:
                return await self._load_custom()

            should_refresh = await self.policy.must_refresh_today(category)
            cached = await self.resolver.resolve(category)

            if should_refresh:
                if cached is not None:
                    logger.info(
                        f"No {category} wallpaper recorded today; serving cache "
                        f"({cached.tier.value}) and updating in background"
                    )
                    self.dispatch_refresh(category)
                    return WallpaperResult.from_cache(cached, needs_update=True)
                logger.info(f"No cached {category} wallpaper, waiting for download")
            elif cached is not None:
                if cached.origin_url:
                    if not cached.is_today:
                        logger.info(f"Updating today's {category} wallpaper in background")
                        self.dispatch_refresh(category)
                    return WallpaperResult.from_cache(cached, needs_update=not cached.is_today)
                if cached.is_today:
                    logger.warning(f"Today's {category} cache has no origin URL, downloading again")
                    await self.clear_today_cache(category)
                    fallback_cache = cached
                else:
                    logger.warning(f"Serving old {category} cache without origin URL, updating in background")
                    self.dispatch_refresh(category)
                    return WallpaperResult.from_cache(cached, needs_update=True)

            if not self.downloader.build_candidates(category):
                if fallback_cache is not None:
                    logger.warning(f"Wallpaper service unavailable, serving old {category} cache")
                    return WallpaperResult.from_cache(fallback_cache, needs_update=True, is_today=False)
                logger.warning("Wallpaper service not configured, using the static default")
                return WallpaperResult.static_default(self.fallback_image_url)

            try:
                downloaded = await self._download(category)
            except DownloadError as e:
                logger.warning(f"Downloading {category} wallpaper failed: {e}")
                self.retry.schedule(category)
                if fallback_cache is not None:
                    logger.info(f"Showing old {category} cache while retrying")
                    return WallpaperResult.from_cache(fallback_cache, needs_update=True, is_today=False)
                return WallpaperResult.static_default(self.fallback_image_url)

            self._release_cached(fallback_cache)
            fallback_cache = None

            if downloaded.is_fallback:
                logger.warning(f"Got a fallback {category} wallpaper, scheduling retry")
                self.retry.schedule(category)
            else:
                await self.policy.record_success(category)
                if should_refresh:
                    await self._delete_entry(self.policy.yesterday_key(category))

            return WallpaperResult(
                url=downloaded.url,
                handle=downloaded.handle,
                is_from_cache=False,
                is_today=True,
                needs_update=downloaded.is_fallback,
                origin_url=downloaded.origin_url,
            )
        except Exception as e:
            logger.error(f"Loading {category} wallpaper failed, using the static default: {e}", exc_info=True)
            self._release_cached(fallback_cache)
            return WallpaperResult.static_default(self.fallback_image_url)

    async def refresh(self, category: str) -> bool:
        """
        Download today's wallpaper for category without a waiting caller.

        Returns:
            True if a genuine wallpaper was stored and success recorded
        """
        if category == CUSTOM_CATEGORY or not self.downloader.build_candidates(category):
            logger.debug(f"No wallpaper sources for {category}, skipping refresh")
            return False

        try:
            downloaded = await self._download(category, claim=False)
        except DownloadError as e:
            logger.warning(f"Background {category} wallpaper update failed, scheduling retry: {e}")
            self.retry.schedule(category)
            return False

        if downloaded.is_fallback:
            logger.warning(f"Background update got a fallback {category} wallpaper, scheduling retry")
            self.retry.schedule(category)
            return False

        await self.policy.record_success(category)
        await self._delete_entry(self.policy.yesterday_key(category))
        logger.info(f"Background {category} wallpaper update complete")
        return True

    async def preload(self) -> None:
        """Warm every category that lacks today's wallpaper."""
        for category in self.categories:
            try:
                cached = await self.resolver.resolve(category)
                self._release_cached(cached)
                if cached is None or not cached.is_today:
                    logger.debug(f"Preloading {category} wallpaper")
                    result = await self.get_wallpaper(category)
                    self.release_handle(result.handle)
            except Exception as e:
                logger.warning(f"Preloading {category} wallpaper failed: {e}")

    # =========================================================================
    # Custom wallpaper
    # =========================================================================

    def is_known_category(self, category: str) -> bool:
        return category == CUSTOM_CATEGORY or category in self.categories

    async def _load_custom(self) -> WallpaperResult:
        """User-supplied wallpaper from the store; never touches the network."""
        try:
            entry = await self.store.get(custom_wallpaper_key(self.policy.namespace))
        except StorageError as e:
            logger.warning(f"Could not read the custom wallpaper: {e}")
            entry = None

        if entry is None or entry.size == 0:
            logger.warning("No custom wallpaper stored, using the static default")
            return WallpaperResult.static_default(self.fallback_image_url, needs_update=False)

        logger.info("Using custom wallpaper")
        handle = self.handles.create_handle(entry.data, entry.mime_type, HANDLE_TAG)
        return WallpaperResult(
            url=self.resolver.handle_url(handle),
            handle=handle,
            is_from_cache=True,
            is_today=True,
            needs_update=False,
        )

    async def set_custom_wallpaper(self, data: bytes, mime_type: str) -> str:
        """
        Store a user-supplied wallpaper, replacing any previous one.

        Raises:
            InvalidPayloadError: Empty body or not an image
            StorageError: The store rejected the write
        """
        cache_key = custom_wallpaper_key(self.policy.namespace)
        mime_type = (mime_type or "").split(";")[0].strip().lower()
        if not mime_type.startswith("image/"):
            raise InvalidPayloadError(f"Unexpected content type '{mime_type or 'missing'}'", cache_key)
        if not data:
            raise InvalidPayloadError("Empty custom wallpaper", cache_key)

        await self.store.set(cache_key, data, CUSTOM_TTL_SECONDS, mime_type)
        logger.info(f"Stored custom wallpaper ({len(data) // 1024}KB)")
        return cache_key

    async def clear_custom_wallpaper(self) -> str:
        cache_key = custom_wallpaper_key(self.policy.namespace)
        await self._delete_entry(cache_key)
        logger.info("Cleared custom wallpaper")
        return cache_key

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def _delete_entry(self, cache_key: str) -> None:
        try:
            await self.store.delete(cache_key)
            await self.store.delete(metadata_key_for(cache_key))
        except StorageError as e:
            logger.warning(f"Failed to delete {cache_key}: {e}")

    async def cleanup_expired(self) -> int:
        """
        Delete entries dated before the retention window or past their TTL.

        Returns:
            Number of entries deleted
        """
        try:
            cutoff = self.policy.days_ago(self.retention_days)
            prefix = f"{self.policy.namespace}:"
            deleted = 0
            for key in await self.store.list_keys():
                if not key.startswith(prefix):
                    continue
                key_date = date_from_key(key)
                if key_date is not None and key_date < cutoff:
                    await self.store.delete(key)
                    deleted += 1
            deleted += await self.store.purge_expired()
        except StorageError as e:
            logger.warning(f"Wallpaper cache cleanup failed: {e}")
            return 0

        if deleted:
            logger.info(f"Cleaned up {deleted} expired wallpaper cache entries")
        return deleted

    async def clear_cache_for_date(self, category: str, day: Optional[str] = None) -> str:
        """Delete one day's entry (and metadata) for category. Defaults to today."""
        cache_key = self.policy.cache_key(category, day)
        await self._delete_entry(cache_key)
        logger.info(f"Cleared wallpaper cache {cache_key}")
        return cache_key

    async def clear_today_cache(self, category: str) -> str:
        return await self.clear_cache_for_date(category)

    async def get_cache_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        prefix = f"{self.policy.namespace}:"
        today = self.policy.today()
        try:
            keys = [k for k in await self.store.list_keys() if k.startswith(prefix)]
            total_size = 0
            for key in keys:
                entry = await self.store.get(key)
                if entry is not None:
                    total_size += entry.size
        except StorageError as e:
            logger.warning(f"Failed to collect wallpaper cache stats: {e}")
            keys, total_size = [], 0

        return {
            "total_count": len(keys),
            "today_count": sum(1 for k in keys if today in k),
            "total_size": total_size,
            "cache_keys": sorted(keys),
            "retries": self.retry.get_stats(),
            "coalescer": self._coalescer.get_stats(),
            "handles": self.handles.get_stats(),
            "background_tasks": len(self._tasks),
            "refresh_loop_running": self.driver.running,
        }
