"""
Wallpaper Dashboard - Main FastAPI Application
Serves the daily wallpaper from a local cache that refreshes itself in the background
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request, Response

from dashboard.cache.stores import SQLBinaryStore, SQLMarkerStore, StorageError
from dashboard.db import create_session_factory
from dashboard.schemas import (
    CacheCleared,
    CacheStats,
    CustomWallpaperStored,
    RefreshAccepted,
    VisibilityResponse,
    WallpaperResponse,
)
from dashboard.wallpaper import InvalidPayloadError, WallpaperService
from dashboard.wallpaper.policy import CUSTOM_CATEGORY
from config.settings import settings

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger("main")

# Version tracking
APP_VERSION = "v0.3.0"
APP_NAME = "Wallpaper Dashboard"


def build_service() -> WallpaperService:
    """Create the wallpaper service backed by the configured database."""
    session_factory = create_session_factory(settings.cache_database_url)
    return WallpaperService.from_settings(
        settings,
        store=SQLBinaryStore(session_factory),
        markers=SQLMarkerStore(session_factory),
    )


def create_app(
    service: Optional[WallpaperService] = None,
    run_background: bool = True,
) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        service: Pre-built service (tests); built from settings when omitted
        run_background: Start the refresh loop and preload on startup
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        wallpapers = service or build_service()
        app.state.wallpapers = wallpapers
        if run_background:
            wallpapers.start()
            wallpapers.dispatch(wallpapers.preload(), name="wallpaper-preload")
        try:
            yield
        finally:
            # Page/host teardown: no timer may outlive the service
            await wallpapers.shutdown()

    app = FastAPI(
        title=APP_NAME,
        description="Daily wallpaper with offline-first caching",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    def get_service(request: Request) -> WallpaperService:
        return request.app.state.wallpapers

    def check_category(
        wallpapers: WallpaperService,
        category: str,
        allow_custom: bool = True,
    ) -> None:
        if category == CUSTOM_CATEGORY and not allow_custom:
            raise HTTPException(status_code=404, detail="The custom wallpaper is not downloaded")
        if not wallpapers.is_known_category(category):
            raise HTTPException(status_code=404, detail=f"Unknown wallpaper category '{category}'")

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "ok"}

    @app.get("/version")
    def version_info():
        """Version information endpoint."""
        return {
            "name": APP_NAME,
            "version": APP_VERSION,
            "full": f"{APP_NAME} {APP_VERSION}",
        }

    @app.put("/wallpaper/custom", response_model=CustomWallpaperStored)
    async def upload_custom_wallpaper(request: Request):
        """Store the user's own wallpaper (raw image body)."""
        data = await request.body()
        try:
            cache_key = await get_service(request).set_custom_wallpaper(
                data, request.headers.get("content-type", "")
            )
        except InvalidPayloadError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except StorageError as e:
            logger.error(f"Storing custom wallpaper failed: {e}")
            raise HTTPException(status_code=503, detail="Wallpaper storage unavailable")
        return CustomWallpaperStored(cache_key=cache_key, size=len(data))

    @app.delete("/wallpaper/custom", response_model=CacheCleared)
    async def clear_custom_wallpaper(request: Request):
        """Remove the user's own wallpaper."""
        cache_key = await get_service(request).clear_custom_wallpaper()
        return CacheCleared(category=CUSTOM_CATEGORY, cache_key=cache_key)

    @app.get("/wallpaper/{category}", response_model=WallpaperResponse)
    async def get_wallpaper(category: str, request: Request):
        """
        Get the wallpaper for a category (resolution).

        The returned handle belongs to the caller: release it with
        DELETE /blobs/{handle} once the image is no longer shown.
        """
        wallpapers = get_service(request)
        check_category(wallpapers, category)
        result = await wallpapers.get_wallpaper(category)
        return WallpaperResponse(category=category, **result.to_dict())

    @app.post("/wallpaper/visibility", response_model=VisibilityResponse)
    async def page_visible(request: Request):
        """Host page came to the foreground."""
        refreshed = await get_service(request).on_visible()
        return VisibilityResponse(refreshed=refreshed)

    @app.post("/wallpaper/{category}/refresh", response_model=RefreshAccepted, status_code=202)
    async def refresh_wallpaper(category: str, request: Request):
        """Start a background refresh for a category."""
        wallpapers = get_service(request)
        check_category(wallpapers, category, allow_custom=False)
        wallpapers.dispatch_refresh(category)
        return RefreshAccepted(category=category)

    @app.delete("/wallpaper/{category}/cache", response_model=CacheCleared)
    async def clear_wallpaper_cache(
        category: str,
        request: Request,
        date: Optional[str] = Query(None, pattern=r"^\d{4}-\d{2}-\d{2}$"),
    ):
        """Delete one day's cached wallpaper (today by default)."""
        wallpapers = get_service(request)
        check_category(wallpapers, category, allow_custom=False)
        if date is not None:
            try:
                datetime.strptime(date, "%Y-%m-%d")
            except ValueError:
                raise HTTPException(status_code=422, detail=f"Invalid date '{date}'")
        cache_key = await wallpapers.clear_cache_for_date(category, date)
        return CacheCleared(category=category, cache_key=cache_key)

    @app.get("/blobs/{handle}")
    async def get_blob(handle: str, request: Request):
        """Serve the image behind a live handle."""
        record = get_service(request).handles.get(handle)
        if record is None:
            raise HTTPException(status_code=404, detail="Handle not found or released")
        return Response(
            content=record.data,
            media_type=record.mime_type,
            headers={"Cache-Control": "no-store"},
        )

    @app.delete("/blobs/{handle}", status_code=204)
    async def release_blob(handle: str, request: Request):
        """Release a handle. Unknown or already released handles are fine."""
        get_service(request).release_handle(handle)
        return Response(status_code=204)

    @app.get("/cache/stats", response_model=CacheStats)
    async def cache_stats(request: Request):
        """Get wallpaper cache statistics."""
        stats = await get_service(request).get_cache_stats()
        return CacheStats(
            total_count=stats["total_count"],
            today_count=stats["today_count"],
            total_size=stats["total_size"],
            cache_keys=stats["cache_keys"],
            retries=stats["retries"],
            background_tasks=stats["background_tasks"],
            refresh_loop_running=stats["refresh_loop_running"],
            live_handles=stats["handles"]["live_handles"],
            in_flight=stats["coalescer"]["active_keys"],
        )

    return app


app = create_app()
