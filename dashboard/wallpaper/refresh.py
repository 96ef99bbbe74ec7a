"""
Background refresh triggers.

Three independent triggers all end in the service's refresh(category):
- an interval timer (default every 6 hours) that also runs cache cleanup
  and reclaims idle display handles
- page visibility: categories without today's success marker are refreshed
- a once-per-day sweep gated by a durable "last checked" date
"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from dashboard.cache.stores import BinaryStore, MarkerStore, StorageError
from .policy import DAILY_CHECK_MARKER, FreshnessPolicy

logger = logging.getLogger("wallpaper.refresh")


class BackgroundRefreshDriver:
    """Keeps the wallpaper cache warm without an explicit caller."""

    def __init__(
        self,
        categories: List[str],
        policy: FreshnessPolicy,
        store: BinaryStore,
        markers: MarkerStore,
        dispatch_refresh: Callable[[str], None],
        cleanup: Callable[[], Awaitable[int]],
        interval_seconds: float = 6 * 60 * 60,
        reclaim: Optional[Callable[[], int]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            categories: Categories to keep warm
            policy: Freshness policy (success markers, dates)
            store: Binary store, checked for today's entries
            markers: Marker store holding the daily-check gate
            dispatch_refresh: Starts a background refresh for a category
                without waiting for it
            cleanup: Coroutine function removing old cache entries
            interval_seconds: Period of the interval trigger
            reclaim: Frees display handles nobody released, run on each tick
            sleep: Timer implementation (injectable for tests)
        """
        self.categories = list(categories)
        self.policy = policy
        self.store = store
        self.markers = markers
        self.dispatch_refresh = dispatch_refresh
        self.cleanup = cleanup
        self.interval_seconds = interval_seconds
        self.reclaim = reclaim
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the interval loop. Runs the daily check right away."""
        if self.running:
            return
        logger.info(
            f"Starting wallpaper refresh loop (every {self.interval_seconds / 3600:g}h) "
            f"for {', '.join(self.categories)}"
        )
        self._task = asyncio.create_task(self._run(), name="wallpaper-refresh-loop")

    def stop(self) -> None:
        """Cancel the interval loop."""
        if self._task is not None:
            if not self._task.done():
                self._task.cancel()
                logger.info("Stopped wallpaper refresh loop")
            self._task = None

    async def _run(self) -> None:
        await self._safe_daily_check()
        while True:
            await self._sleep(self.interval_seconds)
            try:
                await self.cleanup()
            except Exception as e:
                logger.error(f"Periodic wallpaper cleanup failed: {e}")
            if self.reclaim is not None:
                self.reclaim()
            await self._safe_daily_check()

    async def _safe_daily_check(self) -> None:
        try:
            await self.daily_check()
        except Exception as e:
            logger.warning(f"Daily wallpaper check failed: {e}")

    async def daily_check(self) -> bool:
        """
        Sweep every category once per local day.

        Returns:
            True if the sweep ran, False if today was already checked
        """
        today = self.policy.today()
        if await self.markers.get_item(DAILY_CHECK_MARKER) == today:
            return False

        logger.info("Running daily wallpaper check")
        await self.markers.set_item(DAILY_CHECK_MARKER, today)

        for category in self.categories:
            try:
                cached = await self.store.get(self.policy.today_key(category))
            except StorageError as e:
                logger.warning(f"Could not read today's {category} cache: {e}")
                cached = None
            if cached is None:
                logger.info(f"Preloading {category} wallpaper in background")
                self.dispatch_refresh(category)

        await self.cleanup()
        return True

    async def on_visible(self) -> List[str]:
        """
        Page became visible: refresh categories not yet satisfied today.

        Returns:
            Categories for which a refresh was dispatched
        """
        dispatched = []
        for category in self.categories:
            if await self.policy.must_refresh_today(category):
                logger.info(f"Page visible, checking whether {category} wallpaper needs an update")
                self.dispatch_refresh(category)
                dispatched.append(category)
        return dispatched
