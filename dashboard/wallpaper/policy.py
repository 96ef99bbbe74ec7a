"""
Cache-key derivation and once-per-day freshness tracking.

Keys are scoped to the caller's local calendar day, not UTC:
    "<namespace>:<category>-<YYYY-MM-DD>"
with origin metadata stored next to each entry under "<key>-metadata".
"""
import logging
import re
from datetime import date, datetime, timedelta
from typing import Callable, Optional, Union

from dashboard.cache.stores import MarkerStore

logger = logging.getLogger("wallpaper.policy")

DEFAULT_NAMESPACE = "wallpaper-optimized"
METADATA_SUFFIX = "-metadata"
SUCCESS_MARKER_PREFIX = "wallpaper-update-success-"
DAILY_CHECK_MARKER = "wallpaper-daily-check"
CUSTOM_CATEGORY = "custom"

_DATE_PATTERN = re.compile(r"(\d{4}-\d{2}-\d{2})")
_FULL_DATE_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}")

Clock = Callable[[], datetime]


def local_date_string(moment: Optional[Union[datetime, date]] = None) -> str:
    """Local calendar date as YYYY-MM-DD (defaults to now)."""
    moment = moment or datetime.now()
    return moment.strftime("%Y-%m-%d")


def cache_key_for(category: str, day: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    """Deterministic cache key for a category on a local date."""
    return f"{namespace}:{category}-{day}"


def metadata_key_for(cache_key: str) -> str:
    """Key of the origin-URL metadata stored beside cache_key."""
    return f"{cache_key}{METADATA_SUFFIX}"


def category_prefix(category: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    """Prefix shared by every dated key of a category."""
    return f"{namespace}:{category}-"


def dated_key_date(key: str, category: str, namespace: str = DEFAULT_NAMESPACE) -> Optional[str]:
    """Date of key if it is exactly a dated entry key of category, else None."""
    prefix = category_prefix(category, namespace)
    if not key.startswith(prefix):
        return None
    rest = key[len(prefix):]
    return rest if _FULL_DATE_PATTERN.fullmatch(rest) else None


def date_from_key(key: str) -> Optional[str]:
    """Extract the YYYY-MM-DD date encoded in a key, if any."""
    match = _DATE_PATTERN.search(key)
    return match.group(1) if match else None


def success_marker_name(category: str) -> str:
    return f"{SUCCESS_MARKER_PREFIX}{category}"


def custom_wallpaper_key(namespace: str = DEFAULT_NAMESPACE) -> str:
    """Undated key of the user-supplied wallpaper."""
    return f"{namespace}:{CUSTOM_CATEGORY}"


class FreshnessPolicy:
    """
    Decides whether a category still needs today's wallpaper.

    A success marker holds the last local date on which a genuine
    (non-fallback) wallpaper was stored for the category.
    """

    def __init__(
        self,
        markers: MarkerStore,
        namespace: str = DEFAULT_NAMESPACE,
        clock: Clock = datetime.now,
        on_success: Optional[Callable[[str], None]] = None,
    ):
        """
        Args:
            markers: Durable store for day markers
            namespace: Prefix for cache keys
            clock: Source of the local wall-clock time
            on_success: Called with the category after success is recorded
                (the service uses this to reset retry state)
        """
        self.markers = markers
        self.namespace = namespace
        self.clock = clock
        self.on_success = on_success

    def today(self) -> str:
        return local_date_string(self.clock())

    def yesterday(self) -> str:
        return local_date_string(self.clock() - timedelta(days=1))

    def days_ago(self, days: int) -> str:
        return local_date_string(self.clock() - timedelta(days=days))

    def cache_key(self, category: str, day: Optional[str] = None) -> str:
        return cache_key_for(category, day or self.today(), self.namespace)

    def today_key(self, category: str) -> str:
        return self.cache_key(category, self.today())

    def yesterday_key(self, category: str) -> str:
        return self.cache_key(category, self.yesterday())

    async def must_refresh_today(self, category: str) -> bool:
        """True unless a genuine wallpaper was already stored today."""
        last_success = await self.markers.get_item(success_marker_name(category))
        return last_success != self.today()

    async def record_success(self, category: str) -> None:
        """Mark today as satisfied for category and reset its retries."""
        today = self.today()
        await self.markers.set_item(success_marker_name(category), today)
        logger.info(f"Marked {category} wallpaper update success: {today}")
        if self.on_success is not None:
            self.on_success(category)
