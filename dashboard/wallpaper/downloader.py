"""
Wallpaper download, validation, and persistence.

Candidate sources are tried in order:
1. The wallpaper edge service for the category's resolution
2. Any configured extra source templates
3. A caller-supplied URL, if given
Sources on CORS-restricted hosts are requested through the proxy template.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import quote, urlparse

from dashboard.cache.handles import HandleRegistry
from dashboard.cache.stores import BinaryStore, StorageError
from .errors import DownloadError, InvalidPayloadError, NetworkError, WallpaperError
from .models import DownloadResult
from .policy import FreshnessPolicy, metadata_key_for
from .resolver import HANDLE_TAG, TieredCacheResolver
from .transport import HttpTransport, TransportResponse

logger = logging.getLogger("wallpaper.downloader")

SOURCE_HEADER = "X-Wallpaper-Source"
DEFAULT_RESOLUTION = "1920x1080"


@dataclass
class DownloaderConfig:
    """Download and validation parameters."""
    service_url: Optional[str] = None
    service_key: Optional[str] = None
    resolution_map: Dict[str, str] = field(default_factory=dict)
    extra_sources: List[str] = field(default_factory=list)
    proxy_template: Optional[str] = None
    proxied_hosts: List[str] = field(default_factory=list)
    timeout_seconds: float = 12.0
    ttl_seconds: int = 48 * 60 * 60
    min_payload_bytes: int = 1024
    suspicious_size_floor: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings) -> "DownloaderConfig":
        return cls(
            service_url=settings.wallpaper_service_url,
            service_key=settings.wallpaper_service_key,
            resolution_map=dict(settings.resolution_map),
            extra_sources=list(settings.extra_sources),
            proxy_template=settings.proxy_template,
            proxied_hosts=list(settings.proxied_hosts),
            timeout_seconds=settings.download_timeout_seconds,
            ttl_seconds=settings.wallpaper_ttl_seconds,
            min_payload_bytes=settings.min_payload_bytes,
            suspicious_size_floor=dict(settings.suspicious_size_floor),
        )


@dataclass
class Candidate:
    """A source to try. url is the logical source; request_url may be proxied."""
    url: str
    request_url: str
    headers: Dict[str, str] = field(default_factory=dict)


def is_absolute_http_url(value: Optional[str]) -> bool:
    """True for well-formed absolute http(s) URLs."""
    if not value:
        return False
    parsed = urlparse(value.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class WallpaperDownloader:
    """Fetches, validates, and stores today's wallpaper for a category."""

    def __init__(
        self,
        store: BinaryStore,
        handles: HandleRegistry,
        policy: FreshnessPolicy,
        resolver: TieredCacheResolver,
        transport: HttpTransport,
        config: DownloaderConfig,
    ):
        self.store = store
        self.handles = handles
        self.policy = policy
        self.resolver = resolver
        self.transport = transport
        self.config = config

    # -------------------------------------------------------------------------
    # Candidate sources
    # -------------------------------------------------------------------------

    def primary_url(self, category: str) -> Optional[str]:
        """Edge-service URL for category, or None if no service is configured."""
        base = (self.config.service_url or "").rstrip("/")
        if not base:
            return None
        resolution = self.config.resolution_map.get(category, DEFAULT_RESOLUTION)
        # The date parameter gives each day a distinct URL past any HTTP caching
        return (
            f"{base}/functions/v1/wallpaper-service"
            f"?resolution={resolution}&date={self.policy.today()}"
        )

    def build_candidates(self, category: str, source_url: Optional[str] = None) -> List[Candidate]:
        """Ordered list of sources to try for category."""
        candidates = []

        primary = self.primary_url(category)
        if primary:
            headers = {}
            if self.config.service_key:
                headers["Authorization"] = f"Bearer {self.config.service_key}"
            candidates.append(self._candidate(primary, headers))

        resolution = self.config.resolution_map.get(category, DEFAULT_RESOLUTION)
        for template in self.config.extra_sources:
            url = template.format(
                category=category,
                resolution=resolution,
                date=self.policy.today(),
            )
            candidates.append(self._candidate(url))

        if source_url:
            candidates.append(self._candidate(source_url))

        return candidates

    def _candidate(self, url: str, headers: Optional[Dict[str, str]] = None) -> Candidate:
        return Candidate(url=url, request_url=self.proxied(url), headers=headers or {})

    def proxied(self, url: str) -> str:
        """Rewrite url through the proxy template if its host needs it."""
        if not self.config.proxy_template:
            return url
        host = (urlparse(url).hostname or "").lower()
        for proxied_host in self.config.proxied_hosts:
            if host == proxied_host or host.endswith(f".{proxied_host}"):
                return self.config.proxy_template.format(url=quote(url, safe=""))
        return url

    # -------------------------------------------------------------------------
    # Download
    # -------------------------------------------------------------------------

    async def download(self, category: str, source_url: Optional[str] = None) -> DownloadResult:
        """
        Download today's wallpaper for category from the first usable source.

        Returns:
            DownloadResult with a new handle owned by the caller

        Raises:
            DownloadError: If no candidate produced an acceptable image
        """
        candidates = self.build_candidates(category, source_url)
        failures: List[WallpaperError] = []

        for candidate in candidates:
            logger.info(f"Downloading {category} wallpaper from {candidate.url[:80]}")
            try:
                response = await self.transport.fetch(
                    candidate.request_url,
                    headers=candidate.headers,
                    timeout=self.config.timeout_seconds,
                )
                self.validate(candidate, response)
            except (NetworkError, InvalidPayloadError) as e:
                logger.warning(f"Wallpaper source failed for {category}: {e}")
                failures.append(e)
                continue

            return await self._accept(category, candidate, response)

        raise DownloadError(category, failures)

    def validate(self, candidate: Candidate, response: TransportResponse) -> None:
        """
        Reject responses that are not plausible images.

        Raises:
            InvalidPayloadError: Wrong content type or payload below the size floor
        """
        content_type = response.content_type.lower()
        if "application/json" in content_type:
            logger.error(f"Wallpaper service returned JSON instead of an image: {response.body[:200]!r}")
            raise InvalidPayloadError("Service returned an error payload", candidate.url)
        if not content_type.startswith("image/"):
            raise InvalidPayloadError(
                f"Unexpected content type '{content_type or 'missing'}'", candidate.url
            )
        if len(response.body) < self.config.min_payload_bytes:
            raise InvalidPayloadError(
                f"Payload too small ({len(response.body)} bytes)", candidate.url
            )

    async def extract_origin_url(
        self,
        category: str,
        candidate: Candidate,
        response: TransportResponse,
    ) -> str:
        """
        Work out where the image really came from.

        The source header may hold a non-URL marker such as "cache" when the
        edge service served its own stored copy; then the origin recorded
        locally for today wins, and the request URL is the last resort.
        """
        header_value = response.headers.get(SOURCE_HEADER, "") or ""
        if is_absolute_http_url(header_value):
            return header_value.strip()

        existing = await self.resolver.read_origin_url(self.policy.today_key(category))
        if existing:
            logger.debug(f"Origin URL for {category} taken from local metadata: {existing}")
            return existing

        logger.warning(
            f"No usable {SOURCE_HEADER} header ({header_value!r}); "
            f"using request URL as origin for {category}"
        )
        return candidate.url

    async def _accept(
        self,
        category: str,
        candidate: Candidate,
        response: TransportResponse,
    ) -> DownloadResult:
        data = response.body
        mime_type = response.content_type.split(";")[0].strip() or "image/jpeg"
        origin_url = await self.extract_origin_url(category, candidate, response)

        floor = self.config.suspicious_size_floor.get(category, 0)
        is_fallback = len(data) < floor
        if is_fallback:
            logger.warning(
                f"{category} wallpaper is unusually small ({len(data) // 1024}KB < "
                f"{floor // 1024}KB); keeping it as a fallback"
            )

        persisted = await self._persist(category, data, mime_type, origin_url)
        handle = self.handles.create_handle(data, mime_type, HANDLE_TAG)

        logger.info(
            f"Wallpaper download complete for {category}: "
            f"{len(data) / 1024 / 1024:.2f}MB, origin={origin_url}"
        )
        return DownloadResult(
            handle=handle,
            url=self.resolver.handle_url(handle),
            origin_url=origin_url,
            is_fallback=is_fallback,
            persisted=persisted,
        )

    async def _persist(self, category: str, data: bytes, mime_type: str, origin_url: str) -> bool:
        """Store payload and origin metadata under today's key."""
        cache_key = self.policy.today_key(category)
        metadata = json.dumps({"originalUrl": origin_url}).encode("utf-8")
        try:
            await self.store.set(cache_key, data, self.config.ttl_seconds, mime_type)
            await self.store.set(
                metadata_key_for(cache_key),
                metadata,
                self.config.ttl_seconds,
                "application/json",
            )
        except StorageError as e:
            logger.warning(f"Failed to cache {category} wallpaper, serving from memory only: {e}")
            return False
        return True
