"""
Shared test doubles for the wallpaper engine: a scripted transport,
a fixed clock, and a sleep that records delays without waiting.
"""
import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest
from requests.structures import CaseInsensitiveDict

from dashboard.cache import HandleRegistry, MemoryBinaryStore, MemoryMarkerStore
from dashboard.wallpaper import (
    DownloaderConfig,
    NetworkError,
    TransportResponse,
    WallpaperService,
)

EDGE_URL = "https://edge.example.com"
ORIGIN_URL = "https://www.bing.com/th?id=OHR.Sample_1920x1080.jpg"
IMAGE_BYTES = b"\xff\xd8\xff\xe0" + b"wallpaper" * 200


# =============================================================================
# Fakes
# =============================================================================

class FakeTransport:
    """Serves scripted responses for URLs containing a registered fragment."""

    def __init__(self):
        self.calls: List[str] = []
        self.call_headers: List[Dict[str, str]] = []
        self.routes: Dict[str, dict] = {}
        self.gate: Optional[asyncio.Event] = None
        self.closed = False

    def add(
        self,
        fragment: str,
        body: bytes = IMAGE_BYTES,
        content_type: str = "image/jpeg",
        status: int = 200,
        source: Optional[str] = ORIGIN_URL,
        error: Optional[str] = None,
    ):
        headers = {"Content-Type": content_type}
        if source is not None:
            headers["X-Wallpaper-Source"] = source
        self.routes[fragment] = {
            "body": body,
            "headers": headers,
            "status": status,
            "error": error,
        }

    async def fetch(self, url, headers=None, timeout=12.0):
        self.calls.append(url)
        self.call_headers.append(dict(headers or {}))
        if self.gate is not None:
            await self.gate.wait()
        for fragment, route in self.routes.items():
            if fragment in url:
                if route["error"]:
                    raise NetworkError(route["error"], url)
                if route["status"] >= 400:
                    raise NetworkError(f"HTTP {route['status']} from {url}", url, route["status"])
                return TransportResponse(
                    url=url,
                    status=route["status"],
                    headers=CaseInsensitiveDict(route["headers"]),
                    body=route["body"],
                )
        raise NetworkError(f"Unreachable: {url}", url)

    def close(self):
        self.closed = True


class FixedClock:
    """Callable clock frozen at a local time until advanced."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, days: int = 0, hours: int = 0):
        self.now = self.now + timedelta(days=days, hours=hours)


class RecordingSleep:
    """
    Records requested delays. Sleeps block until release() unless
    instant=True, so pending timers stay pending during a test.
    """

    def __init__(self, instant: bool = False):
        self.delays: List[float] = []
        self.instant = instant
        self._event = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.instant:
            await asyncio.sleep(0)
            return
        await self._event.wait()

    def release(self):
        self._event.set()


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 10, 19, 9, 30))


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def store():
    return MemoryBinaryStore()


@pytest.fixture
def markers():
    return MemoryMarkerStore()


@pytest.fixture
def handles():
    return HandleRegistry()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def downloader_config():
    return DownloaderConfig(
        service_url=EDGE_URL,
        service_key="anon-key",
        resolution_map={"4k": "uhd", "1080p": "1920x1080"},
        proxy_template="https://corsproxy.io/?{url}",
        proxied_hosts=["bing.com", "unsplash.com"],
        timeout_seconds=12.0,
        min_payload_bytes=64,
        suspicious_size_floor={"4k": 100_000},
    )


@pytest.fixture
def make_service(store, markers, handles, transport, clock, sleeper, downloader_config):
    """Factory for a service on in-memory stores and fake transport."""

    def factory(**overrides) -> WallpaperService:
        options = dict(
            store=store,
            markers=markers,
            config=downloader_config,
            transport=transport,
            handles=handles,
            categories=["1080p", "4k"],
            clock=clock,
            sleep=sleeper,
        )
        options.update(overrides)
        return WallpaperService(**options)

    return factory
