"""
HTTP transport for wallpaper downloads.

Blocking requests calls run in a worker thread so the event loop keeps
serving other categories while a download is in progress. The timeout is
a total deadline for one candidate attempt: requests' own timeout only
bounds the connect and each gap between reads, so the body is streamed
and checked against the deadline chunk by chunk.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

import requests

from .errors import NetworkError

logger = logging.getLogger("wallpaper.transport")

DEFAULT_HEADERS = {
    "Accept": "image/*",
    "User-Agent": "wallpaper-dashboard/1.0",
}

CHUNK_SIZE = 64 * 1024


@dataclass
class TransportResponse:
    """A completed HTTP response with its body fully read."""
    url: str
    status: int
    headers: Mapping[str, str]
    body: bytes

    @property
    def content_type(self) -> str:
        return self.headers.get("Content-Type", "") or ""


class HttpTransport:
    """Plain HTTP GET over a shared requests session."""

    def __init__(self, session: Optional[requests.Session] = None):
        self._session = session or requests.Session()
        self._session.headers.update(DEFAULT_HEADERS)

    async def fetch(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 12.0,
    ) -> TransportResponse:
        """
        GET url and read the whole body within timeout seconds.

        Raises:
            NetworkError: On timeout, connection failure, or non-2xx status
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._fetch, url, headers or {}, timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            # The worker thread gives up at its own deadline
            raise NetworkError(f"Timed out after {timeout}s: {url}", url) from e

    def _fetch(self, url: str, headers: Dict[str, str], timeout: float) -> TransportResponse:
        deadline = time.monotonic() + timeout
        try:
            response = self._session.get(url, headers=headers, timeout=timeout, stream=True)
        except requests.Timeout as e:
            raise NetworkError(f"Timed out after {timeout}s: {url}", url) from e
        except requests.RequestException as e:
            raise NetworkError(f"Request failed for {url}: {e}", url) from e

        try:
            if not response.ok:
                detail = ""
                if "application/json" in response.headers.get("Content-Type", ""):
                    try:
                        detail = f" ({response.json().get('error', 'unknown error')})"
                    except (ValueError, AttributeError, requests.RequestException):
                        detail = " (unreadable error body)"
                raise NetworkError(
                    f"HTTP {response.status_code} from {url}{detail}",
                    url,
                    status=response.status_code,
                )

            body = self._read_body(response, url, deadline, timeout)
        finally:
            response.close()

        return TransportResponse(
            url=url,
            status=response.status_code,
            headers=response.headers,
            body=body,
        )

    def _read_body(
        self,
        response: requests.Response,
        url: str,
        deadline: float,
        timeout: float,
    ) -> bytes:
        chunks = []
        try:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if time.monotonic() > deadline:
                    logger.debug(f"Abandoning slow download of {url} after {timeout}s")
                    raise NetworkError(f"Timed out after {timeout}s: {url}", url)
                chunks.append(chunk)
        except requests.RequestException as e:
            raise NetworkError(f"Reading body failed for {url}: {e}", url) from e
        return b"".join(chunks)

    def close(self) -> None:
        self._session.close()
