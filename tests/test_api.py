"""
Wallpaper API endpoints, run against an in-memory service
"""
import pytest
from fastapi.testclient import TestClient

from dashboard.cache.handles import HandleRegistry
from dashboard.main import create_app

from conftest import IMAGE_BYTES, ORIGIN_URL


@pytest.fixture
def client_for(make_service):
    """Returns (client, service); use the client as a context manager."""

    def factory(**overrides):
        service = make_service(**overrides)
        return TestClient(create_app(service=service, run_background=False)), service

    return factory


def test_wallpaper_and_blob_roundtrip(client_for, transport):
    """Test that a wallpaper handle serves the downloaded bytes until released"""
    transport.add("wallpaper-service")
    client, service = client_for()

    with client:
        response = client.get("/wallpaper/1080p")
        assert response.status_code == 200
        data = response.json()
        assert data["category"] == "1080p"
        assert data["is_today"] is True
        assert data["origin_url"] == ORIGIN_URL
        assert data["url"] == f"/blobs/{data['handle']}"

        blob = client.get(data["url"])
        assert blob.status_code == 200
        assert blob.content == IMAGE_BYTES
        assert blob.headers["content-type"] == "image/jpeg"

        assert client.delete(data["url"]).status_code == 204
        assert client.get(data["url"]).status_code == 404
        # Releasing twice is fine
        assert client.delete(data["url"]).status_code == 204

    assert transport.closed is True


def test_unknown_category_returns_404(client_for):
    """Test that categories outside the configured list are rejected"""
    client, _ = client_for()
    with client:
        assert client.get("/wallpaper/8k").status_code == 404
        assert client.post("/wallpaper/8k/refresh").status_code == 404


def test_offline_returns_static_default(client_for):
    """Test that an unreachable service still yields a displayable image"""
    client, _ = client_for()
    with client:
        data = client.get("/wallpaper/4k").json()
    assert data["url"] == "/icon/favicon.png"
    assert data["handle"] is None
    assert data["needs_update"] is True


def test_refresh_is_accepted(client_for, transport):
    """Test that POST /wallpaper/{category}/refresh returns 202"""
    transport.add("wallpaper-service")
    client, _ = client_for()
    with client:
        response = client.post("/wallpaper/1080p/refresh")
    assert response.status_code == 202
    assert response.json() == {"category": "1080p", "status": "accepted"}


def test_visibility_refreshes_unsatisfied(client_for):
    """Test that a visible page refreshes categories without today's wallpaper"""
    client, _ = client_for()
    with client:
        response = client.post("/wallpaper/visibility")
    assert response.status_code == 200
    assert response.json() == {"refreshed": ["1080p", "4k"]}


def test_clear_cache_for_date(client_for):
    """Test that DELETE /wallpaper/{category}/cache targets the given date"""
    client, _ = client_for()
    with client:
        response = client.delete("/wallpaper/1080p/cache", params={"date": "2026-10-18"})
        default = client.delete("/wallpaper/1080p/cache")
    assert response.json()["cache_key"] == "wallpaper-optimized:1080p-2026-10-18"
    assert default.json()["cache_key"] == "wallpaper-optimized:1080p-2026-10-19"


def test_clear_cache_rejects_malformed_date(client_for):
    """Test that a date outside YYYY-MM-DD, or not on the calendar, is a 422"""
    client, _ = client_for()
    with client:
        assert client.delete("/wallpaper/1080p/cache", params={"date": "foo"}).status_code == 422
        assert client.delete("/wallpaper/1080p/cache", params={"date": "2026-13-45"}).status_code == 422
        assert client.delete("/wallpaper/1080p/cache", params={"date": "2026-10-18T00:00"}).status_code == 422

def test_cache_stats(client_for, transport):
    """Test that /cache/stats reflects stored entries and live handles"""
    transport.add("wallpaper-service")
    client, _ = client_for()
    with client:
        client.get("/wallpaper/1080p")
        data = client.get("/cache/stats").json()

    assert data["total_count"] == 2
    assert data["today_count"] == 2
    assert data["total_size"] > len(IMAGE_BYTES)
    assert data["live_handles"] == 1
    assert data["in_flight"] == []
    assert data["refresh_loop_running"] is False


def test_unreleased_handles_are_capped(client_for, transport):
    """Test that handles past the live cap are evicted and then 404"""
    transport.add("wallpaper-service")
    client, _ = client_for(handles=HandleRegistry(max_handles=5))

    with client:
        urls = [client.get("/wallpaper/1080p").json()["url"] for _ in range(20)]

        assert client.get("/cache/stats").json()["live_handles"] == 5
        assert client.get(urls[0]).status_code == 404
        assert client.get(urls[-1]).content == IMAGE_BYTES


def test_custom_wallpaper_upload_and_serve(client_for, transport):
    """Test that PUT /wallpaper/custom stores an image served by GET /wallpaper/custom"""
    client, _ = client_for()
    with client:
        empty = client.get("/wallpaper/custom").json()
        assert empty["handle"] is None
        assert empty["needs_update"] is False

        response = client.put(
            "/wallpaper/custom",
            content=IMAGE_BYTES,
            headers={"content-type": "image/jpeg"},
        )
        assert response.status_code == 200
        assert response.json() == {
            "cache_key": "wallpaper-optimized:custom",
            "size": len(IMAGE_BYTES),
        }

        data = client.get("/wallpaper/custom").json()
        assert data["category"] == "custom"
        assert data["is_from_cache"] is True
        assert client.get(data["url"]).content == IMAGE_BYTES

        cleared = client.delete("/wallpaper/custom")
        assert cleared.json()["cache_key"] == "wallpaper-optimized:custom"
        assert client.get("/wallpaper/custom").json()["handle"] is None

    assert transport.calls == []


def test_custom_wallpaper_rejects_non_image(client_for):
    """Test that a non-image upload is a 422"""
    client, _ = client_for()
    with client:
        response = client.put(
            "/wallpaper/custom",
            content=b"hello",
            headers={"content-type": "text/plain"},
        )
    assert response.status_code == 422


def test_custom_wallpaper_is_not_refreshed(client_for):
    """Test that refresh and dated clears do not apply to the custom wallpaper"""
    client, _ = client_for()
    with client:
        assert client.post("/wallpaper/custom/refresh").status_code == 404
        assert client.delete("/wallpaper/custom/cache").status_code == 404
