"""Shared pytest fixtures for series cache tests."""

import pytest

from mcp_server_series.collaborators import StaticCollectionResolver
from mcp_server_series.config import CacheConfig, CoordinatorConfig
from mcp_server_series.content_cache import ContentCache
from mcp_server_series.delivery_coordinator import DeliveryCoordinator
from tests.utils.fakes import FakeClock, FakeProvider, FakeTransport


@pytest.fixture
def clock(monkeypatch):
    """Freeze ContentCache time at a controllable value."""
    fake = FakeClock()
    monkeypatch.setattr(ContentCache, "_now", lambda self: fake())
    return fake


@pytest.fixture
def cache_dir(tmp_path):
    return tmp_path / "cache"


@pytest.fixture
def make_cache(cache_dir):
    """Factory for ContentCache instances rooted in a temp directory."""
    created = []

    def _make(**overrides):
        settings = {"cache_dir": str(cache_dir), "evict_on_startup": False}
        settings.update(overrides)
        cache = ContentCache(CacheConfig(**settings))
        created.append(cache)
        return cache

    yield _make
    for cache in created:
        cache.close()


@pytest.fixture
def cache(make_cache):
    return make_cache()


@pytest.fixture
def provider():
    return FakeProvider(
        {
            "group_ab001": [
                ("101", b"episode-1", "Pilot"),
                ("102", b"episode-2", ""),
                ("103", b"episode-3", "Finale"),
            ],
            "group_ab002": [("201", b"other-1", "")],
            "group_empty": [],
        }
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def resolver():
    return StaticCollectionResolver(
        {"AB001": "group_ab001", "AB002": "group_ab002", "AB003": "group_empty"}
    )


@pytest.fixture
def coordinator_config(tmp_path):
    transient = tmp_path / "transient"
    transient.mkdir()
    return CoordinatorConfig(
        send_delay_seconds=0,
        transient_dir=str(transient),
        listing_ttl_seconds=0,
    )


@pytest.fixture
def coordinator(cache, provider, transport, resolver, coordinator_config):
    return DeliveryCoordinator(cache, provider, transport, resolver, coordinator_config)
