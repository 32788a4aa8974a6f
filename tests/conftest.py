import os
import tempfile

# Keep the import-time DATA_DIR probe out of the working tree.
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="streamrelay-test-"))
os.environ.setdefault("CACHE_PERSIST", "0")

import httpx
import pytest
from fastapi.testclient import TestClient


class FakeClock:
    """Manually advanced wall clock for TTL tests."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def patch_upstream(monkeypatch, upstream_app):
    """
    Route every upstream fetch of the manifest proxy into an in-process ASGI
    app by replacing the module-level AsyncClient factory.
    """

    def _factory():
        transport = httpx.ASGITransport(app=upstream_app)
        return httpx.AsyncClient(
            transport=transport,
            follow_redirects=True,
            trust_env=False,
        )

    monkeypatch.setattr("streamrelay.core.hls_proxy.service._build_async_client", _factory)


@pytest.fixture
def make_services(clock):
    """Build an in-memory service graph (no browser, no persistence)."""
    from streamrelay.core.cache import ResolutionCache, TtlPolicy
    from streamrelay.core.hls_proxy import (
        ManifestRewriteProxy,
        PlaylistCache,
        ProxySessionRegistry,
    )
    from streamrelay.core.lifespan import Services
    from streamrelay.core.resolver import ProviderResolver
    from streamrelay.core.subtitles import SubtitleSearchClient

    def _build(engine=None, track_orders=None, subtitles=None, ceiling_seconds=5.0) -> Services:
        policy = TtlPolicy()
        cache = ResolutionCache(policy=policy, clock=clock, sweep_probability=0.0)
        proxy = ManifestRewriteProxy(
            sessions=ProxySessionRegistry(900, clock=clock),
            playlist_cache=PlaylistCache(max_entries=16, policy=policy, clock=clock),
            resolution_cache=cache,
            policy=policy,
            user_agent="pytest-agent",
        )
        return Services(
            cache=cache,
            resolver=ProviderResolver(
                cache, engine, track_orders=track_orders or {}, ceiling_seconds=ceiling_seconds
            ),
            proxy=proxy,
            subtitles=subtitles
            or SubtitleSearchClient(search_url="http://subs.invalid/search", timeout=1.0),
        )

    return _build


@pytest.fixture
def client(make_services):
    from streamrelay.main import create_app

    app = create_app(make_services)
    with TestClient(app) as c:
        yield c
