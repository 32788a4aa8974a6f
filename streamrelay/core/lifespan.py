from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable, Optional

from fastapi import FastAPI
from loguru import logger

from streamrelay.core.cache import ResolutionCache, SqlResolutionStore, TtlPolicy
from streamrelay.core.extraction import BrowserExtractionEngine, DomainAllowlist
from streamrelay.core.hls_proxy import (
    ManifestRewriteProxy,
    PlaylistCache,
    ProxySessionRegistry,
)
from streamrelay.core.resolver import ProviderResolver
from streamrelay.core.subtitles import SubtitleSearchClient
from streamrelay.infrastructure.network import log_proxy_config_summary
from streamrelay.utils.http_client import close_session


@dataclass
class Services:
    """Long-lived collaborators shared by the routers via `app.state.services`."""

    cache: ResolutionCache
    resolver: ProviderResolver
    proxy: ManifestRewriteProxy
    subtitles: SubtitleSearchClient
    browser_pool: Optional[Any] = None

    async def start(self) -> None:
        await self.cache.start()

    async def close(self) -> None:
        # Resolver first: its background tracks still write to the cache.
        await self.resolver.close()
        await self.proxy.close()
        await self.cache.close()
        if self.browser_pool is not None:
            await self.browser_pool.close()
        close_session()

    def health(self) -> dict[str, Any]:
        pool = self.browser_pool.stats() if self.browser_pool is not None else None
        return {
            "cache": self.cache.stats(),
            "proxy": self.proxy.stats(),
            "browser_pool": pool,
            "pending_tracks": self.resolver.pending,
        }


def build_services() -> Services:
    """Construct the production service graph from `streamrelay.config`."""
    from streamrelay.config import (
        BROWSER_USER_AGENT,
        CACHE_PERSIST,
        CACHE_SWEEP_PROBABILITY,
        PLAYLIST_CACHE_MAX_ENTRIES,
        PROXY_SESSION_TTL_SECONDS,
    )
    from streamrelay.core.extraction.playwright_session import PlaywrightBrowserPool

    policy = TtlPolicy.from_config()
    cache = ResolutionCache(
        policy=policy,
        store=SqlResolutionStore() if CACHE_PERSIST else None,
        sweep_probability=CACHE_SWEEP_PROBABILITY,
    )
    allowlist = DomainAllowlist.from_config()
    pool = PlaywrightBrowserPool.from_config(allowlist)
    engine = BrowserExtractionEngine.from_config(pool)
    resolver = ProviderResolver.from_config(cache, engine)
    proxy = ManifestRewriteProxy(
        sessions=ProxySessionRegistry(PROXY_SESSION_TTL_SECONDS),
        playlist_cache=PlaylistCache(max_entries=PLAYLIST_CACHE_MAX_ENTRIES, policy=policy),
        resolution_cache=cache,
        policy=policy,
        user_agent=BROWSER_USER_AGENT,
    )
    return Services(
        cache=cache,
        resolver=resolver,
        proxy=proxy,
        subtitles=SubtitleSearchClient(),
        browser_pool=pool,
    )


def make_lifespan(factory: Callable[[], Services] = build_services):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Application startup: building services.")
        log_proxy_config_summary()
        services = factory()
        await services.start()
        app.state.services = services
        try:
            yield
        finally:
            logger.info("Application shutdown: releasing services.")
            await services.close()

    return lifespan
