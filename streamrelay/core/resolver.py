from __future__ import annotations

import asyncio
import time
from functools import partial
from typing import Callable, Iterable, Mapping, Optional

from loguru import logger

from streamrelay.core.cache import ResolutionCache
from streamrelay.core.errors import (
    BlockedDomain,
    NotFound,
    ProviderUnavailable,
    StreamRelayError,
)
from streamrelay.core.extraction import BrowserExtractionEngine
from streamrelay.core.hls_proxy.urls import build_playlist_url
from streamrelay.domain.models import (
    CacheEntry,
    ContentHints,
    ContentKey,
    ProviderStream,
    Track,
    UnifiedResolution,
)
from streamrelay.providers import ProviderConfig, ProviderKind, providers_in_order
from streamrelay.providers.api import resolve_via_api
from streamrelay.providers.vidify import resolve_via_vidify
from streamrelay.utils.logger import redact_url


class ProviderResolver:
    """
    Resolves one ContentKey into up to three audio tracks.

    Every track runs as its own task over its provider list, each provider
    attempt going through the ResolutionCache. `resolve()` returns when the
    original track settles or the ceiling elapses; tracks still running keep
    going in the background and only populate the cache.
    """

    def __init__(
        self,
        cache: ResolutionCache,
        engine: Optional[BrowserExtractionEngine] = None,
        *,
        track_orders: Optional[Mapping[Track, Iterable[str]]] = None,
        ceiling_seconds: float = 60.0,
        extraction_timeout_ms: int = 45_000,
        api_timeout: float = 20.0,
        english_speaking_countries: Iterable[str] = ("US", "GB", "CA", "AU", "NZ", "IE"),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self.engine = engine
        self.track_orders: dict[Track, list[str]] = {
            Track.ORIGINAL: ["streamapi", "vidlink", "videasy", "vidking", "111movies"],
            Track.ENGLISH_DUB: ["vidify"],
            Track.LATINO: ["latino"],
        }
        for track, names in (track_orders or {}).items():
            self.track_orders[Track(track)] = list(names)
        self.ceiling_seconds = ceiling_seconds
        self.extraction_timeout_ms = extraction_timeout_ms
        self.api_timeout = api_timeout
        self.english_speaking = {c.upper() for c in english_speaking_countries}
        self._clock = clock
        self._background: set[asyncio.Task] = set()

    @classmethod
    def from_config(
        cls, cache: ResolutionCache, engine: Optional[BrowserExtractionEngine]
    ) -> "ProviderResolver":
        from streamrelay.config import (
            API_TIMEOUT_SECONDS,
            ENGLISH_SPEAKING_COUNTRIES,
            EXTRACTION_TIMEOUT_MS,
            PROVIDER_ORDER_DUB,
            PROVIDER_ORDER_LATINO,
            PROVIDER_ORDER_ORIGINAL,
            RESOLVE_CEILING_SECONDS,
        )

        return cls(
            cache,
            engine,
            track_orders={
                Track.ORIGINAL: PROVIDER_ORDER_ORIGINAL,
                Track.ENGLISH_DUB: PROVIDER_ORDER_DUB,
                Track.LATINO: PROVIDER_ORDER_LATINO,
            },
            ceiling_seconds=RESOLVE_CEILING_SECONDS,
            extraction_timeout_ms=EXTRACTION_TIMEOUT_MS,
            api_timeout=API_TIMEOUT_SECONDS,
            english_speaking_countries=ENGLISH_SPEAKING_COUNTRIES,
        )

    def dub_suppressed(self, hints: ContentHints) -> bool:
        """English-market titles never get an English dub track."""
        return any(c.upper() in self.english_speaking for c in hints.origin_countries)

    async def resolve(
        self,
        key: ContentKey,
        hints: Optional[ContentHints] = None,
        *,
        skip_cache: bool = False,
        ceiling: Optional[float] = None,
    ) -> UnifiedResolution:
        hints = hints or ContentHints()
        started = self._clock()
        result = UnifiedResolution()
        result.metadata.is_anime = hints.anime
        result.metadata.anime_title = hints.anime_title

        tracks = [Track.ORIGINAL, Track.ENGLISH_DUB, Track.LATINO]
        if self.dub_suppressed(hints):
            logger.debug(
                "Suppressing englishDub for {} (origin {})",
                key.cache_key(),
                ",".join(hints.origin_countries),
            )
            tracks.remove(Track.ENGLISH_DUB)

        logger.info(f"Resolving {key.cache_key()} tracks={[t.value for t in tracks]}")
        tasks = {
            track: asyncio.ensure_future(self._resolve_track(track, key, skip_cache=skip_cache))
            for track in tracks
        }
        limit = self.ceiling_seconds if ceiling is None else ceiling
        try:
            await asyncio.wait([tasks[Track.ORIGINAL]], timeout=limit)
        except asyncio.CancelledError:
            for task in tasks.values():
                task.cancel()
            raise

        for track, task in tasks.items():
            if not task.done():
                logger.debug(f"Track {track.value} still running; leaving it to the cache")
                self._keep_in_background(track, task)
                if track is Track.ORIGINAL:
                    result.metadata.errors[track.value] = "timed out"
                continue
            if task.cancelled():
                result.metadata.errors[track.value] = "cancelled"
                continue
            exc = task.exception()
            if exc is not None:
                result.metadata.errors[track.value] = str(exc)
                continue
            stream = task.result()
            result.set_track(track, stream)
            result.metadata.success_count += 1

        result.metadata.elapsed_ms = int((self._clock() - started) * 1000)
        if result.is_empty:
            logger.warning(
                f"No stream for {key.cache_key()} after {result.metadata.elapsed_ms}ms: "
                f"{result.metadata.errors}"
            )
        else:
            logger.success(
                f"Resolved {key.cache_key()}: {result.metadata.success_count} track(s) "
                f"in {result.metadata.elapsed_ms}ms"
            )
        return result

    async def _resolve_track(
        self, track: Track, key: ContentKey, *, skip_cache: bool
    ) -> ProviderStream:
        """
        Walk the track's providers in priority order and return the first hit.

        Raises:
            NotFound: every provider missed; the message lists why.
        """
        reasons: list[str] = []
        for provider in providers_in_order(self.track_orders.get(track, [])):
            try:
                stream = await self._resolve_provider(provider, key, skip_cache=skip_cache)
            except ProviderUnavailable as exc:
                logger.debug(str(exc))
                reasons.append(f"{provider.name}: unavailable")
                continue
            except BlockedDomain as exc:
                logger.error(f"[{provider.name}] {exc}")
                reasons.append(f"{provider.name}: blocked")
                continue
            except StreamRelayError as exc:
                logger.warning(f"[{provider.name}] {type(exc).__name__}: {exc}")
                reasons.append(f"{provider.name}: {type(exc).__name__}")
                continue
            if stream is None:
                reasons.append(f"{provider.name}: not found")
                continue
            logger.success(f"Track {track.value} served by {provider.name}")
            return stream
        raise NotFound(key.cache_key(), "; ".join(reasons) or "no providers configured")

    async def _resolve_provider(
        self, provider: ProviderConfig, key: ContentKey, *, skip_cache: bool
    ) -> Optional[ProviderStream]:
        entry, cached = await self.cache.get_or_load(
            key, provider.name, partial(self._load, provider, key), skip_cache=skip_cache
        )
        if entry.is_negative:
            logger.debug(
                f"[{provider.name}] {key.cache_key()} unavailable"
                f"{' (cached)' if cached else ''}: {entry.reason or 'not found'}"
            )
            return None
        return self._to_stream(key, entry, cached)

    async def _load(self, provider: ProviderConfig, key: ContentKey) -> CacheEntry:
        """Cache loader: a positive entry, or a negative one on a definitive miss."""
        try:
            if provider.is_browser:
                return await self._extract(provider, key)
            return await self._call_api(provider, key)
        except NotFound as exc:
            logger.info(f"[{provider.name}] caching miss for {key.cache_key()}")
            return self.cache.negative_entry(key, provider.name, reason=str(exc))

    async def _call_api(self, provider: ProviderConfig, key: ContentKey) -> CacheEntry:
        call = resolve_via_vidify if provider.kind is ProviderKind.VIDIFY else resolve_via_api
        stream = await call(provider, key, timeout=self.api_timeout)
        headers = provider.stream_headers(provider.target_url(key))
        if stream.referer:
            headers["Referer"] = stream.referer
            headers.pop("Origin", None)
        if stream.origin:
            headers["Origin"] = stream.origin
        return self.cache.positive_entry(
            key,
            provider.name,
            stream_url=stream.url,
            source_url=provider.target_url(key),
            subtitles=stream.subtitles,
            headers=headers,
            language=stream.language or provider.language,
        )

    async def _extract(self, provider: ProviderConfig, key: ContentKey) -> CacheEntry:
        if self.engine is None:
            raise ProviderUnavailable(provider.name, "browser extraction is disabled")
        target = provider.target_url(key)
        result = await self.engine.extract(provider, target, self.extraction_timeout_ms)
        logger.debug(
            f"[{provider.name}] {len(result.candidates)} candidate(s), best "
            f"{redact_url(result.best.url)} score={result.best.score}"
        )
        return self.cache.positive_entry(
            key,
            provider.name,
            stream_url=result.best.url,
            source_url=target,
            subtitles=tuple(result.subtitles),
            headers=provider.stream_headers(target),
            language=provider.language,
        )

    @staticmethod
    def _to_stream(key: ContentKey, entry: CacheEntry, cached: bool) -> ProviderStream:
        assert entry.stream_url is not None
        referer = entry.headers.get("Referer")
        origin = entry.headers.get("Origin")
        return ProviderStream(
            provider=entry.provider,
            stream_url=build_playlist_url(
                entry.stream_url,
                referer=referer,
                origin=origin,
                content_key=key,
                provider=entry.provider,
            ),
            upstream_url=entry.stream_url,
            source_url=entry.source_url,
            subtitles=list(entry.subtitles),
            cached=cached,
            headers=dict(entry.headers),
            language=entry.language,
        )

    def _keep_in_background(self, track: Track, task: asyncio.Task) -> None:
        self._background.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.debug(f"Background track {track.value} finished without stream: {exc}")
            else:
                logger.debug(f"Background track {track.value} finished; result cached")

        task.add_done_callback(_done)

    @property
    def pending(self) -> int:
        return len(self._background)

    async def invalidate(self, key: ContentKey, provider: Optional[str] = None) -> int:
        return await self.cache.invalidate(key, provider)

    async def close(self) -> None:
        pending = list(self._background)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._background.clear()
        logger.debug(f"Resolver closed ({len(pending)} background track(s) cancelled)")
