from __future__ import annotations

import re
from dataclasses import dataclass
from functools import partial
from typing import AsyncIterator, Mapping, Optional
from urllib.parse import unquote, urlsplit

import httpx
from loguru import logger

from streamrelay.config import BROWSER_USER_AGENT, UPSTREAM_TIMEOUT_SECONDS
from streamrelay.core.cache import ResolutionCache, TtlPolicy, classify_playlist_ttl
from streamrelay.core.errors import MalformedPlaylist, UpstreamRejected, UpstreamTimeout
from streamrelay.domain.models import ContentKey, PlaylistRewriteContext, TtlClass
from streamrelay.infrastructure.network import effective_proxy_url
from streamrelay.utils.logger import redact_url
from .cache import PlaylistCache, playlist_key
from .headers import FALLBACK_ORDER, FALLBACK_STATUSES, build_upstream_headers
from .hls import UriKind, rewrite_hls_playlist
from .sessions import ProxySession, ProxySessionRegistry
from .urls import build_playlist_url, build_segment_url

HLS_MEDIA_TYPE = "application/vnd.apple.mpegurl"
SEGMENT_CACHE_CONTROL = "public, max-age=31536000, immutable"

# Upstream statuses that mean the resolved stream URL is dead.
INVALIDATING_STATUSES = frozenset({403, 404, 410, 500, 502, 503})

_ALLOWED_HEADERS = {
    "content-type",
    "content-length",
    "content-range",
    "accept-ranges",
    "etag",
    "last-modified",
}
_STREAM_CHUNK_SIZE = 64 * 1024
_SEGMENT_TYPES = {
    ".ts": "video/mp2t",
    ".m4s": "video/iso.segment",
    ".mp4": "video/mp4",
    ".aac": "audio/aac",
    ".vtt": "text/vtt",
}
# CDNs disguise TS segments as static assets to dodge hotlink filters.
_DISGUISED_EXTENSIONS = (
    ".woff",
    ".woff2",
    ".js",
    ".css",
    ".png",
    ".jpg",
    ".jpeg",
    ".gif",
    ".webp",
    ".ico",
    ".svg",
    ".html",
)
_DISGUISED_SEGMENT_RE = re.compile(r"^seg-\d+-.+\.[a-z0-9]+$", re.IGNORECASE)


class SessionNotFound(LookupError):
    """Segment request names an unknown or expired proxy session."""


def filter_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Filter upstream headers to a safe pass-through allowlist."""
    logger.trace("Filtering upstream headers: {}", list(headers.keys()))
    return {k: v for k, v in headers.items() if k.lower() in _ALLOWED_HEADERS}


def segment_content_type(url: str, upstream: Optional[str]) -> str:
    filename = unquote(urlsplit(url).path or "").rsplit("/", 1)[-1].lower()
    for ext, mime in _SEGMENT_TYPES.items():
        if filename.endswith(ext):
            return mime
    if filename.endswith(_DISGUISED_EXTENSIONS) or _DISGUISED_SEGMENT_RE.match(filename):
        return "video/mp2t"
    return upstream or "application/octet-stream"


def _build_async_client() -> httpx.AsyncClient:
    """
    Build an AsyncClient for upstream fetches; env proxies are ignored and the
    configured outbound proxy (if any) is applied explicitly.
    """
    logger.trace("Building upstream AsyncClient")
    timeout = httpx.Timeout(
        UPSTREAM_TIMEOUT_SECONDS,
        connect=10.0,
        read=UPSTREAM_TIMEOUT_SECONDS,
        write=30.0,
        pool=30.0,
    )
    proxy = effective_proxy_url()
    if proxy:
        return httpx.AsyncClient(
            timeout=timeout, follow_redirects=True, trust_env=False, proxy=proxy
        )
    return httpx.AsyncClient(timeout=timeout, follow_redirects=True, trust_env=False)


async def _open_upstream(
    url: str, *, method: str, headers: Mapping[str, str]
) -> tuple[httpx.Response, httpx.AsyncClient]:
    """Open an upstream streaming response and return the response + client."""
    logger.trace("Opening upstream {} {}", method, redact_url(url))
    client = _build_async_client()
    request = client.build_request(method, url, headers=headers)
    try:
        response = await client.send(request, stream=True)
    except BaseException:
        await client.aclose()
        raise
    return response, client


async def _close(response: httpx.Response, client: httpx.AsyncClient) -> None:
    await response.aclose()
    await client.aclose()


def streaming_body(
    response: httpx.Response, client: httpx.AsyncClient
) -> AsyncIterator[bytes]:
    """Async generator that streams upstream bytes and closes resources."""
    logger.trace("Streaming body start (status={})", response.status_code)

    async def _gen():
        try:
            async for chunk in response.aiter_bytes(chunk_size=_STREAM_CHUNK_SIZE):
                yield chunk
        finally:
            await _close(response, client)

    return _gen()


@dataclass
class RewrittenPlaylist:
    body: bytes
    ttl_class: TtlClass
    max_age: int
    rewritten: bool = True
    from_cache: bool = False
    session_id: Optional[str] = None
    content_type: str = HLS_MEDIA_TYPE

    @property
    def cache_control(self) -> str:
        return f"public, max-age={self.max_age}"


@dataclass
class UpstreamStream:
    response: httpx.Response
    client: httpx.AsyncClient
    status_code: int
    headers: dict[str, str]

    def body(self) -> AsyncIterator[bytes]:
        return streaming_body(self.response, self.client)

    async def aclose(self) -> None:
        await _close(self.response, self.client)


class ManifestRewriteProxy:
    """
    Fetches upstream playlists and segments with provider-appropriate headers
    and rewrites every playlist URI to route back through this service.

    A dead upstream (see INVALIDATING_STATUSES) invalidates the resolution
    entry that produced the URL before the error reaches the caller.
    """

    def __init__(
        self,
        *,
        sessions: ProxySessionRegistry,
        playlist_cache: PlaylistCache,
        resolution_cache: Optional[ResolutionCache] = None,
        policy: Optional[TtlPolicy] = None,
        user_agent: str = BROWSER_USER_AGENT,
    ) -> None:
        self.sessions = sessions
        self.playlist_cache = playlist_cache
        self.resolution_cache = resolution_cache
        self.policy = policy or (resolution_cache.policy if resolution_cache else TtlPolicy())
        self.user_agent = user_agent

    # ---- playlists
    async def fetch_playlist(
        self,
        url: str,
        ctx: Optional[PlaylistRewriteContext] = None,
        *,
        content_key: Optional[ContentKey] = None,
        provider: Optional[str] = None,
        session: Optional[ProxySession] = None,
    ) -> RewrittenPlaylist:
        """
        Fetch and rewrite one playlist.

        Passing `session` (nested playlists) keeps the parent's header context
        and resolution identity. A body that is not an HLS playlist is returned
        unmodified and not cached.

        Raises:
            UpstreamRejected: upstream error status after all header modes.
            UpstreamTimeout: upstream did not answer in time.
        """
        _validate_upstream_url(url)
        if session is not None:
            session = self.sessions.open(
                session.context,
                content_key=session.content_key,
                provider=session.provider,
            )
        else:
            session = self.sessions.open(
                ctx or PlaylistRewriteContext(url),
                content_key=content_key,
                provider=provider,
            )
        context = session.context.for_child(url)
        key = playlist_key(url, context.referer_override, context.origin_override)

        cached = self.playlist_cache.get(key)
        if cached is not None and cached.session_id == session.sid:
            logger.debug("Serving cached playlist for {}", redact_url(url))
            return RewrittenPlaylist(
                body=cached.body.encode("utf-8"),
                ttl_class=cached.ttl_class,
                max_age=int(self.policy.ttl_for(cached.ttl_class)),
                from_cache=True,
                session_id=session.sid,
            )

        response, client = await self._open_with_fallback(url, context, method="GET")
        try:
            if response.status_code >= 400:
                await self._reject(response.status_code, url, session)
            raw = await response.aread()
            charset = response.encoding or "utf-8"
            final_url = str(response.url)
            upstream_type = response.headers.get("content-type")
        finally:
            await _close(response, client)

        text = raw.decode(charset, errors="replace")
        ttl_class = classify_playlist_ttl(text)
        try:
            rewritten = rewrite_hls_playlist(
                text,
                base_url=final_url,
                rewrite_url=partial(self._rewrite_uri, session),
            )
        except MalformedPlaylist as exc:
            logger.warning("Passing through unparsable playlist {}: {}", redact_url(url), exc)
            return RewrittenPlaylist(
                body=raw,
                ttl_class=TtlClass.LIVE,
                max_age=int(self.policy.live_seconds),
                rewritten=False,
                session_id=session.sid,
                content_type=upstream_type or "application/octet-stream",
            )

        if self.resolution_cache is not None and session.content_key and session.provider:
            await self.resolution_cache.reclassify(
                session.content_key, session.provider, ttl_class
            )
        self.playlist_cache.set(key, rewritten, ttl_class, session.sid)
        logger.success(
            "Rewrote playlist {} ({} bytes, {})", redact_url(url), len(rewritten), ttl_class.value
        )
        return RewrittenPlaylist(
            body=rewritten.encode("utf-8"),
            ttl_class=ttl_class,
            max_age=int(self.policy.ttl_for(ttl_class)),
            session_id=session.sid,
        )

    def _rewrite_uri(self, session: ProxySession, absolute_url: str, kind: UriKind) -> str:
        if kind is UriKind.PLAYLIST:
            return build_playlist_url(
                absolute_url,
                referer=session.context.referer_override,
                origin=session.context.origin_override,
                content_key=session.content_key,
                provider=session.provider,
                sid=session.sid,
            )
        return build_segment_url(
            absolute_url,
            sid=session.sid,
            referer=session.context.referer_override,
            origin=session.context.origin_override,
        )

    # ---- segments
    async def fetch_segment(
        self,
        url: str,
        *,
        sid: Optional[str] = None,
        referer: Optional[str] = None,
        origin: Optional[str] = None,
        range_header: Optional[str] = None,
        method: str = "GET",
    ) -> UpstreamStream:
        """
        Open an upstream segment (or key/init resource) for streaming.

        The session named by `sid` supplies the header context; without one,
        `referer`/`origin` on the request itself are used.

        Raises:
            SessionNotFound: unknown or expired `sid` and no header fallback.
            UpstreamRejected / UpstreamTimeout: as for playlists.
        """
        _validate_upstream_url(url)
        session = self.sessions.get(sid) if sid else None
        if session is None and sid and not (referer or origin):
            raise SessionNotFound(sid)
        if session is not None:
            context = session.context.for_child(url)
        else:
            context = PlaylistRewriteContext(url, referer, origin)

        response, client = await self._open_with_fallback(
            url, context, method=method, range_header=range_header
        )
        if method == "HEAD" and response.status_code in (405, 501):
            await _close(response, client)
            response, client = await self._open_with_fallback(
                url, context, method="GET", range_header="bytes=0-0"
            )
            await response.aread()
        if response.status_code >= 400:
            status = response.status_code
            await _close(response, client)
            await self._reject(status, url, session)

        headers = filter_headers(response.headers)
        headers = {k: v for k, v in headers.items() if k.lower() != "content-type"}
        headers["Content-Type"] = segment_content_type(url, response.headers.get("content-type"))
        headers["Accept-Ranges"] = "bytes"
        if response.status_code in (200, 206):
            headers["Cache-Control"] = SEGMENT_CACHE_CONTROL
        logger.trace("Segment {} status={}", redact_url(url), response.status_code)
        return UpstreamStream(response, client, response.status_code, headers)

    # ---- upstream
    async def _open_with_fallback(
        self,
        url: str,
        ctx: PlaylistRewriteContext,
        *,
        method: str,
        range_header: Optional[str] = None,
    ) -> tuple[httpx.Response, httpx.AsyncClient]:
        """Try each header mode in turn while upstream answers 401/403/405."""
        result: Optional[tuple[httpx.Response, httpx.AsyncClient]] = None
        tried: list[dict[str, str]] = []
        for mode in FALLBACK_ORDER:
            headers = build_upstream_headers(
                url,
                user_agent=self.user_agent,
                referer_override=ctx.referer_override,
                origin_override=ctx.origin_override,
                mode=mode,
            )
            if headers in tried:
                continue
            tried.append(dict(headers))
            if range_header:
                headers["Range"] = range_header
            try:
                opened = await _open_upstream(url, method=method, headers=headers)
            except httpx.TimeoutException as exc:
                if result is not None:
                    await _close(*result)
                raise UpstreamTimeout(url, UPSTREAM_TIMEOUT_SECONDS) from exc
            except httpx.RequestError:
                if result is not None:
                    await _close(*result)
                raise
            if result is not None:
                await _close(*result)
            result = opened
            if opened[0].status_code not in FALLBACK_STATUSES:
                break
            logger.debug(
                "Upstream {} answered {} with header mode {}",
                redact_url(url),
                opened[0].status_code,
                mode.value,
            )
        assert result is not None
        return result

    async def _reject(self, status: int, url: str, session: Optional[ProxySession]) -> None:
        """Invalidate the owning resolution when the status is fatal, then raise."""
        if status in INVALIDATING_STATUSES:
            self.playlist_cache.invalidate_url(url)
            if (
                self.resolution_cache is not None
                and session is not None
                and session.content_key is not None
            ):
                logger.warning(
                    "Upstream {} for {}; invalidating {} provider={}",
                    status,
                    redact_url(url),
                    session.content_key.cache_key(),
                    session.provider or "*",
                )
                await self.resolution_cache.invalidate(session.content_key, session.provider)
        raise UpstreamRejected(status, url)

    def stats(self) -> dict[str, int]:
        return {"sessions": len(self.sessions), "playlists": len(self.playlist_cache)}

    async def close(self) -> None:
        self.playlist_cache.clear()


def _validate_upstream_url(url: str) -> None:
    """Ensure the upstream URL uses an allowed HTTP(S) scheme."""
    try:
        parsed = urlsplit(url)
    except ValueError as exc:
        raise ValueError("invalid upstream url") from exc
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("invalid upstream url scheme")
