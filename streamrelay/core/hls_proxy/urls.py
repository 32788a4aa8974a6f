from __future__ import annotations

from typing import Mapping, Optional
from urllib.parse import urlencode

from loguru import logger

from streamrelay.config import PUBLIC_BASE_URL
from streamrelay.domain.models import ContentKey

PLAYLIST_PATH = "/proxy/playlist"
SEGMENT_PATH = "/proxy/segment"


def _encode_params(params: Mapping[str, Optional[str]]) -> str:
    """Deterministic query string: keys sorted, empty values dropped."""
    return urlencode(sorted((k, v) for k, v in params.items() if v))


def _build_url(path: str, params: Mapping[str, Optional[str]]) -> str:
    """
    Build a proxy URL under PUBLIC_BASE_URL, or a same-origin relative URL
    when no public base is configured.
    """
    base = (PUBLIC_BASE_URL or "").rstrip("/")
    query = _encode_params(params)
    full = f"{base}{path}"
    return f"{full}?{query}" if query else full


def is_already_proxied(url: str) -> bool:
    """Return whether a URL targets this proxy's playlist or segment endpoint."""
    prefixes = [PLAYLIST_PATH, SEGMENT_PATH]
    base = (PUBLIC_BASE_URL or "").rstrip("/")
    if base:
        prefixes += [base + PLAYLIST_PATH, base + SEGMENT_PATH]
    is_proxied = any(url == p or url.startswith(p + "?") for p in prefixes)
    logger.trace("URL already proxied? {}", is_proxied)
    return is_proxied


def build_playlist_url(
    upstream_url: str,
    *,
    referer: Optional[str] = None,
    origin: Optional[str] = None,
    content_key: Optional[ContentKey] = None,
    provider: Optional[str] = None,
    sid: Optional[str] = None,
) -> str:
    """
    Build a `/proxy/playlist` URL for an upstream playlist.

    The content key and provider ride along so an upstream failure seen by the
    proxy can invalidate the resolution that produced the URL.
    """
    if is_already_proxied(upstream_url):
        return upstream_url
    params: dict[str, Optional[str]] = {
        "url": upstream_url,
        "referer": referer,
        "origin": origin,
        "provider": provider,
        "sid": sid,
    }
    if content_key is not None:
        params.update(content_key.as_params())
    return _build_url(PLAYLIST_PATH, params)


def build_segment_url(
    upstream_url: str,
    *,
    sid: Optional[str] = None,
    referer: Optional[str] = None,
    origin: Optional[str] = None,
) -> str:
    """
    Build a `/proxy/segment` URL.

    The session id carries the header context; referer/origin ride along so
    the segment stays fetchable after the session has expired.
    """
    if is_already_proxied(upstream_url):
        return upstream_url
    return _build_url(
        SEGMENT_PATH, {"sid": sid, "u": upstream_url, "referer": referer, "origin": origin}
    )
