"""JSON stream APIs (the fast path ahead of browser extraction)."""

from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from typing import Any, Iterable, Optional
from urllib.parse import urljoin

import anyio
import anyio.to_thread
import requests
from loguru import logger

from streamrelay.core.errors import (
    NotFound,
    ProviderUnavailable,
    UpstreamRejected,
    UpstreamTimeout,
)
from streamrelay.domain.models import ContentKey, SubtitleFormat, SubtitleRef
from streamrelay.utils.http_client import get as http_get
from streamrelay.utils.logger import redact_url
from .config import ProviderConfig


@dataclass(frozen=True)
class ApiStream:
    url: str
    language: Optional[str] = None
    referer: Optional[str] = None
    origin: Optional[str] = None
    subtitles: tuple[SubtitleRef, ...] = ()


def _first_str(item: dict, *names: str) -> Optional[str]:
    for name in names:
        value = item.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _parse_subtitles(raw: Any, base_url: str) -> tuple[SubtitleRef, ...]:
    if not isinstance(raw, list):
        return ()
    out: list[SubtitleRef] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        url = _first_str(item, "url", "file", "src")
        if not url:
            continue
        url = urljoin(base_url, url)
        code = (_first_str(item, "languageCode", "lang", "language") or "und").lower()
        label = _first_str(item, "label", "display", "language") or code
        fmt = (_first_str(item, "format") or url.rsplit(".", 1)[-1]).lower()
        try:
            sub_format = SubtitleFormat(fmt)
        except ValueError:
            sub_format = SubtitleFormat.VTT
        out.append(SubtitleRef(url=url, language_code=code[:8], label=label, format=sub_format))
    return tuple(out)


def _parse_stream(item: Any, base_url: str, language: Optional[str]) -> Optional[ApiStream]:
    if isinstance(item, str):
        return ApiStream(url=urljoin(base_url, item), language=language)
    if not isinstance(item, dict):
        return None
    url = _first_str(item, "url", "file", "link", "stream")
    if not url:
        return None
    headers = item.get("headers") if isinstance(item.get("headers"), dict) else {}
    referer = _first_str(item, "referer", "referrer") or _first_str(headers, "Referer", "referer")
    origin = _first_str(item, "origin") or _first_str(headers, "Origin", "origin")
    return ApiStream(
        url=urljoin(base_url, url),
        language=_first_str(item, "language", "lang", "label") or language,
        referer=referer,
        origin=origin,
        subtitles=_parse_subtitles(item.get("subtitles") or item.get("captions"), base_url),
    )


def parse_api_payload(data: Any, base_url: str = "") -> list[ApiStream]:
    """
    Normalise the JSON shapes the stream APIs return into a flat list.

    Accepted shapes: `{"sources": {"<language>": {...}}}`, `{"sources": [...]}`,
    `{"streams": [...]}` and a bare list. Top-level `subtitles` are attached to
    every stream that carries none of its own.
    """
    items: list[tuple[Any, Optional[str]]] = []
    shared_subs: tuple[SubtitleRef, ...] = ()
    if isinstance(data, dict):
        shared_subs = _parse_subtitles(data.get("subtitles"), base_url)
        sources = data.get("sources", data.get("streams"))
        if isinstance(sources, dict):
            items = [(v, str(k)) for k, v in sources.items()]
        elif isinstance(sources, list):
            items = [(v, None) for v in sources]
        elif _first_str(data, "url", "file", "link", "stream"):
            items = [(data, None)]
    elif isinstance(data, list):
        items = [(v, None) for v in data]

    streams: list[ApiStream] = []
    for raw, language in items:
        stream = _parse_stream(raw, base_url, language)
        if stream is None:
            continue
        if not stream.subtitles and shared_subs:
            stream = ApiStream(
                url=stream.url,
                language=stream.language,
                referer=stream.referer,
                origin=stream.origin,
                subtitles=shared_subs,
            )
        streams.append(stream)
    return streams


def select_stream(streams: Iterable[ApiStream], language: Optional[str]) -> Optional[ApiStream]:
    """Pick the stream labelled `language` (case-insensitive); first stream otherwise."""
    streams = list(streams)
    if not streams:
        return None
    if not language:
        return streams[0]
    wanted = language.casefold()
    for stream in streams:
        if (stream.language or "").casefold() == wanted:
            return stream
    if wanted == "original":
        unlabelled = [s for s in streams if not s.language]
        return unlabelled[0] if unlabelled else streams[0]
    return None


def fetch_api_streams(provider: ProviderConfig, url: str, timeout: float) -> list[ApiStream]:
    """Blocking API call; run it in a worker thread."""
    logger.debug(f"API provider {provider.name}: GET {redact_url(url)}")
    try:
        resp = http_get(url, timeout=timeout)
    except requests.Timeout as exc:
        raise UpstreamTimeout(url, timeout) from exc
    except requests.RequestException as exc:
        raise ProviderUnavailable(provider.name, f"request failed: {exc}") from exc
    if resp.status_code == 404:
        return []
    if resp.status_code >= 400:
        raise UpstreamRejected(resp.status_code, url)
    try:
        data = resp.json()
    except ValueError as exc:
        raise ProviderUnavailable(provider.name, "response is not JSON") from exc
    return parse_api_payload(data, base_url=url)


async def resolve_via_api(
    provider: ProviderConfig, key: ContentKey, *, timeout: float
) -> ApiStream:
    """
    Resolve one content key through an API provider.

    Raises:
        NotFound: the API answered but has no stream for the requested track.
        UpstreamTimeout: no answer within `timeout` seconds.
        ProviderUnavailable: base URL unset, transport error or non-JSON body.
        UpstreamRejected: the API answered with an error status.
    """
    url = provider.target_url(key)
    try:
        with anyio.fail_after(timeout):
            streams = await anyio.to_thread.run_sync(
                partial(fetch_api_streams, provider, url, timeout),
                abandon_on_cancel=True,
            )
    except TimeoutError as exc:
        raise UpstreamTimeout(url, timeout) from exc
    stream = select_stream(streams, provider.language)
    if stream is None:
        raise NotFound(key.cache_key(), f"{provider.name} returned no '{provider.language}' stream")
    logger.debug(
        f"API provider {provider.name} resolved {key.cache_key()} -> {redact_url(stream.url)}"
    )
    return stream
