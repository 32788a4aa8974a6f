from __future__ import annotations

import re
from typing import Iterable, Optional, Pattern
from urllib.parse import unquote, urljoin, urlsplit

from bs4 import BeautifulSoup  # type: ignore
from loguru import logger

from streamrelay.domain.models import CandidateSource, StreamCandidate

# Score at which a candidate is treated as the master playlist and probing stops.
MASTER_SCORE_THRESHOLD = 150

SCORE_M3U8_PATH = 100
SCORE_MASTER_NAME = 50
SCORE_CDN_PROXY_HOST = 30
SCORE_INDEX_DECOY = -20

DEFAULT_CDN_HOST_PATTERNS: tuple[Pattern[str], ...] = (
    re.compile(r"(^|\.)workers\.dev$", re.IGNORECASE),
)

_MASTER_NAME_RE = re.compile(r"(^|[^a-z])(master|playlist)([^a-z]|$)", re.IGNORECASE)
_INDEX_DECOY_RE = re.compile(r"^index([^a-z]|$)", re.IGNORECASE)
_M3U8_ANYWHERE_RE = re.compile(r"\.m3u8(\?|#|/|&|$)", re.IGNORECASE)
_INLINE_M3U8_RE = re.compile(r"""https?://[^"'\s<>\\]+\.m3u8[^"'\s<>\\]*""", re.IGNORECASE)
_SUBTITLE_PATH_RE = re.compile(r"\.(vtt|srt)$", re.IGNORECASE)
_HLS_CONTENT_TYPES = {
    "application/vnd.apple.mpegurl",
    "application/x-mpegurl",
    "audio/mpegurl",
    "audio/x-mpegurl",
}


def _path_and_filename(url: str) -> tuple[str, str]:
    path = unquote(urlsplit(url).path or "")
    return path, path.rsplit("/", 1)[-1]


def score_url(
    url: str, cdn_host_patterns: Iterable[Pattern[str]] = DEFAULT_CDN_HOST_PATTERNS
) -> int:
    """
    Score a playlist URL so the real master playlist outranks decoys.

    +100 when the path ends in `.m3u8`, +50 for a master/playlist filename,
    +30 for a CDN-proxy host, -20 for an `index` filename.
    """
    path, filename = _path_and_filename(url)
    host = (urlsplit(url).hostname or "").lower()
    score = 0
    if path.lower().endswith(".m3u8"):
        score += SCORE_M3U8_PATH
    if _MASTER_NAME_RE.search(filename):
        score += SCORE_MASTER_NAME
    if host and any(p.search(host) for p in cdn_host_patterns):
        score += SCORE_CDN_PROXY_HOST
    if _INDEX_DECOY_RE.search(filename):
        score += SCORE_INDEX_DECOY
    return score


def is_playlist_url(
    url: str,
    playlist_patterns: Iterable[Pattern[str]] = (),
    content_type: Optional[str] = None,
) -> bool:
    """
    Return whether a network URL looks like an HLS playlist.

    Matches `.m3u8` anywhere in the URL, any response declared with an HLS
    content type, and `.txt` URLs matching a provider-specific pattern.
    """
    if not url.lower().startswith(("http://", "https://")):
        return False
    if _M3U8_ANYWHERE_RE.search(url):
        return True
    if content_type:
        mime = content_type.split(";")[0].strip().lower()
        if mime in _HLS_CONTENT_TYPES:
            return True
    path, _ = _path_and_filename(url)
    if path.lower().endswith(".txt"):
        return any(p.search(url) for p in playlist_patterns)
    return False


def is_subtitle_url(url: str) -> bool:
    path, _ = _path_and_filename(url)
    return bool(_SUBTITLE_PATH_RE.search(path))


class CandidateSet:
    """
    Deduplicated, scored playlist URLs seen during one extraction session.

    Ranking is by score, then first-seen order, so replaying the same network
    trace always elects the same candidate.
    """

    def __init__(
        self, cdn_host_patterns: Iterable[Pattern[str]] = DEFAULT_CDN_HOST_PATTERNS
    ) -> None:
        self._cdn_host_patterns = tuple(cdn_host_patterns)
        self._by_url: dict[str, StreamCandidate] = {}

    def add(self, url: str, source: CandidateSource) -> Optional[StreamCandidate]:
        """Record a URL; returns the new candidate, or None for a duplicate."""
        key = url.split("#", 1)[0]
        if key in self._by_url:
            return None
        candidate = StreamCandidate(
            url=key,
            source=source,
            score=score_url(key, self._cdn_host_patterns),
            seen_order=len(self._by_url),
        )
        self._by_url[key] = candidate
        logger.trace(
            "Candidate #{} score={} source={}", candidate.seen_order, candidate.score, source.value
        )
        return candidate

    def ranked(self) -> list[StreamCandidate]:
        return sorted(self._by_url.values(), key=lambda c: (-c.score, c.seen_order))

    def best(self) -> Optional[StreamCandidate]:
        ranked = self.ranked()
        return ranked[0] if ranked else None

    def __len__(self) -> int:
        return len(self._by_url)

    def __bool__(self) -> bool:
        return bool(self._by_url)


def extract_dom_candidates(html: str, base_url: str) -> list[str]:
    """
    Collect playlist URLs embedded in a rendered page.

    Looks at `<video src>`, `<source src>`, inline scripts and finally the raw
    markup. Relative media sources are resolved against `base_url`.
    """
    if not html:
        return []
    found: list[str] = []

    def _push(url: str) -> None:
        url = url.strip().replace("\\/", "/")
        if url and url not in found:
            found.append(url)

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(["video", "source"]):
        src = tag.get("src") or tag.get("data-src")
        if src and ".m3u8" in src.lower():
            _push(urljoin(base_url, src))
    for script in soup.find_all("script"):
        text = script.string or script.get_text() or ""
        for match in _INLINE_M3U8_RE.findall(text.replace("\\/", "/")):
            _push(match)
    for match in _INLINE_M3U8_RE.findall(html.replace("\\/", "/")):
        _push(match)
    return found
