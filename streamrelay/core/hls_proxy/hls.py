from __future__ import annotations

import re
from enum import StrEnum
from typing import Callable
from urllib.parse import unquote, urljoin, urlsplit

from loguru import logger

from streamrelay.core.errors import MalformedPlaylist
from .urls import is_already_proxied

# Tags whose URI attribute points at another playlist.
_PLAYLIST_URI_TAGS = (
    "#EXT-X-MEDIA",
    "#EXT-X-I-FRAME-STREAM-INF",
    "#EXT-X-RENDITION-REPORT",
)
# Tags whose URI attribute points at a raw resource (key, init segment, hint).
_RESOURCE_URI_TAGS = (
    "#EXT-X-KEY",
    "#EXT-X-MAP",
    "#EXT-X-SESSION-KEY",
    "#EXT-X-PRELOAD-HINT",
    "#EXT-X-SESSION-DATA",
    "#EXT-X-PART",
)

_URI_ATTR_RE = re.compile(r'URI=(?:"(?P<uri_quoted>[^"]*)"|(?P<uri_unquoted>[^,]*))')
_STREAM_INF_PREFIX = "#EXT-X-STREAM-INF"
_PLAYLIST_EXTENSIONS = (".m3u8", ".m3u", ".txt")
_PLAYLIST_KEYWORD_RE = re.compile(r"playlist|master", re.IGNORECASE)


class UriKind(StrEnum):
    PLAYLIST = "playlist"
    SEGMENT = "segment"


RewriteUrl = Callable[[str, UriKind], str]


def classify_uri(url: str) -> UriKind:
    """Nested playlist for `.m3u8`/`.m3u`/`.txt` or a playlist/master filename."""
    path = unquote(urlsplit(url).path or "").lower()
    filename = path.rsplit("/", 1)[-1]
    if filename.endswith(_PLAYLIST_EXTENSIONS):
        return UriKind.PLAYLIST
    if _PLAYLIST_KEYWORD_RE.search(filename):
        return UriKind.PLAYLIST
    return UriKind.SEGMENT


def is_playlist_text(text: str) -> bool:
    return text.lstrip("\ufeff").lstrip().startswith("#EXTM3U")


def _resolve_and_rewrite(raw: str, base_url: str, kind: UriKind, rewrite_url: RewriteUrl) -> str:
    if not raw or is_already_proxied(raw):
        return raw
    return rewrite_url(urljoin(base_url, raw), kind)


def _rewrite_uri_attr(line: str, base_url: str, kind: UriKind, rewrite_url: RewriteUrl) -> str:
    """
    Rewrite the URI attributes of one tag line, keeping the original quoting.
    """
    logger.trace("Rewriting HLS tag URI in line: {}", line.strip()[:64])

    def _replace(match: re.Match[str]) -> str:
        raw_uri = match.group("uri_quoted") or match.group("uri_unquoted") or ""
        proxied = _resolve_and_rewrite(raw_uri, base_url, kind, rewrite_url)
        if match.group("uri_quoted") is not None:
            return f'URI="{proxied}"'
        return f"URI={proxied}"

    return _URI_ATTR_RE.sub(_replace, line)


def rewrite_hls_playlist(playlist_text: str, *, base_url: str, rewrite_url: RewriteUrl) -> str:
    """
    Rewrite every URI in an HLS playlist through `rewrite_url`.

    Relative URIs (root-relative, `./` and `../`) are resolved against
    `base_url`. URI lines following `#EXT-X-STREAM-INF` are nested playlists;
    other URI lines are classified by filename. URIs that already point at the
    proxy are left untouched, so rewriting rewritten output is a no-op. Line
    count, tags and the trailing newline are preserved.

    Raises:
        MalformedPlaylist: the text does not start with `#EXTM3U`.
    """
    if not is_playlist_text(playlist_text):
        raise MalformedPlaylist(f"not an HLS playlist: {playlist_text[:32]!r}")
    logger.debug("Rewriting HLS playlist ({} bytes)", len(playlist_text))

    playlist_text = playlist_text.lstrip("\ufeff")
    ends_with_newline = playlist_text.endswith("\n")
    out_lines: list[str] = []
    expect_variant = False

    for line in playlist_text.splitlines():
        stripped = line.strip()
        if not stripped:
            out_lines.append(line)
            continue
        if stripped.startswith("#"):
            if stripped.startswith(_STREAM_INF_PREFIX + ":") or stripped == _STREAM_INF_PREFIX:
                expect_variant = True
                out_lines.append(line)
            elif stripped.startswith(_PLAYLIST_URI_TAGS):
                out_lines.append(_rewrite_uri_attr(line, base_url, UriKind.PLAYLIST, rewrite_url))
            elif stripped.startswith(_RESOURCE_URI_TAGS):
                out_lines.append(_rewrite_uri_attr(line, base_url, UriKind.SEGMENT, rewrite_url))
            else:
                out_lines.append(line)
            continue

        kind = UriKind.PLAYLIST if expect_variant else classify_uri(urljoin(base_url, stripped))
        expect_variant = False
        out_lines.append(_resolve_and_rewrite(stripped, base_url, kind, rewrite_url))

    result = "\n".join(out_lines)
    if ends_with_newline:
        result += "\n"
    logger.debug("Rewrote HLS playlist ({} lines)", len(out_lines))
    return result
