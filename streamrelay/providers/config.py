from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Optional, Pattern
from urllib.parse import urlencode, urlsplit

from streamrelay.core.errors import ProviderUnavailable
from streamrelay.core.extraction.scoring import DEFAULT_CDN_HOST_PATTERNS
from streamrelay.domain.models import ContentKey, MediaType, Track

DEFAULT_PLAY_SELECTORS: tuple[str, ...] = (
    ".vjs-big-play-button",
    ".jw-icon-play",
    ".jw-display-icon-display",
    "#play",
    '[data-action="play"]',
    'button[aria-label="Play"]',
    'button[title="Play"]',
    '.plyr__control[data-plyr="play"]',
    "svg.play-icon-main",
)

DEFAULT_PLAY_XPATHS: tuple[str, ...] = (
    "//button[.//svg[contains(@class,'play-icon-main')]]",
    "//*[contains(@class,'play') and (self::button or self::div)]",
)


class ProviderKind(StrEnum):
    BROWSER = "browser"
    API = "api"
    VIDIFY = "vidify"


@dataclass(frozen=True)
class ProviderConfig:
    """
    Everything the resolver and the extraction engine need to know about one
    provider. Adding a provider means adding one of these records.

    Attributes:
        name: Registry key, also the cache partition name.
        kind: `browser` (player page driven by the extraction engine) or
            `api` (JSON endpoint) or `vidify` (encrypted Vidify
            endpoint).
        track: Audio track the provider serves.
        movie_url / tv_url: URL templates; placeholders `{base}`, `{id}`,
            `{season}`, `{episode}`.
        query: Extra query parameters appended to the target URL.
        referer / origin: Headers the stream CDN expects; defaults to the
            player page origin for browser providers.
        allowed_domains: Hosts added to the browser allowlist for this provider.
        play_selectors / play_xpaths: Play-button locators tried every round.
        playlist_patterns: Regexes marking `.txt` URLs that are really playlists.
        cdn_host_patterns: Hosts scored as CDN proxies.
        language: Track label picked from multi-language API responses.
        api_base_url: Base URL substituted for `{base}`.
    """

    name: str
    kind: ProviderKind
    track: Track
    movie_url: str
    tv_url: str
    query: tuple[tuple[str, str], ...] = ()
    referer: Optional[str] = None
    origin: Optional[str] = None
    allowed_domains: tuple[str, ...] = ()
    play_selectors: tuple[str, ...] = DEFAULT_PLAY_SELECTORS
    play_xpaths: tuple[str, ...] = DEFAULT_PLAY_XPATHS
    playlist_patterns: tuple[Pattern[str], ...] = ()
    cdn_host_patterns: tuple[Pattern[str], ...] = DEFAULT_CDN_HOST_PATTERNS
    language: Optional[str] = None
    api_base_url: Optional[str] = None

    @property
    def is_browser(self) -> bool:
        return self.kind is ProviderKind.BROWSER

    def target_url(self, key: ContentKey) -> str:
        template = self.tv_url if key.media_type is MediaType.TV else self.movie_url
        if not template:
            raise ProviderUnavailable(self.name, f"no {key.media_type.value} template")
        if "{base}" in template and not self.api_base_url:
            raise ProviderUnavailable(self.name, "base URL not configured")
        url = template.format(
            base=(self.api_base_url or "").rstrip("/"),
            id=key.id,
            season=key.season if key.season is not None else "",
            episode=key.episode if key.episode is not None else "",
        )
        if self.query:
            sep = "&" if "?" in url else "?"
            url = f"{url}{sep}{urlencode(self.query)}"
        return url

    def stream_headers(self, target_url: str) -> dict[str, str]:
        """Referer/Origin to present when fetching this provider's streams."""
        referer = self.referer
        if referer is None and self.is_browser:
            parts = urlsplit(target_url)
            referer = f"{parts.scheme}://{parts.netloc}/"
        headers: dict[str, str] = {}
        if referer:
            headers["Referer"] = referer
            origin = self.origin
            if origin is None:
                parts = urlsplit(referer)
                origin = f"{parts.scheme}://{parts.netloc}"
            headers["Origin"] = origin
        return headers
