"""Domain types shared by the cache, extraction engine, resolver and proxy.

Everything here is a plain dataclass; persistence lives in `streamrelay.db`
and HTTP response shapes live in the routers.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any, Optional


class MediaType(StrEnum):
    MOVIE = "movie"
    TV = "tv"


class CandidateSource(StrEnum):
    REQUEST = "request"
    RESPONSE = "response"
    DOM = "dom"
    FINISHED = "finished"


class TtlClass(StrEnum):
    VOD = "vod"
    LIVE = "live"
    NEGATIVE = "negative"


class SubtitleFormat(StrEnum):
    VTT = "vtt"
    ASS = "ass"
    SRT = "srt"


class Track(StrEnum):
    """Audio tracks assembled into one UnifiedResolution."""

    ORIGINAL = "original"
    ENGLISH_DUB = "englishDub"
    LATINO = "latino"


@dataclass(frozen=True)
class ContentKey:
    """
    Identifies one movie or one TV episode.

    For movies the season/episode fields are always None, so two keys for the
    same movie compare equal regardless of what the caller passed.
    """

    media_type: MediaType
    id: str
    season: Optional[int] = None
    episode: Optional[int] = None

    def __post_init__(self) -> None:
        if not str(self.id).strip():
            raise ValueError("content id must not be empty")
        object.__setattr__(self, "media_type", MediaType(self.media_type))
        object.__setattr__(self, "id", str(self.id).strip())
        if self.media_type is MediaType.MOVIE:
            object.__setattr__(self, "season", None)
            object.__setattr__(self, "episode", None)
            return
        if self.season is None or self.episode is None:
            raise ValueError("tv content requires season and episode")
        if self.season < 0 or self.episode < 0:
            raise ValueError("season/episode must be non-negative")

    @classmethod
    def parse(
        cls,
        media_type: str,
        id: str,
        season: str | int | None = None,
        episode: str | int | None = None,
    ) -> "ContentKey":
        """Build a key from loosely typed query values; raises ValueError."""
        try:
            mt = MediaType((media_type or "").strip().lower())
        except ValueError as exc:
            raise ValueError(f"invalid media type: {media_type!r}") from exc
        if mt is MediaType.MOVIE:
            return cls(mt, id)
        s = int(season) if season not in (None, "") else None
        e = int(episode) if episode not in (None, "") else None
        return cls(mt, id, s, e)

    def cache_key(self) -> str:
        if self.media_type is MediaType.TV:
            return f"tv_{self.id}_s{self.season}e{self.episode}"
        return f"movie_{self.id}"

    def as_params(self) -> dict[str, str]:
        params = {"type": self.media_type.value, "id": self.id}
        if self.media_type is MediaType.TV:
            params["season"] = str(self.season)
            params["episode"] = str(self.episode)
        return params


@dataclass(frozen=True)
class SubtitleRef:
    url: str
    language_code: str
    label: str
    format: SubtitleFormat = SubtitleFormat.VTT

    def to_dict(self) -> dict[str, str]:
        return {
            "url": self.url,
            "languageCode": self.language_code,
            "label": self.label,
            "format": self.format.value,
        }


@dataclass(frozen=True)
class CacheEntry:
    """
    One resolution outcome for (content key, provider).

    Entries are immutable: refreshing a stream produces a new entry. The
    stream URL may be a short-lived signed URL and is never dereferenced by
    the cache itself.
    """

    content_key: ContentKey
    provider: str
    stream_url: Optional[str]
    source_url: Optional[str]
    created_at: float
    ttl: float
    subtitles: tuple[SubtitleRef, ...] = ()
    is_negative: bool = False
    ttl_class: TtlClass = TtlClass.VOD
    headers: dict[str, str] = field(default_factory=dict, compare=False)
    language: Optional[str] = None
    reason: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl

    @classmethod
    def negative(
        cls,
        content_key: ContentKey,
        provider: str,
        *,
        created_at: float,
        ttl: float,
        reason: str | None = None,
    ) -> "CacheEntry":
        return cls(
            content_key=content_key,
            provider=provider,
            stream_url=None,
            source_url=None,
            created_at=created_at,
            ttl=ttl,
            is_negative=True,
            ttl_class=TtlClass.NEGATIVE,
            reason=reason,
        )

    def renewed(self, *, created_at: float, ttl: float, ttl_class: TtlClass) -> "CacheEntry":
        """Return a copy stamped with a new creation time and TTL class."""
        return replace(self, created_at=created_at, ttl=ttl, ttl_class=ttl_class)


@dataclass(frozen=True)
class StreamCandidate:
    url: str
    source: CandidateSource
    score: int
    seen_order: int = 0


@dataclass(frozen=True)
class PlaylistRewriteContext:
    """Carried through master -> media playlist -> segment rewriting."""

    original_url: str
    referer_override: Optional[str] = None
    origin_override: Optional[str] = None
    session_id: Optional[str] = None

    def for_child(self, url: str) -> "PlaylistRewriteContext":
        return replace(self, original_url=url)


_ANIMATION_GENRES = frozenset({"animation", "16"})
_ANIME_COUNTRIES = frozenset({"JP", "KR"})


@dataclass(frozen=True)
class ContentHints:
    """Catalog metadata supplied by the caller alongside a ContentKey."""

    origin_countries: tuple[str, ...] = ()
    is_anime: bool = False
    anime_title: Optional[str] = None
    genres: tuple[str, ...] = ()

    @property
    def anime(self) -> bool:
        """Explicit flag, or an Animation title (genre name or TMDB id 16) from JP/KR."""
        if self.is_anime:
            return True
        animated = any(g.strip().lower() in _ANIMATION_GENRES for g in self.genres)
        return animated and bool(_ANIME_COUNTRIES & {c.upper() for c in self.origin_countries})


@dataclass
class ProviderStream:
    provider: str
    stream_url: str
    upstream_url: str
    source_url: Optional[str] = None
    subtitles: list[SubtitleRef] = field(default_factory=list)
    cached: bool = False
    headers: dict[str, str] = field(default_factory=dict)
    language: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "streamUrl": self.stream_url,
            "upstreamUrl": self.upstream_url,
            "sourceUrl": self.source_url,
            "subtitles": [s.to_dict() for s in self.subtitles],
            "cached": self.cached,
            "language": self.language,
        }


@dataclass
class ResolutionMetadata:
    elapsed_ms: int = 0
    success_count: int = 0
    is_anime: bool = False
    anime_title: Optional[str] = None
    errors: dict[str, str] = field(default_factory=dict)


@dataclass
class UnifiedResolution:
    original: Optional[ProviderStream] = None
    english_dub: Optional[ProviderStream] = None
    latino: Optional[ProviderStream] = None
    metadata: ResolutionMetadata = field(default_factory=ResolutionMetadata)

    def track(self, track: Track) -> Optional[ProviderStream]:
        return {
            Track.ORIGINAL: self.original,
            Track.ENGLISH_DUB: self.english_dub,
            Track.LATINO: self.latino,
        }[track]

    def set_track(self, track: Track, stream: Optional[ProviderStream]) -> None:
        if track is Track.ORIGINAL:
            self.original = stream
        elif track is Track.ENGLISH_DUB:
            self.english_dub = stream
        else:
            self.latino = stream

    @property
    def is_empty(self) -> bool:
        return self.metadata.success_count == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "original": self.original.to_dict() if self.original else None,
            "englishDub": self.english_dub.to_dict() if self.english_dub else None,
            "latino": self.latino.to_dict() if self.latino else None,
            "metadata": {
                "elapsedMs": self.metadata.elapsed_ms,
                "successCount": self.metadata.success_count,
                "isAnime": self.metadata.is_anime,
                "animeTitle": self.metadata.anime_title,
                "errors": dict(self.metadata.errors),
            },
        }
