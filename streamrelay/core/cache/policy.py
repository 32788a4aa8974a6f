from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from streamrelay.domain.models import TtlClass

_ENDLIST_TAG = "#EXT-X-ENDLIST"
_VOD_TYPE_TAG = "#EXT-X-PLAYLIST-TYPE:VOD"


@dataclass(frozen=True)
class TtlPolicy:
    """TTL seconds per entry class."""

    vod_seconds: float = 600.0
    live_seconds: float = 30.0
    negative_seconds: float = 7 * 24 * 3600.0

    def __post_init__(self) -> None:
        if min(self.vod_seconds, self.live_seconds, self.negative_seconds) <= 0:
            raise ValueError("TTL values must be positive")
        if self.negative_seconds < 10 * self.vod_seconds:
            logger.warning(
                "Negative TTL {}s is less than 10x the VOD TTL {}s",
                self.negative_seconds,
                self.vod_seconds,
            )

    @classmethod
    def from_config(cls) -> "TtlPolicy":
        from streamrelay.config import (
            CACHE_LIVE_TTL_SECONDS,
            CACHE_NEGATIVE_TTL_SECONDS,
            CACHE_VOD_TTL_SECONDS,
        )

        return cls(
            vod_seconds=float(CACHE_VOD_TTL_SECONDS),
            live_seconds=float(CACHE_LIVE_TTL_SECONDS),
            negative_seconds=float(CACHE_NEGATIVE_TTL_SECONDS),
        )

    def ttl_for(self, ttl_class: TtlClass) -> float:
        if ttl_class is TtlClass.NEGATIVE:
            return self.negative_seconds
        if ttl_class is TtlClass.LIVE:
            return self.live_seconds
        return self.vod_seconds


def classify_playlist_ttl(playlist_text: str) -> TtlClass:
    """
    Return VOD when the playlist is bounded (end-list marker or VOD type tag),
    LIVE otherwise.
    """
    for raw_line in playlist_text.splitlines():
        line = raw_line.strip().upper()
        if line.startswith(_ENDLIST_TAG) or line.startswith(_VOD_TYPE_TAG):
            return TtlClass.VOD
    return TtlClass.LIVE
