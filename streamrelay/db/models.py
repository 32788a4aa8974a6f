"""Database models for StreamRelay.

Models:
    - ResolutionRecord: persisted copy of a ResolutionCache entry, positive
      or negative, keyed by (content cache key, provider)
"""

from __future__ import annotations

from typing import Optional

from loguru import logger
from sqlmodel import Column, Field, JSON, Session, select

from streamrelay.db.base import ModelBase
from streamrelay.domain.models import (
    CacheEntry,
    ContentKey,
    SubtitleFormat,
    SubtitleRef,
    TtlClass,
)


# ---------------- Semi-Cache: resolved streams
class ResolutionRecord(ModelBase, table=True):
    cache_key: str = Field(primary_key=True)
    provider: str = Field(primary_key=True)
    media_type: str
    content_id: str = Field(index=True)
    season: Optional[int] = None
    episode: Optional[int] = None
    stream_url: Optional[str] = None
    source_url: Optional[str] = None
    is_negative: bool = Field(default=False, index=True)
    ttl_class: str = "vod"
    ttl: float
    created_at: float = Field(index=True)
    language: Optional[str] = None
    reason: Optional[str] = None
    subtitles: Optional[list] = Field(sa_column=Column(JSON), default=None)
    headers: Optional[dict] = Field(sa_column=Column(JSON), default=None)

    def to_entry(self) -> CacheEntry:
        key = ContentKey(self.media_type, self.content_id, self.season, self.episode)
        subs = tuple(
            SubtitleRef(
                url=s["url"],
                language_code=s.get("language_code", "und"),
                label=s.get("label", ""),
                format=SubtitleFormat(s.get("format", "vtt")),
            )
            for s in (self.subtitles or [])
        )
        return CacheEntry(
            content_key=key,
            provider=self.provider,
            stream_url=self.stream_url,
            source_url=self.source_url,
            created_at=self.created_at,
            ttl=self.ttl,
            subtitles=subs,
            is_negative=self.is_negative,
            ttl_class=TtlClass(self.ttl_class),
            headers=dict(self.headers or {}),
            language=self.language,
            reason=self.reason,
        )


# ---------------- CRUD Helper Functions
def upsert_resolution(session: Session, entry: CacheEntry) -> ResolutionRecord:
    """
    Create or replace the persisted record for the entry's (key, provider).

    Returns:
        ResolutionRecord: The persisted record reflecting the entry.
    """
    key = entry.content_key
    logger.debug(f"Upserting resolution record {key.cache_key()} provider={entry.provider}")
    rec = session.get(ResolutionRecord, (key.cache_key(), entry.provider))
    if rec is None:
        rec = ResolutionRecord(
            cache_key=key.cache_key(),
            provider=entry.provider,
            media_type=key.media_type.value,
            content_id=key.id,
            season=key.season,
            episode=key.episode,
            ttl=entry.ttl,
            created_at=entry.created_at,
        )
    rec.stream_url = entry.stream_url
    rec.source_url = entry.source_url
    rec.is_negative = entry.is_negative
    rec.ttl_class = entry.ttl_class.value
    rec.ttl = entry.ttl
    rec.created_at = entry.created_at
    rec.language = entry.language
    rec.reason = entry.reason
    rec.subtitles = [
        {
            "url": s.url,
            "language_code": s.language_code,
            "label": s.label,
            "format": s.format.value,
        }
        for s in entry.subtitles
    ]
    rec.headers = dict(entry.headers)
    session.add(rec)
    try:
        session.commit()
        session.refresh(rec)
    except Exception as e:
        logger.error(f"Failed to upsert resolution record: {e}")
        raise
    return rec


def get_resolution(
    session: Session, key: ContentKey, provider: str
) -> Optional[ResolutionRecord]:
    rec = session.get(ResolutionRecord, (key.cache_key(), provider))
    if rec:
        logger.trace(f"Resolution record found for {key.cache_key()} provider={provider}")
    return rec


def delete_resolutions(
    session: Session, key: ContentKey, provider: Optional[str] = None
) -> int:
    """Delete the record for one provider, or every provider of the key."""
    stmt = select(ResolutionRecord).where(ResolutionRecord.cache_key == key.cache_key())
    if provider:
        stmt = stmt.where(ResolutionRecord.provider == provider)
    rows = session.exec(stmt).all()
    for row in rows:
        session.delete(row)
    session.commit()
    if rows:
        logger.debug(f"Deleted {len(rows)} resolution record(s) for {key.cache_key()}")
    return len(rows)


def prune_expired(session: Session, now: float) -> int:
    """Delete every record whose TTL has elapsed at `now`."""
    rows = session.exec(select(ResolutionRecord)).all()
    expired = [r for r in rows if now - r.created_at > r.ttl]
    for row in expired:
        session.delete(row)
    if expired:
        session.commit()
        logger.debug(f"Pruned {len(expired)} expired resolution record(s)")
    return len(expired)


__all__ = [
    "ResolutionRecord",
    "upsert_resolution",
    "get_resolution",
    "delete_resolutions",
    "prune_expired",
]
