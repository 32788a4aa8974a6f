from __future__ import annotations

import secrets
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional

from loguru import logger

from streamrelay.domain.models import ContentKey, PlaylistRewriteContext

_Identity = tuple[str, str, str, str, str]


@dataclass(frozen=True)
class ProxySession:
    """Header context shared by every segment of one proxied playlist tree."""

    sid: str
    context: PlaylistRewriteContext
    content_key: Optional[ContentKey]
    provider: Optional[str]
    created_at: float

    def identity(self) -> _Identity:
        return _identity(self.context, self.content_key, self.provider)


def _identity(
    ctx: PlaylistRewriteContext, key: Optional[ContentKey], provider: Optional[str]
) -> _Identity:
    return (
        ctx.original_url,
        ctx.referer_override or "",
        ctx.origin_override or "",
        key.cache_key() if key else "",
        provider or "",
    )


class ProxySessionRegistry:
    """
    Thread-safe sid -> ProxySession map with a sliding lifetime.

    Opening a session for a context that already has a live one refreshes and
    returns it, so the same playlist always rewrites to the same segment URLs.
    """

    def __init__(
        self,
        ttl_seconds: float,
        *,
        clock: Callable[[], float] = time.time,
        max_sessions: int = 10_000,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._max = max_sessions
        self._by_sid: dict[str, ProxySession] = {}
        self._by_identity: dict[_Identity, str] = {}
        self._lock = threading.Lock()

    def _expired(self, session: ProxySession, now: float) -> bool:
        return now - session.created_at > self._ttl

    def _drop(self, sid: str) -> None:
        session = self._by_sid.pop(sid, None)
        if session is not None:
            self._by_identity.pop(session.identity(), None)

    def open(
        self,
        context: PlaylistRewriteContext,
        *,
        content_key: Optional[ContentKey] = None,
        provider: Optional[str] = None,
    ) -> ProxySession:
        now = self._clock()
        ident = _identity(context, content_key, provider)
        with self._lock:
            sid = self._by_identity.get(ident)
            current = self._by_sid.get(sid) if sid else None
            if current is not None and not self._expired(current, now):
                refreshed = replace(current, created_at=now)
                self._by_sid[current.sid] = refreshed
                return refreshed
            if sid:
                self._drop(sid)
            if len(self._by_sid) >= self._max:
                self._prune_locked(now)
            sid = secrets.token_urlsafe(12)
            session = ProxySession(
                sid=sid,
                context=replace(context, session_id=sid),
                content_key=content_key,
                provider=provider,
                created_at=now,
            )
            self._by_sid[sid] = session
            self._by_identity[ident] = sid
        logger.debug("Proxy session {} opened", sid)
        return session

    def get(self, sid: str) -> Optional[ProxySession]:
        with self._lock:
            session = self._by_sid.get(sid)
            if session is None:
                return None
            if self._expired(session, self._clock()):
                logger.debug("Proxy session {} expired", sid)
                self._drop(sid)
                return None
            # sliding lifetime: every segment fetch keeps the session alive
            touched = replace(session, created_at=self._clock())
            self._by_sid[sid] = touched
            return touched

    def _prune_locked(self, now: float) -> int:
        expired = [sid for sid, s in self._by_sid.items() if self._expired(s, now)]
        for sid in expired:
            self._drop(sid)
        if len(self._by_sid) >= self._max:
            # still full: drop the oldest
            oldest = min(self._by_sid.values(), key=lambda s: s.created_at)
            self._drop(oldest.sid)
            expired.append(oldest.sid)
        return len(expired)

    def prune(self) -> int:
        with self._lock:
            return self._prune_locked(self._clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_sid)
