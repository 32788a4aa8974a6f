from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from loguru import logger

from streamrelay.core.cache.policy import TtlPolicy
from streamrelay.domain.models import TtlClass

PlaylistKey = tuple[str, str, str]


def playlist_key(
    url: str, referer: Optional[str] = None, origin: Optional[str] = None
) -> PlaylistKey:
    return (url, referer or "", origin or "")


@dataclass(frozen=True)
class CachedPlaylist:
    body: str
    ttl_class: TtlClass
    session_id: Optional[str]
    stored_at: float


class PlaylistCache:
    """
    Bounded LRU of rewritten playlists with a TTL per VOD/live class.
    """

    def __init__(
        self,
        *,
        max_entries: int = 512,
        policy: TtlPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._max = max(1, max_entries)
        self._policy = policy or TtlPolicy()
        self._clock = clock
        self._data: OrderedDict[PlaylistKey, CachedPlaylist] = OrderedDict()
        self._lock = threading.Lock()

    def _is_fresh(self, entry: CachedPlaylist) -> bool:
        return self._clock() - entry.stored_at <= self._policy.ttl_for(entry.ttl_class)

    def get(self, key: PlaylistKey) -> Optional[CachedPlaylist]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            if not self._is_fresh(entry):
                logger.debug("Playlist cache expired ({})", entry.ttl_class.value)
                self._data.pop(key, None)
                return None
            self._data.move_to_end(key)
            logger.trace("Playlist cache hit")
            return entry

    def set(
        self, key: PlaylistKey, body: str, ttl_class: TtlClass, session_id: Optional[str]
    ) -> CachedPlaylist:
        entry = CachedPlaylist(body, ttl_class, session_id, self._clock())
        with self._lock:
            self._data[key] = entry
            self._data.move_to_end(key)
            while len(self._data) > self._max:
                self._data.popitem(last=False)
        return entry

    def invalidate_url(self, url: str) -> int:
        with self._lock:
            keys = [k for k in self._data if k[0] == url]
            for k in keys:
                self._data.pop(k, None)
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
