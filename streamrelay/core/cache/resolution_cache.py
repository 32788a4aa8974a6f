from __future__ import annotations

import asyncio
import random
import time
from typing import Awaitable, Callable, Optional

import anyio
import anyio.to_thread
from loguru import logger

from streamrelay.domain.models import CacheEntry, ContentKey, TtlClass
from .policy import TtlPolicy
from .store import ResolutionStore

Clock = Callable[[], float]
Loader = Callable[[], Awaitable[CacheEntry]]
_Key = tuple[str, str]


def _slot(key: ContentKey, provider: str) -> _Key:
    return (key.cache_key(), provider)


class ResolutionCache:
    """
    TTL store of resolved stream URLs (positive) and confirmed failures
    (negative), partitioned by provider + content key.

    Concurrent misses for the same (key, provider) share one load: the first
    miss starts a loader task owned by the cache, later callers await the same
    task. Expired entries are dropped when read; a sweep over all entries runs
    on a random fraction of reads.
    """

    def __init__(
        self,
        *,
        policy: TtlPolicy | None = None,
        clock: Clock = time.time,
        store: ResolutionStore | None = None,
        sweep_probability: float = 0.1,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._policy = policy or TtlPolicy()
        self._clock = clock
        self._store = store
        self._sweep_probability = sweep_probability
        self._rng = rng
        self._entries: dict[_Key, CacheEntry] = {}
        self._inflight: dict[_Key, asyncio.Task[CacheEntry]] = {}
        self._background: set[asyncio.Task] = set()
        self._closed = False
        self.hits = 0
        self.misses = 0
        self.loads = 0

    @property
    def policy(self) -> TtlPolicy:
        return self._policy

    def now(self) -> float:
        return self._clock()

    # ---- lifecycle
    async def start(self) -> None:
        self._closed = False
        if self._store is not None:
            await anyio.to_thread.run_sync(self._store.prepare)
        logger.debug(
            "Resolution cache started (persist={})", self._store is not None
        )

    async def close(self) -> None:
        self._closed = True
        pending = list(self._inflight.values()) + list(self._background)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._inflight.clear()
        self._background.clear()
        self._entries.clear()
        logger.debug("Resolution cache closed ({} pending task(s) cancelled)", len(pending))

    # ---- entry construction
    def positive_entry(
        self,
        key: ContentKey,
        provider: str,
        *,
        stream_url: str,
        source_url: str | None = None,
        subtitles: tuple = (),
        headers: dict[str, str] | None = None,
        language: str | None = None,
        ttl_class: TtlClass = TtlClass.VOD,
    ) -> CacheEntry:
        return CacheEntry(
            content_key=key,
            provider=provider,
            stream_url=stream_url,
            source_url=source_url,
            created_at=self.now(),
            ttl=self._policy.ttl_for(ttl_class),
            subtitles=tuple(subtitles),
            ttl_class=ttl_class,
            headers=dict(headers or {}),
            language=language,
        )

    def negative_entry(
        self, key: ContentKey, provider: str, *, reason: str | None = None
    ) -> CacheEntry:
        return CacheEntry.negative(
            key,
            provider,
            created_at=self.now(),
            ttl=self._policy.negative_seconds,
            reason=reason,
        )

    # ---- core operations
    async def get(self, key: ContentKey, provider: str) -> Optional[CacheEntry]:
        """Return a live entry for (key, provider) or None on miss."""
        slot = _slot(key, provider)
        self._maybe_sweep()
        entry = self._memory_get(slot)
        if entry is None and self._store is not None:
            entry = await self._store_get(key, provider)
        if entry is None:
            self.misses += 1
            logger.trace("Resolution cache miss for {} provider={}", slot[0], provider)
            return None
        self.hits += 1
        logger.debug(
            "Resolution cache hit for {} provider={} (negative={})",
            slot[0],
            provider,
            entry.is_negative,
        )
        return entry

    async def put(self, entry: CacheEntry) -> None:
        slot = _slot(entry.content_key, entry.provider)
        self._entries[slot] = entry
        logger.debug(
            "Resolution cache put {} provider={} class={} ttl={}s",
            slot[0],
            entry.provider,
            entry.ttl_class.value,
            int(entry.ttl),
        )
        if self._store is not None:
            await anyio.to_thread.run_sync(self._store.save, entry)

    async def invalidate(self, key: ContentKey, provider: str | None = None) -> int:
        """Drop the entry of one provider, or of every provider when None."""
        cache_key = key.cache_key()
        slots = [
            s
            for s in self._entries
            if s[0] == cache_key and (provider is None or s[1] == provider)
        ]
        for s in slots:
            self._entries.pop(s, None)
        removed = len(slots)
        if self._store is not None:
            removed = max(
                removed,
                await anyio.to_thread.run_sync(self._store.delete, key, provider),
            )
        logger.warning(
            "Invalidated {} resolution entr{} for {} provider={}",
            removed,
            "y" if removed == 1 else "ies",
            cache_key,
            provider or "*",
        )
        return removed

    async def reclassify(
        self, key: ContentKey, provider: str, ttl_class: TtlClass
    ) -> Optional[CacheEntry]:
        """
        Replace a positive entry with a copy stamped for another TTL class.

        Used once the proxy has seen the playlist body and knows whether the
        stream is bounded (VOD) or live.
        """
        current = self._memory_get(_slot(key, provider))
        if current is None or current.is_negative or current.ttl_class is ttl_class:
            return current
        renewed = current.renewed(
            created_at=current.created_at,
            ttl=self._policy.ttl_for(ttl_class),
            ttl_class=ttl_class,
        )
        await self.put(renewed)
        return renewed

    async def get_or_load(
        self,
        key: ContentKey,
        provider: str,
        loader: Loader,
        *,
        skip_cache: bool = False,
    ) -> tuple[CacheEntry, bool]:
        """
        Return (entry, from_cache). On a miss, run `loader` once for all
        concurrent callers of the same (key, provider) and store its entry.

        Exceptions raised by the loader reach every waiter and nothing is
        cached for them.
        """
        if self._closed:
            raise RuntimeError("resolution cache is closed")
        slot = _slot(key, provider)
        if not skip_cache:
            cached = await self.get(key, provider)
            if cached is not None:
                return cached, True

        task = self._inflight.get(slot)
        if task is None:
            # A concurrent load may have completed while the store was read.
            fresh = None if skip_cache else self._memory_get(slot)
            if fresh is not None:
                return fresh, True
            self.loads += 1
            logger.debug("Starting load for {} provider={}", slot[0], provider)
            task = asyncio.ensure_future(self._run_loader(loader))
            self._inflight[slot] = task
            task.add_done_callback(lambda t, s=slot: self._on_load_done(s, t))
        else:
            logger.debug("Joining in-flight load for {} provider={}", slot[0], provider)
        entry = await asyncio.shield(task)
        return entry, False

    def stats(self) -> dict[str, int]:
        return {
            "entries": len(self._entries),
            "negative": sum(1 for e in self._entries.values() if e.is_negative),
            "inflight": len(self._inflight),
            "hits": self.hits,
            "misses": self.misses,
            "loads": self.loads,
        }

    def sweep(self) -> int:
        """Drop every expired in-memory entry; returns the number removed."""
        now = self.now()
        expired = [s for s, e in self._entries.items() if e.is_expired(now)]
        for s in expired:
            self._entries.pop(s, None)
        if expired:
            logger.debug("Resolution cache sweep removed {} entr(ies)", len(expired))
        if self._store is not None and not self._closed:
            self._spawn(anyio.to_thread.run_sync(self._store.prune, now))
        return len(expired)

    # ---- internals
    async def _run_loader(self, loader: Loader) -> CacheEntry:
        entry = await loader()
        await self.put(entry)
        return entry

    def _on_load_done(self, slot: _Key, task: asyncio.Task) -> None:
        if self._inflight.get(slot) is task:
            self._inflight.pop(slot, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("Load for {} provider={} failed: {}", slot[0], slot[1], exc)

    def _memory_get(self, slot: _Key) -> Optional[CacheEntry]:
        entry = self._entries.get(slot)
        if entry is None:
            return None
        if entry.is_expired(self.now()):
            logger.debug("Resolution entry expired for {} provider={}", slot[0], slot[1])
            self._entries.pop(slot, None)
            return None
        return entry

    async def _store_get(self, key: ContentKey, provider: str) -> Optional[CacheEntry]:
        assert self._store is not None
        entry = await anyio.to_thread.run_sync(self._store.load, key, provider)
        if entry is None:
            return None
        if entry.is_expired(self.now()):
            await anyio.to_thread.run_sync(self._store.delete, key, provider)
            return None
        self._entries[_slot(key, provider)] = entry
        logger.trace("Resolution entry restored from store for {}", key.cache_key())
        return entry

    def _maybe_sweep(self) -> None:
        if self._sweep_probability > 0 and self._rng() < self._sweep_probability:
            self.sweep()

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Resolution store maintenance failed: {}", task.exception())
