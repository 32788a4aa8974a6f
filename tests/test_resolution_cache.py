import asyncio

import pytest
from sqlmodel import create_engine

from streamrelay.core.cache import (
    ResolutionCache,
    SqlResolutionStore,
    TtlPolicy,
    classify_playlist_ttl,
)
from streamrelay.domain.models import ContentKey, MediaType, TtlClass

MOVIE = ContentKey(MediaType.MOVIE, "603")
EPISODE = ContentKey(MediaType.TV, "1399", 1, 2)


def _cache(clock, **kw) -> ResolutionCache:
    return ResolutionCache(policy=TtlPolicy(), clock=clock, sweep_probability=0.0, **kw)


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_load(clock):
    cache = _cache(clock)
    calls = {"n": 0}
    gate = asyncio.Event()

    async def loader():
        calls["n"] += 1
        await gate.wait()
        return cache.positive_entry(MOVIE, "vidlink", stream_url="https://cdn.example/master.m3u8")

    first = asyncio.ensure_future(cache.get_or_load(MOVIE, "vidlink", loader))
    second = asyncio.ensure_future(cache.get_or_load(MOVIE, "vidlink", loader))
    await asyncio.sleep(0)
    gate.set()
    (entry_a, cached_a), (entry_b, cached_b) = await asyncio.gather(first, second)

    assert calls["n"] == 1
    assert entry_a is entry_b
    assert cached_a is False and cached_b is False
    assert (await cache.get(MOVIE, "vidlink")) is entry_a
    await cache.close()


@pytest.mark.asyncio
async def test_loader_failure_reaches_every_waiter_and_is_not_cached(clock):
    cache = _cache(clock)
    calls = {"n": 0}

    async def loader():
        calls["n"] += 1
        await asyncio.sleep(0)
        raise RuntimeError("browser crashed")

    results = await asyncio.gather(
        cache.get_or_load(MOVIE, "vidlink", loader),
        cache.get_or_load(MOVIE, "vidlink", loader),
        return_exceptions=True,
    )
    assert calls["n"] == 1
    assert all(isinstance(r, RuntimeError) for r in results)
    assert await cache.get(MOVIE, "vidlink") is None
    await cache.close()


@pytest.mark.asyncio
async def test_negative_entry_short_circuits_until_expiry(clock):
    cache = _cache(clock)
    calls = {"n": 0}

    async def loader():
        calls["n"] += 1
        return cache.negative_entry(MOVIE, "vidking", reason="no playlist")

    entry, cached = await cache.get_or_load(MOVIE, "vidking", loader)
    assert entry.is_negative and entry.ttl_class is TtlClass.NEGATIVE
    assert cached is False

    clock.advance(TtlPolicy().vod_seconds * 5)
    again, cached = await cache.get_or_load(MOVIE, "vidking", loader)
    assert again is entry
    assert cached is True
    assert calls["n"] == 1

    clock.advance(TtlPolicy().negative_seconds)
    await cache.get_or_load(MOVIE, "vidking", loader)
    assert calls["n"] == 2
    await cache.close()


@pytest.mark.asyncio
async def test_positive_entries_expire_lazily_by_ttl_class(clock):
    cache = _cache(clock)
    await cache.put(
        cache.positive_entry(MOVIE, "a", stream_url="https://x/vod.m3u8", ttl_class=TtlClass.VOD)
    )
    await cache.put(
        cache.positive_entry(MOVIE, "b", stream_url="https://x/live.m3u8", ttl_class=TtlClass.LIVE)
    )
    clock.advance(31)
    assert await cache.get(MOVIE, "a") is not None
    assert await cache.get(MOVIE, "b") is None
    clock.advance(600)
    assert await cache.get(MOVIE, "a") is None
    await cache.close()


@pytest.mark.asyncio
async def test_invalidate_one_provider_or_all(clock):
    cache = _cache(clock)
    for name in ("a", "b"):
        await cache.put(cache.positive_entry(EPISODE, name, stream_url=f"https://x/{name}.m3u8"))

    assert await cache.invalidate(EPISODE, "a") == 1
    assert await cache.get(EPISODE, "a") is None
    assert await cache.get(EPISODE, "b") is not None

    await cache.put(cache.positive_entry(EPISODE, "a", stream_url="https://x/a.m3u8"))
    assert await cache.invalidate(EPISODE) == 2
    assert cache.stats()["entries"] == 0
    await cache.close()


@pytest.mark.asyncio
async def test_reclassify_replaces_entry_instead_of_mutating(clock):
    cache = _cache(clock)
    original = cache.positive_entry(MOVIE, "a", stream_url="https://x/a.m3u8")
    await cache.put(original)

    clock.advance(5)
    renewed = await cache.reclassify(MOVIE, "a", TtlClass.LIVE)

    assert renewed is not original
    assert original.ttl_class is TtlClass.VOD
    assert renewed.ttl_class is TtlClass.LIVE
    assert renewed.ttl == TtlPolicy().live_seconds
    assert renewed.created_at == original.created_at
    await cache.close()


@pytest.mark.asyncio
async def test_alternating_reclassify_does_not_extend_lifetime(clock):
    cache = _cache(clock)
    await cache.put(cache.positive_entry(MOVIE, "a", stream_url="https://x/a.m3u8"))

    clock.advance(20)
    await cache.reclassify(MOVIE, "a", TtlClass.LIVE)
    clock.advance(5)
    await cache.reclassify(MOVIE, "a", TtlClass.VOD)
    await cache.reclassify(MOVIE, "a", TtlClass.LIVE)
    clock.advance(10)

    assert await cache.get(MOVIE, "a") is None
    await cache.close()


@pytest.mark.asyncio
async def test_sweep_drops_expired_entries(clock):
    cache = _cache(clock)
    await cache.put(cache.positive_entry(MOVIE, "a", stream_url="https://x/a.m3u8"))
    await cache.put(cache.negative_entry(EPISODE, "a"))
    clock.advance(601)
    assert cache.sweep() == 1
    assert cache.stats()["entries"] == 1
    await cache.close()


@pytest.mark.asyncio
async def test_negative_entry_survives_restart_with_store(clock, tmp_path):
    engine = create_engine(f"sqlite:///{(tmp_path / 'cache.db').as_posix()}")
    store = SqlResolutionStore(engine)

    first = _cache(clock, store=store)
    await first.start()
    await first.put(first.negative_entry(MOVIE, "vidking", reason="gone"))
    await first.close()

    second = _cache(clock, store=SqlResolutionStore(engine))
    await second.start()
    calls = {"n": 0}

    async def loader():
        calls["n"] += 1
        return second.positive_entry(MOVIE, "vidking", stream_url="https://x/new.m3u8")

    entry, cached = await second.get_or_load(MOVIE, "vidking", loader)
    assert cached is True
    assert entry.is_negative and entry.reason == "gone"
    assert calls["n"] == 0
    await second.close()


def test_classify_playlist_ttl():
    assert classify_playlist_ttl("#EXTM3U\n#EXTINF:6,\na.ts\n#EXT-X-ENDLIST\n") is TtlClass.VOD
    assert classify_playlist_ttl("#EXTM3U\n#EXT-X-PLAYLIST-TYPE:VOD\n") is TtlClass.VOD
    assert classify_playlist_ttl("#EXTM3U\n#EXTINF:6,\na.ts\n") is TtlClass.LIVE
