import asyncio
from urllib.parse import parse_qs, urlsplit

import pytest

from streamrelay.core.cache import ResolutionCache, TtlPolicy
from streamrelay.core.errors import BlockedDomain, NotFound
from streamrelay.core.extraction import ExtractionResult, ExtractionState
from streamrelay.core.resolver import ProviderResolver
from streamrelay.domain.models import (
    CandidateSource,
    ContentHints,
    ContentKey,
    MediaType,
    StreamCandidate,
    SubtitleRef,
    Track,
)
from streamrelay.providers import ProviderConfig, ProviderKind, register_provider, unregister_provider

MOVIE = ContentKey(MediaType.MOVIE, "603")
EPISODE = ContentKey(MediaType.TV, "1399", 1, 2)


def _browser(name, track=Track.ORIGINAL):
    return ProviderConfig(
        name=name,
        kind=ProviderKind.BROWSER,
        track=track,
        movie_url=f"https://{name}.example/movie/{{id}}",
        tv_url=f"https://{name}.example/tv/{{id}}/{{season}}/{{episode}}",
        allowed_domains=(f"{name}.example",),
    )


@pytest.fixture
def fake_providers():
    names = ["t-first", "t-second", "t-dub", "t-latino"]
    tracks = [Track.ORIGINAL, Track.ORIGINAL, Track.ENGLISH_DUB, Track.LATINO]
    for name, track in zip(names, tracks):
        register_provider(_browser(name, track))
    yield {
        Track.ORIGINAL: ["t-first", "t-second"],
        Track.ENGLISH_DUB: ["t-dub"],
        Track.LATINO: ["t-latino"],
    }
    for name in names:
        unregister_provider(name)


class FakeEngine:
    """
    Scripted extraction engine: `script[provider]` is a URL, an exception
    instance, or a (delay, URL) pair.
    """

    def __init__(self, script):
        self.script = script
        self.calls: list[tuple[str, str]] = []

    async def extract(self, provider, target_url, timeout_ms):
        self.calls.append((provider.name, target_url))
        outcome = self.script.get(provider.name, NotFound(target_url))
        if isinstance(outcome, tuple):
            delay, outcome = outcome
            await asyncio.sleep(delay)
        if isinstance(outcome, Exception):
            raise outcome
        return ExtractionResult(
            target_url=target_url,
            candidates=[StreamCandidate(outcome, CandidateSource.REQUEST, 180)],
            subtitles=[SubtitleRef("https://subs.example/eng-1.vtt", "en", "English")],
            state=ExtractionState.CANDIDATE_FOUND,
        )


def _resolver(clock, engine, orders, **kw):
    cache = ResolutionCache(policy=TtlPolicy(), clock=clock, sweep_probability=0.0)
    return ProviderResolver(cache, engine, track_orders=orders, **kw), cache


@pytest.mark.asyncio
async def test_tracks_resolve_and_stream_url_points_at_proxy(clock, fake_providers):
    engine = FakeEngine(
        {
            "t-first": (0.05, "https://cdn.example/o/master.m3u8"),
            "t-dub": "https://cdn.example/d/master.m3u8",
            "t-latino": "https://cdn.example/l/master.m3u8",
        }
    )
    resolver, cache = _resolver(clock, engine, fake_providers)

    result = await resolver.resolve(EPISODE)

    assert result.metadata.success_count == 3
    assert result.original.provider == "t-first"
    assert result.original.upstream_url == "https://cdn.example/o/master.m3u8"
    assert result.original.cached is False
    params = {k: v[0] for k, v in parse_qs(urlsplit(result.original.stream_url).query).items()}
    assert result.original.stream_url.startswith("/proxy/playlist?")
    assert params["url"] == "https://cdn.example/o/master.m3u8"
    assert params["referer"] == "https://t-first.example/"
    assert params["provider"] == "t-first"
    assert (params["type"], params["id"], params["season"], params["episode"]) == (
        "tv",
        "1399",
        "1",
        "2",
    )
    body = result.to_dict()
    assert body["original"]["subtitles"][0]["languageCode"] == "en"
    assert body["englishDub"]["provider"] == "t-dub"
    assert body["latino"]["provider"] == "t-latino"
    assert body["metadata"]["errors"] == {}
    assert ("t-first", "https://t-first.example/tv/1399/1/2") in engine.calls

    again = await resolver.resolve(EPISODE)
    assert again.original.cached is True
    assert len(engine.calls) == 3
    await resolver.close()
    await cache.close()


@pytest.mark.asyncio
async def test_miss_is_cached_negatively_and_next_provider_wins(clock, fake_providers):
    engine = FakeEngine({"t-second": "https://cdn.example/b/master.m3u8"})
    resolver, cache = _resolver(clock, engine, fake_providers)

    first = await resolver.resolve(MOVIE)
    assert first.original.provider == "t-second"
    negative = await cache.get(MOVIE, "t-first")
    assert negative is not None and negative.is_negative

    calls_before = [c for c in engine.calls if c[0] == "t-first"]
    await resolver.resolve(MOVIE)
    assert [c for c in engine.calls if c[0] == "t-first"] == calls_before
    await resolver.close()
    await cache.close()


@pytest.mark.asyncio
async def test_skip_cache_forces_fresh_extraction(clock, fake_providers):
    engine = FakeEngine({"t-first": "https://cdn.example/o/master.m3u8"})
    resolver, cache = _resolver(clock, engine, {Track.ORIGINAL: ["t-first"]})

    await resolver.resolve(MOVIE, ContentHints(origin_countries=("US",)))
    await resolver.resolve(MOVIE, ContentHints(origin_countries=("US",)), skip_cache=True)

    assert [c[0] for c in engine.calls].count("t-first") == 2
    await resolver.close()
    await cache.close()


@pytest.mark.asyncio
async def test_english_market_titles_skip_the_dub_track(clock, fake_providers):
    engine = FakeEngine(
        {
            "t-first": "https://cdn.example/o/master.m3u8",
            "t-dub": "https://cdn.example/d/master.m3u8",
        }
    )
    resolver, cache = _resolver(clock, engine, fake_providers)

    result = await resolver.resolve(MOVIE, ContentHints(origin_countries=("GB", "FR")))

    assert result.english_dub is None
    assert "englishDub" not in result.metadata.errors
    assert all(name != "t-dub" for name, _ in engine.calls)
    assert resolver.dub_suppressed(ContentHints(origin_countries=("jp",))) is False
    await resolver.close()
    await cache.close()


@pytest.mark.asyncio
async def test_blocked_domain_is_skipped_and_not_cached(clock, fake_providers):
    engine = FakeEngine(
        {
            "t-first": BlockedDomain("https://t-first.example/movie/603", "t-first.example"),
            "t-second": "https://cdn.example/b/master.m3u8",
        }
    )
    resolver, cache = _resolver(clock, engine, fake_providers)

    result = await resolver.resolve(MOVIE)

    assert result.original.provider == "t-second"
    assert await cache.get(MOVIE, "t-first") is None
    await resolver.close()
    await cache.close()


@pytest.mark.asyncio
async def test_every_provider_failing_reports_errors(clock, fake_providers):
    resolver, cache = _resolver(clock, FakeEngine({}), fake_providers)

    result = await resolver.resolve(MOVIE)

    assert result.is_empty
    assert result.original is None
    assert "t-first: not found" in result.metadata.errors["original"]
    assert "t-second: not found" in result.metadata.errors["original"]
    assert set(result.metadata.errors) == {"original", "englishDub", "latino"}
    await resolver.close()
    await cache.close()


@pytest.mark.asyncio
async def test_without_engine_browser_providers_are_unavailable(clock, fake_providers):
    resolver, cache = _resolver(clock, None, {Track.ORIGINAL: ["t-first"]})

    result = await resolver.resolve(MOVIE, ContentHints(origin_countries=("US",)))

    assert result.original is None
    assert "t-first: unavailable" in result.metadata.errors["original"]
    assert cache.stats()["entries"] == 0
    await resolver.close()
    await cache.close()


@pytest.mark.asyncio
async def test_ceiling_returns_partial_result_and_slow_tracks_fill_the_cache(
    clock, fake_providers
):
    engine = FakeEngine(
        {
            "t-first": "https://cdn.example/o/master.m3u8",
            "t-dub": (0.2, "https://cdn.example/d/master.m3u8"),
            "t-latino": (0.2, NotFound("latino")),
        }
    )
    resolver, cache = _resolver(clock, engine, fake_providers)

    result = await resolver.resolve(MOVIE)

    assert result.original is not None
    assert result.english_dub is None
    assert "englishDub" not in result.metadata.errors
    assert resolver.pending == 2

    await asyncio.sleep(0.4)
    assert resolver.pending == 0
    dub = await cache.get(MOVIE, "t-dub")
    assert dub is not None and dub.stream_url == "https://cdn.example/d/master.m3u8"
    await resolver.close()
    await cache.close()


@pytest.mark.asyncio
async def test_slow_original_track_hits_the_ceiling(clock, fake_providers):
    engine = FakeEngine({"t-first": (5.0, "https://cdn.example/o/master.m3u8")})
    resolver, cache = _resolver(clock, engine, {Track.ORIGINAL: ["t-first"]})

    result = await resolver.resolve(MOVIE, ContentHints(origin_countries=("US",)), ceiling=0.05)

    assert result.is_empty
    assert result.metadata.errors["original"] == "timed out"
    assert resolver.pending == 1
    await resolver.close()
    assert resolver.pending == 0
    await cache.close()


@pytest.mark.asyncio
async def test_invalidate_forces_reresolution(clock, fake_providers):
    engine = FakeEngine({"t-first": "https://cdn.example/o/master.m3u8"})
    resolver, cache = _resolver(clock, engine, {Track.ORIGINAL: ["t-first"]})
    hints = ContentHints(origin_countries=("US",))

    await resolver.resolve(MOVIE, hints)
    assert await resolver.invalidate(MOVIE, "t-first") == 1
    again = await resolver.resolve(MOVIE, hints)

    assert again.original.cached is False
    assert [c[0] for c in engine.calls].count("t-first") == 2
    await resolver.close()
    await cache.close()


def test_resolve_endpoint(make_services, fake_providers):
    from fastapi.testclient import TestClient

    from streamrelay.main import create_app

    engine = FakeEngine({"t-first": "https://cdn.example/o/master.m3u8"})
    app = create_app(lambda: make_services(engine=engine, track_orders=fake_providers))

    with TestClient(app) as client:
        ok = client.get(
            "/resolve",
            params={"type": "movie", "id": "603", "originCountries": "US", "isAnime": "true"},
        )
        assert ok.status_code == 200
        body = ok.json()
        assert body["original"]["provider"] == "t-first"
        assert body["englishDub"] is None
        assert body["metadata"]["isAnime"] is True
        assert body["metadata"]["successCount"] == 1

        removed = client.delete("/resolve", params={"type": "movie", "id": "603"})
        assert removed.json()["invalidated"] == 2

        assert client.get("/resolve", params={"type": "tv", "id": "1399"}).status_code == 400
        assert client.get("/resolve", params={"type": "book", "id": "1"}).status_code == 400

        engine.script.clear()
        missing = client.get("/resolve", params={"type": "movie", "id": "604"})
        assert missing.status_code == 404
        assert missing.json()["original"] is None

        live_action = client.get(
            "/resolve",
            params={"type": "movie", "id": "603", "originCountries": "JP", "genres": "Drama"},
        )
        assert live_action.json()["metadata"]["isAnime"] is False
        animated = client.get(
            "/resolve",
            params={"type": "movie", "id": "603", "originCountries": "JP", "genres": "Animation"},
        )
        assert animated.json()["metadata"]["isAnime"] is True
