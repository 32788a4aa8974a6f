import pytest
from sqlmodel import Session, create_engine

from streamrelay.db import (
    create_db_and_tables,
    delete_resolutions,
    get_resolution,
    prune_expired,
    upsert_resolution,
)
from streamrelay.domain.models import (
    CacheEntry,
    ContentHints,
    ContentKey,
    MediaType,
    SubtitleRef,
    TtlClass,
)


def test_content_key_normalisation():
    movie = ContentKey.parse("Movie", " 603 ", "1", "2")
    assert movie == ContentKey(MediaType.MOVIE, "603")
    assert movie.season is None and movie.episode is None
    assert movie.cache_key() == "movie_603"
    assert movie.as_params() == {"type": "movie", "id": "603"}

    ep = ContentKey.parse("tv", "1399", "1", "2")
    assert ep.cache_key() == "tv_1399_s1e2"
    assert ep.as_params()["episode"] == "2"
    assert ContentKey.parse("tv", "1399", 0, 0).cache_key() == "tv_1399_s0e0"


@pytest.mark.parametrize(
    "args",
    [
        ("show", "1", None, None),
        ("tv", "1399", None, "2"),
        ("tv", "1399", "-1", "2"),
        ("tv", "1399", "x", "2"),
        ("movie", "  ", None, None),
    ],
)
def test_content_key_rejects_invalid_input(args):
    with pytest.raises(ValueError):
        ContentKey.parse(*args)


def test_content_hints_anime_detection():
    assert ContentHints(origin_countries=("jp",), genres=("Animation",)).anime
    assert ContentHints(origin_countries=("KR",), genres=("16",)).anime
    assert ContentHints(is_anime=True).anime
    # live-action Japanese titles and western cartoons are not anime
    assert not ContentHints(origin_countries=("JP",), genres=("Drama",)).anime
    assert not ContentHints(origin_countries=("JP",)).anime
    assert not ContentHints(origin_countries=("US",), genres=("Animation",)).anime


def test_cache_entry_expiry_and_renewal():
    key = ContentKey(MediaType.MOVIE, "603")
    entry = CacheEntry(key, "vidlink", "https://x/m.m3u8", None, created_at=100.0, ttl=10.0)
    assert not entry.is_expired(110.0)
    assert entry.is_expired(110.5)
    renewed = entry.renewed(created_at=200.0, ttl=30.0, ttl_class=TtlClass.LIVE)
    assert renewed.expires_at == 230.0
    assert entry.ttl_class is TtlClass.VOD

    negative = CacheEntry.negative(key, "vidking", created_at=0.0, ttl=5.0, reason="gone")
    assert negative.is_negative and negative.stream_url is None


def test_resolution_record_crud(tmp_path):
    engine = create_engine(f"sqlite:///{(tmp_path / 'db.sqlite').as_posix()}")
    create_db_and_tables(engine)
    key = ContentKey(MediaType.TV, "1399", 1, 2)
    entry = CacheEntry(
        key,
        "vidlink",
        "https://cdn.example/master.m3u8",
        "https://vidlink.pro/tv/1399/1/2",
        created_at=1000.0,
        ttl=600.0,
        subtitles=(SubtitleRef("https://s/eng-1.vtt", "en", "English"),),
        headers={"Referer": "https://vidlink.pro/"},
    )

    with Session(engine) as s:
        upsert_resolution(s, entry)
        upsert_resolution(s, CacheEntry.negative(key, "vidking", created_at=1000.0, ttl=60.0))
        rec = get_resolution(s, key, "vidlink")
        assert rec is not None
        restored = rec.to_entry()
        assert restored == entry
        assert restored.headers == {"Referer": "https://vidlink.pro/"}

        assert prune_expired(s, now=1100.0) == 1
        assert get_resolution(s, key, "vidking") is None
        assert delete_resolutions(s, key) == 1
        assert get_resolution(s, key, "vidlink") is None
