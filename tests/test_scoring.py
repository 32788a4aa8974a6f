import re

from streamrelay.core.extraction.scoring import (
    CandidateSet,
    extract_dom_candidates,
    is_playlist_url,
    is_subtitle_url,
    score_url,
)
from streamrelay.domain.models import CandidateSource


def test_score_components():
    assert score_url("https://x.workers.dev/file2/master.m3u8") == 180
    assert score_url("https://x.com/index.m3u8") == 80
    assert score_url("https://cdn.example/hls/playlist.m3u8?token=abc") == 150
    assert score_url("https://cdn.example/hls/video.m3u8") == 100


def test_best_candidate_wins_regardless_of_arrival_order():
    cands = CandidateSet()
    cands.add("https://x.com/index.m3u8", CandidateSource.REQUEST)
    cands.add("https://x.workers.dev/file2/master.m3u8", CandidateSource.RESPONSE)

    best = cands.best()
    assert best is not None
    assert best.url == "https://x.workers.dev/file2/master.m3u8"
    assert best.score == 180


def test_ties_keep_first_seen_order_and_duplicates_are_dropped():
    cands = CandidateSet()
    assert cands.add("https://a.example/one.m3u8", CandidateSource.REQUEST) is not None
    assert cands.add("https://b.example/two.m3u8", CandidateSource.REQUEST) is not None
    assert cands.add("https://a.example/one.m3u8#frag", CandidateSource.DOM) is None

    ranked = cands.ranked()
    assert [c.url for c in ranked] == [
        "https://a.example/one.m3u8",
        "https://b.example/two.m3u8",
    ]
    assert len(cands) == 2


def test_is_playlist_url_patterns():
    txt_pattern = re.compile(r"workers\.dev/.+\.txt", re.IGNORECASE)
    assert is_playlist_url("https://cdn.example/a.m3u8?x=1")
    assert is_playlist_url("https://cdn.example/stream", content_type="application/x-mpegURL")
    assert is_playlist_url("https://edge.workers.dev/file2/abc.txt", [txt_pattern])
    assert not is_playlist_url("https://cdn.example/readme.txt", [txt_pattern])
    assert not is_playlist_url("blob:https://x/abc.m3u8")


def test_is_subtitle_url():
    assert is_subtitle_url("https://subs.example/eng-2.vtt")
    assert is_subtitle_url("https://subs.example/movie.srt?dl=1")
    assert not is_subtitle_url("https://subs.example/movie.m3u8")


def test_extract_dom_candidates_from_markup():
    html = """
    <html><body>
      <video src="/hls/master.m3u8"></video>
      <source src="https://cdn.example/alt/playlist.m3u8">
      <script>var cfg = {"file":"https:\\/\\/edge.example\\/v\\/index.m3u8"};</script>
    </body></html>
    """
    found = extract_dom_candidates(html, "https://player.example/embed/1")
    assert found[0] == "https://player.example/hls/master.m3u8"
    assert "https://cdn.example/alt/playlist.m3u8" in found
    assert "https://edge.example/v/index.m3u8" in found
