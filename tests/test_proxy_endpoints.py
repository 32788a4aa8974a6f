from urllib.parse import parse_qs, urlsplit

from fastapi import FastAPI, Request, Response

from conftest import patch_upstream
from streamrelay.domain.models import ContentKey, MediaType

MOVIE = ContentKey(MediaType.MOVIE, "603")
NON_UTF8_BODY = b"\xff\xd8\xff\xe0 not a playlist \x80\x81"


def _build_upstream_app():
    """
    Create an in-memory FastAPI app that simulates a CDN.

    The app records every request's headers on `app.state.seen` so tests can
    assert what the proxy sent upstream.
    """
    app = FastAPI()
    app.state.seen = []
    app.state.master_status = 200

    @app.middleware("http")
    async def _record(request: Request, call_next):
        app.state.seen.append((request.method, request.url.path, dict(request.headers)))
        return await call_next(request)

    @app.get("/hls/master.m3u8")
    async def master():
        if app.state.master_status != 200:
            return Response(content=b"gone", status_code=app.state.master_status)
        playlist = (
            "#EXTM3U\n"
            "#EXT-X-STREAM-INF:BANDWIDTH=1519549,RESOLUTION=1280x720\n"
            "v1/index.m3u8\n"
        )
        return Response(content=playlist.encode(), media_type="application/vnd.apple.mpegurl")

    @app.get("/hls/v1/index.m3u8")
    async def media():
        playlist = (
            "#EXTM3U\n"
            '#EXT-X-KEY:METHOD=AES-128,URI="../keys/k.bin"\n'
            "#EXTINF:6.0,\n"
            "../seg/001.ts\n"
            "#EXTINF:6.0,\n"
            "seg-2-v1-a1.woff2\n"
            "#EXT-X-ENDLIST\n"
        )
        return Response(content=playlist.encode(), media_type="application/vnd.apple.mpegurl")

    @app.get("/hls/live.m3u8")
    async def live():
        return Response(
            content=b"#EXTM3U\n#EXTINF:2.0,\nlive-1.ts\n",
            media_type="application/vnd.apple.mpegurl",
        )

    @app.get("/hls/seg/001.ts")
    async def segment(request: Request):
        payload = b"0123456789"
        if request.headers.get("range") == "bytes=0-4":
            return Response(
                content=payload[:5],
                status_code=206,
                headers={"Content-Range": "bytes 0-4/10", "Content-Length": "5"},
                media_type="application/octet-stream",
            )
        return Response(content=payload, media_type="application/octet-stream")

    @app.get("/hls/v1/seg-2-v1-a1.woff2")
    async def disguised():
        return Response(content=b"\x47\x40\x00\x10", media_type="font/woff2")

    @app.get("/strict/master.m3u8")
    async def strict(request: Request):
        # only serves requests without a Referer
        if request.headers.get("referer"):
            return Response(status_code=403)
        return Response(
            content=b"#EXTM3U\n#EXTINF:6.0,\na.ts\n#EXT-X-ENDLIST\n",
            media_type="application/vnd.apple.mpegurl",
        )

    @app.get("/binary.m3u8")
    async def binary():
        return Response(content=NON_UTF8_BODY, media_type="application/octet-stream")

    @app.get("/blocked.html")
    async def html():
        return Response(content=b"<html>captcha</html>", media_type="text/html")

    return app


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def test_master_and_media_playlists_are_rewritten(client, monkeypatch):
    upstream = _build_upstream_app()
    patch_upstream(monkeypatch, upstream)

    resp = client.get(
        "/proxy/playlist",
        params={"url": "http://cdn.test/hls/master.m3u8", "referer": "https://player.example/"},
    )

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/vnd.apple.mpegurl")
    assert resp.headers["access-control-allow-origin"] == "*"
    assert resp.headers["cache-control"] == "public, max-age=30"
    lines = resp.text.splitlines()
    assert lines[1] == "#EXT-X-STREAM-INF:BANDWIDTH=1519549,RESOLUTION=1280x720"
    variant = _query(lines[2])
    assert lines[2].startswith("/proxy/playlist?")
    assert variant["url"] == "http://cdn.test/hls/v1/index.m3u8"
    assert variant["referer"] == "https://player.example/"
    assert variant["sid"]

    _, _, sent = upstream.state.seen[-1]
    assert sent["referer"] == "https://player.example/"
    assert sent["origin"] == "https://player.example"

    media = client.get(lines[2])
    assert media.status_code == 200
    assert media.headers["cache-control"] == "public, max-age=600"
    key_line, _, seg_line, _, woff_line = media.text.splitlines()[1:6]
    assert key_line.startswith('#EXT-X-KEY:METHOD=AES-128,URI="/proxy/segment?')
    assert _query(seg_line)["u"] == "http://cdn.test/hls/seg/001.ts"
    assert _query(seg_line)["sid"] == variant["sid"]
    assert _query(woff_line)["u"] == "http://cdn.test/hls/v1/seg-2-v1-a1.woff2"


def test_segment_range_passthrough_uses_session_headers(client, monkeypatch):
    upstream = _build_upstream_app()
    patch_upstream(monkeypatch, upstream)
    playlist = client.get(
        "/proxy/playlist",
        params={"url": "http://cdn.test/hls/v1/index.m3u8", "referer": "https://player.example/"},
    )
    seg_url = [ln for ln in playlist.text.splitlines() if "001.ts" in ln][0]

    resp = client.get(seg_url, headers={"Range": "bytes=0-4"})

    assert resp.status_code == 206
    assert resp.content == b"01234"
    assert resp.headers["content-range"] == "bytes 0-4/10"
    assert resp.headers["content-type"] == "video/mp2t"
    assert resp.headers["accept-ranges"] == "bytes"
    assert resp.headers["cache-control"] == "public, max-age=31536000, immutable"
    assert resp.headers["access-control-allow-origin"] == "*"
    _, path, sent = upstream.state.seen[-1]
    assert path == "/hls/seg/001.ts"
    assert sent["referer"] == "https://player.example/"
    assert sent["range"] == "bytes=0-4"


def test_disguised_segment_content_type_is_corrected(client, monkeypatch):
    patch_upstream(monkeypatch, _build_upstream_app())

    resp = client.get(
        "/proxy/segment",
        params={"u": "http://cdn.test/hls/v1/seg-2-v1-a1.woff2", "referer": "https://p.example/"},
    )

    assert resp.status_code == 200
    assert resp.headers["content-type"] == "video/mp2t"
    assert resp.content == b"\x47\x40\x00\x10"


def test_unknown_session_without_headers_is_404(client, monkeypatch):
    patch_upstream(monkeypatch, _build_upstream_app())

    resp = client.get(
        "/proxy/segment", params={"u": "http://cdn.test/hls/seg/001.ts", "sid": "nope"}
    )
    assert resp.status_code == 404


def test_header_fallback_retries_without_referer(client, monkeypatch):
    upstream = _build_upstream_app()
    patch_upstream(monkeypatch, upstream)

    resp = client.get("/proxy/playlist", params={"url": "http://cdn.test/strict/master.m3u8"})

    assert resp.status_code == 200
    attempts = [h for _, p, h in upstream.state.seen if p == "/strict/master.m3u8"]
    assert len(attempts) == 2
    assert "referer" in attempts[0]
    assert "referer" not in attempts[1]


def test_dead_upstream_invalidates_resolution_before_error(client, monkeypatch):
    upstream = _build_upstream_app()
    patch_upstream(monkeypatch, upstream)
    services = client.app.state.services
    cache = services.cache

    async def _seed():
        await cache.put(
            cache.positive_entry(MOVIE, "vidlink", stream_url="http://cdn.test/hls/master.m3u8")
        )

    client.portal.call(_seed)
    upstream.state.master_status = 404

    resp = client.get(
        "/proxy/playlist",
        params={
            "url": "http://cdn.test/hls/master.m3u8",
            "type": "movie",
            "id": "603",
            "provider": "vidlink",
        },
    )

    assert resp.status_code == 404
    assert client.portal.call(cache.get, MOVIE, "vidlink") is None


def test_playlist_is_served_from_cache_for_the_same_session(client, monkeypatch):
    upstream = _build_upstream_app()
    patch_upstream(monkeypatch, upstream)
    params = {"url": "http://cdn.test/hls/master.m3u8"}

    first = client.get("/proxy/playlist", params=params)
    second = client.get("/proxy/playlist", params=params)

    assert first.text == second.text
    hits = [p for _, p, _ in upstream.state.seen if p == "/hls/master.m3u8"]
    assert len(hits) == 1


def test_live_playlist_gets_short_cache_control(client, monkeypatch):
    patch_upstream(monkeypatch, _build_upstream_app())

    resp = client.get("/proxy/playlist", params={"url": "http://cdn.test/hls/live.m3u8"})

    assert resp.status_code == 200
    assert resp.headers["cache-control"] == "public, max-age=30"


def test_non_playlist_body_passes_through(client, monkeypatch):
    patch_upstream(monkeypatch, _build_upstream_app())

    resp = client.get("/proxy/playlist", params={"url": "http://cdn.test/blocked.html"})

    assert resp.status_code == 200
    assert resp.text == "<html>captcha</html>"
    assert resp.headers["content-type"].startswith("text/html")


def test_invalid_scheme_and_missing_url_are_rejected(client):
    assert client.get("/proxy/playlist", params={"url": "file:///etc/passwd"}).status_code == 400
    assert client.get("/proxy/playlist").status_code == 400
    assert client.get("/proxy/segment", params={"u": "ftp://x/seg.ts"}).status_code == 400


def test_preflight_and_head(client, monkeypatch):
    patch_upstream(monkeypatch, _build_upstream_app())

    pre = client.options("/proxy/segment")
    assert pre.status_code == 204
    assert pre.headers["access-control-allow-origin"] == "*"
    assert "Range" in pre.headers["access-control-allow-headers"]

    head = client.head("/proxy/playlist", params={"url": "http://cdn.test/hls/master.m3u8"})
    assert head.status_code == 200
    assert head.headers["content-type"].startswith("application/vnd.apple.mpegurl")
    assert head.content == b""


def test_segments_outlive_the_session_ttl_via_embedded_referer(client, clock, monkeypatch):
    upstream = _build_upstream_app()
    patch_upstream(monkeypatch, upstream)
    media = client.get(
        "/proxy/playlist",
        params={"url": "http://cdn.test/hls/v1/index.m3u8", "referer": "https://player.example/"},
    )
    seg_url = [ln for ln in media.text.splitlines() if "001.ts" in ln][0]
    assert _query(seg_url)["referer"] == "https://player.example/"
    assert client.get(seg_url).status_code == 200

    clock.advance(16 * 60)
    late = client.get(seg_url)

    assert late.status_code == 200
    assert late.content == b"0123456789"
    _, path, sent = upstream.state.seen[-1]
    assert path == "/hls/seg/001.ts"
    assert sent["referer"] == "https://player.example/"


def test_segment_fetches_keep_the_session_alive(client, clock, monkeypatch):
    patch_upstream(monkeypatch, _build_upstream_app())
    media = client.get("/proxy/playlist", params={"url": "http://cdn.test/hls/v1/index.m3u8"})
    seg_url = [ln for ln in media.text.splitlines() if "001.ts" in ln][0]
    assert "referer" not in _query(seg_url)

    for _ in range(3):
        clock.advance(10 * 60)
        assert client.get(seg_url).status_code == 200

    clock.advance(16 * 60)
    assert client.get(seg_url).status_code == 404


def test_unparsable_body_is_returned_byte_for_byte(client, monkeypatch):
    patch_upstream(monkeypatch, _build_upstream_app())

    resp = client.get("/proxy/playlist", params={"url": "http://cdn.test/binary.m3u8"})

    assert resp.status_code == 200
    assert resp.content == NON_UTF8_BODY
    assert resp.headers["content-type"] == "application/octet-stream"
    assert resp.headers["content-length"] == str(len(NON_UTF8_BODY))
