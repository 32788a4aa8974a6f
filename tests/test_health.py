def test_health_endpoint(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body.get("status") == "ok"
    assert body["cache"]["entries"] == 0
    assert body["proxy"] == {"sessions": 0, "playlists": 0}
    assert body["browser_pool"] is None
    assert body["pending_tracks"] == 0


def test_endpoints_refuse_before_startup():
    from fastapi.testclient import TestClient

    from streamrelay.main import create_app

    # no context manager: the lifespan never runs
    client = TestClient(create_app())
    assert client.get("/health").json() == {"status": "ok", "version": client.app.version}
    assert client.get("/resolve", params={"type": "movie", "id": "1"}).status_code == 503


def test_openapi_documents_response_models(client):
    schemas = client.get("/openapi.json").json()["components"]["schemas"]
    assert set(schemas["InvalidateResponse"]["properties"]) == {"invalidated"}
    listing = schemas["SubtitleListResponse"]["properties"]
    assert set(listing) == {"count", "subtitles"}
    assert "is_ass" in schemas["SubtitlePayload"]["properties"]
