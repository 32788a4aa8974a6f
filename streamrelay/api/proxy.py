from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response, StreamingResponse
from loguru import logger

from streamrelay.core.hls_proxy.urls import PLAYLIST_PATH, SEGMENT_PATH
from streamrelay.core.lifespan import Services
from streamrelay.domain.models import PlaylistRewriteContext
from streamrelay.utils.logger import redact_url
from .common import PROXY_CORS_HEADERS, get_services, http_error, parse_content_key

router = APIRouter()


def _param(request: Request, *names: str) -> Optional[str]:
    for name in names:
        value = (request.query_params.get(name) or "").strip()
        if value:
            return value
    return None


def _preflight() -> Response:
    return Response(status_code=204, headers=dict(PROXY_CORS_HEADERS))


@router.api_route(PLAYLIST_PATH, methods=["GET", "HEAD", "OPTIONS"])
async def proxy_playlist(request: Request, services: Services = Depends(get_services)):
    """
    Fetch an upstream playlist and return it with every URI routed back
    through this service.
    """
    if request.method == "OPTIONS":
        return _preflight()
    upstream_url = _param(request, "url", "u")
    if not upstream_url:
        raise HTTPException(status_code=400, detail="missing upstream url")

    proxy = services.proxy
    sid = _param(request, "sid")
    session = proxy.sessions.get(sid) if sid else None
    logger.info(
        f"{request.method} {PLAYLIST_PATH} upstream={redact_url(upstream_url)} "
        f"sid={'live' if session else (sid or '-')}"
    )
    try:
        if session is not None:
            playlist = await proxy.fetch_playlist(upstream_url, session=session)
        else:
            key = None
            if _param(request, "type") or _param(request, "id"):
                key = parse_content_key(
                    _param(request, "type"),
                    _param(request, "id"),
                    _param(request, "season"),
                    _param(request, "episode"),
                )
            ctx = PlaylistRewriteContext(
                upstream_url,
                referer_override=_param(request, "referer"),
                origin_override=_param(request, "origin"),
            )
            playlist = await proxy.fetch_playlist(
                upstream_url, ctx, content_key=key, provider=_param(request, "provider")
            )
    except Exception as exc:
        raise http_error(exc) from exc

    body = playlist.body
    headers = dict(PROXY_CORS_HEADERS)
    headers["Cache-Control"] = playlist.cache_control
    headers["Content-Length"] = str(len(body))
    if request.method == "HEAD":
        headers["Content-Type"] = playlist.content_type
        return Response(content=b"", status_code=200, headers=headers)
    return Response(content=body, status_code=200, media_type=playlist.content_type, headers=headers)


@router.api_route(SEGMENT_PATH, methods=["GET", "HEAD", "OPTIONS"])
async def proxy_segment(request: Request, services: Services = Depends(get_services)):
    """Stream one upstream segment, key or init section with Range passthrough."""
    if request.method == "OPTIONS":
        return _preflight()
    upstream_url = _param(request, "u", "url")
    if not upstream_url:
        raise HTTPException(status_code=400, detail="missing upstream url")
    logger.trace(f"{request.method} {SEGMENT_PATH} upstream={redact_url(upstream_url)}")
    try:
        stream = await services.proxy.fetch_segment(
            upstream_url,
            sid=_param(request, "sid"),
            referer=_param(request, "referer"),
            origin=_param(request, "origin"),
            range_header=request.headers.get("range"),
            method="HEAD" if request.method == "HEAD" else "GET",
        )
    except Exception as exc:
        raise http_error(exc) from exc

    headers = {**stream.headers, **PROXY_CORS_HEADERS}
    if request.method == "HEAD":
        await stream.aclose()
        return Response(content=b"", status_code=stream.status_code, headers=headers)
    return StreamingResponse(stream.body(), status_code=stream.status_code, headers=headers)
