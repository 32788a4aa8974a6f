from __future__ import annotations

from typing import Optional

import httpx
import requests
from fastapi import HTTPException, Request
from loguru import logger

from streamrelay.core.errors import (
    BlockedDomain,
    NavigationTimeout,
    ProviderUnavailable,
    StreamRelayError,
    UpstreamRejected,
    UpstreamTimeout,
)
from streamrelay.core.hls_proxy import SessionNotFound
from streamrelay.core.lifespan import Services
from streamrelay.domain.models import ContentKey

# Headers every proxy response carries so browser players can read them.
PROXY_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, HEAD, OPTIONS",
    "Access-Control-Allow-Headers": "Range, Content-Type",
    "Access-Control-Expose-Headers": "Content-Length, Content-Range, Accept-Ranges",
}


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="service not ready")
    return services


def parse_content_key(
    media_type: Optional[str],
    id: Optional[str],
    season: Optional[str],
    episode: Optional[str],
) -> ContentKey:
    """Build a ContentKey from query values; invalid input is a 400."""
    if not media_type or not id:
        raise HTTPException(status_code=400, detail="missing type/id")
    try:
        return ContentKey.parse(media_type, id, season, episode)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def http_error(exc: Exception) -> HTTPException:
    """Map an internal failure onto the HTTP status the client sees."""
    if isinstance(exc, HTTPException):
        return exc
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, SessionNotFound):
        return HTTPException(status_code=404, detail="proxy session not found")
    if isinstance(exc, BlockedDomain):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, UpstreamRejected):
        return HTTPException(status_code=exc.status_code, detail=str(exc))
    if isinstance(exc, (UpstreamTimeout, NavigationTimeout, httpx.TimeoutException)):
        return HTTPException(status_code=504, detail="upstream timed out")
    if isinstance(exc, ProviderUnavailable):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, (httpx.RequestError, requests.RequestException)):
        logger.warning(f"Upstream transport error: {exc}")
        return HTTPException(status_code=502, detail="upstream request failed")
    if isinstance(exc, StreamRelayError):
        return HTTPException(status_code=502, detail=str(exc))
    logger.error(f"Unexpected failure: {exc!r}")
    return HTTPException(status_code=500, detail="internal error")
