from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel

from streamrelay.core.lifespan import Services
from streamrelay.domain.models import ContentHints
from .common import get_services, http_error, parse_content_key

router = APIRouter()


def _as_flag(raw: Optional[str]) -> bool:
    return (raw or "").strip().lower() in ("1", "true", "yes", "on")


@router.get("/resolve")
async def resolve(
    media_type: Optional[str] = Query(None, alias="type"),
    id: Optional[str] = Query(None),
    season: Optional[str] = Query(None),
    episode: Optional[str] = Query(None),
    skip_cache: Optional[str] = Query(None, alias="skipCache"),
    origin_countries: Optional[str] = Query(None, alias="originCountries"),
    is_anime: Optional[str] = Query(None, alias="isAnime"),
    anime_title: Optional[str] = Query(None, alias="animeTitle"),
    genres: Optional[str] = Query(None),
    services: Services = Depends(get_services),
):
    """
    Resolve every audio track for one title.

    Returns 200 with the UnifiedResolution when at least one track resolved,
    404 with the same body shape when none did.
    """
    key = parse_content_key(media_type, id, season, episode)
    hints = ContentHints(
        origin_countries=tuple(
            c.strip().upper() for c in (origin_countries or "").split(",") if c.strip()
        ),
        is_anime=_as_flag(is_anime),
        anime_title=(anime_title or "").strip() or None,
        genres=tuple(g.strip() for g in (genres or "").split(",") if g.strip()),
    )
    logger.info(f"GET /resolve {key.cache_key()} skipCache={_as_flag(skip_cache)}")
    try:
        result = await services.resolver.resolve(key, hints, skip_cache=_as_flag(skip_cache))
    except ValueError as exc:
        raise http_error(exc) from exc
    status = 404 if result.is_empty else 200
    return JSONResponse(result.to_dict(), status_code=status)


class InvalidateResponse(BaseModel):
    invalidated: int


@router.delete("/resolve", response_model=InvalidateResponse)
async def invalidate(
    media_type: Optional[str] = Query(None, alias="type"),
    id: Optional[str] = Query(None),
    season: Optional[str] = Query(None),
    episode: Optional[str] = Query(None),
    provider: Optional[str] = Query(None),
    services: Services = Depends(get_services),
):
    key = parse_content_key(media_type, id, season, episode)
    removed = await services.resolver.invalidate(key, (provider or "").strip() or None)
    logger.warning(
        f"DELETE /resolve {key.cache_key()} provider={provider or '*'} removed={removed}"
    )
    return InvalidateResponse(invalidated=removed)
