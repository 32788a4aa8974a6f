from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from loguru import logger
from pydantic import BaseModel, Field

from streamrelay.core.lifespan import Services
from .common import get_services, http_error

router = APIRouter()


class SubtitlePayload(BaseModel):
    language: str
    label: str
    format: str
    is_ass: bool = False
    content: str


class SubtitleListResponse(BaseModel):
    count: int = 0
    subtitles: list[SubtitlePayload] = Field(default_factory=list)


def _opt_int(raw: Optional[str], name: str) -> Optional[int]:
    if raw is None or not raw.strip():
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"invalid {name}") from exc
    if value < 0:
        raise HTTPException(status_code=400, detail=f"invalid {name}")
    return value


@router.get("/subtitles", response_model=SubtitleListResponse)
async def subtitles(
    id: Optional[str] = Query(None),
    language: str = Query("en"),
    season: Optional[str] = Query(None),
    episode: Optional[str] = Query(None),
    format: Optional[str] = Query(None),
    services: Services = Depends(get_services),
):
    """
    Search subtitles for a title and return them normalized.

    `format=raw` returns the first subtitle body directly (WebVTT, or ASS
    flagged through its media type) instead of the JSON listing.
    """
    if not id or not id.strip():
        raise HTTPException(status_code=400, detail="missing id")
    s = _opt_int(season, "season")
    e = _opt_int(episode, "episode")
    logger.info(f"GET /subtitles id={id} language={language} s={s} e={e}")
    try:
        found = await services.subtitles.search(id.strip(), language, s, e)
    except Exception as exc:
        raise http_error(exc) from exc

    if (format or "").lower() == "raw":
        if not found:
            raise HTTPException(status_code=404, detail="no subtitles found")
        first = found[0].subtitle
        return Response(
            content=first.content.encode("utf-8"),
            media_type=f"{first.media_type}; charset=utf-8",
            headers={"Access-Control-Allow-Origin": "*"},
        )
    return SubtitleListResponse(
        count=len(found),
        subtitles=[SubtitlePayload(**f.to_dict()) for f in found],
    )
