from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Optional, Pattern
from urllib.parse import urlsplit

from loguru import logger

# Retried with the next header mode when upstream answers with one of these.
FALLBACK_STATUSES = frozenset({401, 403, 405})


class HeaderMode(StrEnum):
    PRIMARY = "primary"
    NO_REFERER = "no_referer"
    TARGET_REFERER = "target_referer"


FALLBACK_ORDER: tuple[HeaderMode, ...] = (
    HeaderMode.PRIMARY,
    HeaderMode.NO_REFERER,
    HeaderMode.TARGET_REFERER,
)


@dataclass(frozen=True)
class RefererRule:
    host_pattern: Pattern[str]
    referer: str


# Hosts that only serve to their own player pages.
REFERER_RULES: tuple[RefererRule, ...] = (
    RefererRule(re.compile(r"vidify", re.IGNORECASE), "https://vidify.top/"),
    RefererRule(re.compile(r"vidhide|vidhidepro|premilkyway", re.IGNORECASE), "https://vidhide.com/"),
)


def origin_of(url: str) -> Optional[str]:
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}"


def heuristic_referer(target_url: str) -> Optional[str]:
    host = (urlsplit(target_url).hostname or "").lower()
    for rule in REFERER_RULES:
        if rule.host_pattern.search(host):
            return rule.referer
    origin = origin_of(target_url)
    return f"{origin}/" if origin else None


def build_upstream_headers(
    target_url: str,
    *,
    user_agent: str,
    referer_override: Optional[str] = None,
    origin_override: Optional[str] = None,
    mode: HeaderMode = HeaderMode.PRIMARY,
) -> dict[str, str]:
    """
    Browser-like request headers for an upstream playlist or segment.

    Referer precedence in PRIMARY mode: explicit override, then the host rules,
    then the target's own origin. Origin defaults to the referer's origin.
    """
    headers = {
        "User-Agent": user_agent,
        "Accept": "*/*",
        "Accept-Language": "en-US,en;q=0.9",
        "Sec-Fetch-Dest": "empty",
        "Sec-Fetch-Mode": "cors",
        "Sec-Fetch-Site": "cross-site",
    }
    if mode is HeaderMode.NO_REFERER:
        referer, origin = None, None
    elif mode is HeaderMode.TARGET_REFERER:
        origin = origin_of(target_url)
        referer = f"{origin}/" if origin else None
    else:
        referer = referer_override or heuristic_referer(target_url)
        origin = origin_override or (origin_of(referer) if referer else None)
    if referer:
        headers["Referer"] = referer
    if origin:
        headers["Origin"] = origin
    logger.trace("Upstream headers mode={} referer={}", mode.value, referer or "<none>")
    return headers
