"""Subtitle format detection, SRT to WebVTT conversion and subtitle search."""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import partial
from typing import Any, Optional
from urllib.parse import unquote, urlsplit

import anyio
import anyio.to_thread
import requests
from loguru import logger

from streamrelay.config import (
    API_TIMEOUT_SECONDS,
    SUBTITLE_MAX_DOWNLOADS,
    SUBTITLE_SEARCH_URL,
)
from streamrelay.core.errors import UpstreamRejected, UpstreamTimeout
from streamrelay.domain.models import SubtitleFormat
from streamrelay.utils.http_client import get as http_get
from streamrelay.utils.logger import redact_url

VTT_HEADER = "WEBVTT"
_ASS_MARKERS = ("[V4+ Styles]", "[V4 Styles]", "Format: Layer")

_TS = r"(?:\d{1,2}:)?\d{1,2}:\d{2}[,.]\d{1,3}"
_CUE_TIMING_RE = re.compile(rf"^\s*({_TS})\s*-->\s*({_TS})(.*)$")
_INDEX_RE = re.compile(r"^\s*\d+\s*$")

# ISO 639-2 (bibliographic and terminology) -> (ISO 639-1, English name)
LANGUAGE_CODES: dict[str, tuple[str, str]] = {
    "eng": ("en", "English"),
    "spa": ("es", "Spanish"),
    "fre": ("fr", "French"),
    "fra": ("fr", "French"),
    "ger": ("de", "German"),
    "deu": ("de", "German"),
    "ita": ("it", "Italian"),
    "por": ("pt", "Portuguese"),
    "jpn": ("ja", "Japanese"),
    "kor": ("ko", "Korean"),
    "chi": ("zh", "Chinese"),
    "zho": ("zh", "Chinese"),
    "ara": ("ar", "Arabic"),
    "rus": ("ru", "Russian"),
    "hin": ("hi", "Hindi"),
    "dut": ("nl", "Dutch"),
    "nld": ("nl", "Dutch"),
    "pol": ("pl", "Polish"),
    "tur": ("tr", "Turkish"),
    "swe": ("sv", "Swedish"),
    "nor": ("no", "Norwegian"),
    "dan": ("da", "Danish"),
    "fin": ("fi", "Finnish"),
    "gre": ("el", "Greek"),
    "ell": ("el", "Greek"),
    "hun": ("hu", "Hungarian"),
    "cze": ("cs", "Czech"),
    "ces": ("cs", "Czech"),
    "slv": ("sl", "Slovenian"),
    "slo": ("sk", "Slovak"),
    "slk": ("sk", "Slovak"),
    "srp": ("sr", "Serbian"),
    "hrv": ("hr", "Croatian"),
    "bul": ("bg", "Bulgarian"),
    "rum": ("ro", "Romanian"),
    "ron": ("ro", "Romanian"),
    "ukr": ("uk", "Ukrainian"),
    "lit": ("lt", "Lithuanian"),
    "lav": ("lv", "Latvian"),
    "est": ("et", "Estonian"),
    "ice": ("is", "Icelandic"),
    "isl": ("is", "Icelandic"),
    "mac": ("mk", "Macedonian"),
    "mkd": ("mk", "Macedonian"),
    "alb": ("sq", "Albanian"),
    "sqi": ("sq", "Albanian"),
    "vie": ("vi", "Vietnamese"),
    "tha": ("th", "Thai"),
    "ind": ("id", "Indonesian"),
    "may": ("ms", "Malay"),
    "msa": ("ms", "Malay"),
    "heb": ("he", "Hebrew"),
    "per": ("fa", "Persian"),
    "fas": ("fa", "Persian"),
}
UNKNOWN_LANGUAGE = ("und", "Unknown")

_NUMBERED_VTT_RE = re.compile(r"([a-z]{3})-\d+\.vtt$")


@dataclass(frozen=True)
class NormalizedSubtitle:
    content: str
    format: SubtitleFormat

    @property
    def is_ass(self) -> bool:
        return self.format is SubtitleFormat.ASS

    @property
    def media_type(self) -> str:
        return "text/x-ssa" if self.is_ass else "text/vtt"


def decode_subtitle(raw: bytes | str) -> str:
    """Decode as UTF-8 whatever the upstream declared; strips a BOM."""
    if isinstance(raw, bytes):
        text = raw.decode("utf-8", errors="replace")
    else:
        text = raw
    return text.lstrip("\ufeff")


def sniff_format(text: str) -> SubtitleFormat:
    head = text.lstrip()
    if head.startswith(VTT_HEADER):
        return SubtitleFormat.VTT
    if head.startswith("[Script Info]") or any(m in text for m in _ASS_MARKERS):
        return SubtitleFormat.ASS
    return SubtitleFormat.SRT


def _vtt_timestamp(ts: str) -> str:
    clock, _, frac = ts.replace(",", ".").partition(".")
    return f"{clock}.{frac.ljust(3, '0')[:3]}"


def srt_to_vtt(srt: str) -> str:
    """
    Convert SRT to WebVTT.

    Sequence numbers are dropped, `,mmm` becomes `.mmm` and text lines are
    kept verbatim. A block without a valid timing line or without text is
    discarded.
    """
    text = srt.replace("\r\n", "\n").replace("\r", "\n")
    cues: list[str] = []
    dropped = 0
    for block in re.split(r"\n\s*\n", text):
        lines = [ln for ln in block.split("\n")]
        while lines and not lines[0].strip():
            lines.pop(0)
        if not lines:
            continue
        if _INDEX_RE.match(lines[0]) and len(lines) > 1:
            lines = lines[1:]
        match = _CUE_TIMING_RE.match(lines[0])
        body = [ln.rstrip() for ln in lines[1:]]
        while body and not body[-1].strip():
            body.pop()
        if match is None or not body:
            dropped += 1
            continue
        start, end, settings = match.groups()
        timing = f"{_vtt_timestamp(start)} --> {_vtt_timestamp(end)}"
        if settings.strip():
            timing += " " + settings.strip()
        cues.append("\n".join([timing, *body]))
    if dropped:
        logger.debug(f"SRT conversion discarded {dropped} malformed cue block(s)")
    if not cues:
        return f"{VTT_HEADER}\n"
    return f"{VTT_HEADER}\n\n" + "\n\n".join(cues) + "\n"


def normalize(raw: bytes | str, declared_format: Optional[str] = None) -> NormalizedSubtitle:
    """
    Detect the subtitle format from the content and convert SRT to WebVTT.

    Content sniffing wins over `declared_format`; ASS/SSA is returned unchanged
    and flagged so the player picks an ASS renderer.
    """
    text = decode_subtitle(raw)
    fmt = sniff_format(text)
    if declared_format and declared_format.lower() != fmt.value:
        logger.trace(f"Subtitle declared as {declared_format!r} but sniffed as {fmt.value}")
    if fmt is SubtitleFormat.SRT:
        return NormalizedSubtitle(srt_to_vtt(text), SubtitleFormat.VTT)
    return NormalizedSubtitle(text, fmt)


def detect_subtitle_language(url: str) -> tuple[str, str]:
    """Map a subtitle filename such as `eng-2.vtt` to (`en`, `English`)."""
    filename = unquote(urlsplit(url).path.rsplit("/", 1)[-1]).lower()
    match = _NUMBERED_VTT_RE.search(filename)
    if match and match.group(1) in LANGUAGE_CODES:
        return LANGUAGE_CODES[match.group(1)]
    for code, value in LANGUAGE_CODES.items():
        if re.search(rf"(^|[._-]){code}([._-]|$)", filename):
            return value
    return UNKNOWN_LANGUAGE


@dataclass(frozen=True)
class FoundSubtitle:
    language: str
    label: str
    source_url: Optional[str]
    subtitle: NormalizedSubtitle

    def to_dict(self) -> dict[str, Any]:
        return {
            "language": self.language,
            "label": self.label,
            "format": self.subtitle.format.value,
            "is_ass": self.subtitle.is_ass,
            "content": self.subtitle.content,
        }


class SubtitleSearchClient:
    """Search a subtitle index by content id and download the top results."""

    def __init__(
        self,
        *,
        search_url: str = SUBTITLE_SEARCH_URL,
        max_downloads: int = SUBTITLE_MAX_DOWNLOADS,
        timeout: float = API_TIMEOUT_SECONDS,
    ) -> None:
        self.search_url = search_url
        self.max_downloads = max_downloads
        self.timeout = timeout

    def _get(self, url: str, params: dict[str, str] | None = None) -> requests.Response:
        try:
            resp = http_get(url, timeout=self.timeout, params=params)
        except requests.Timeout as exc:
            raise UpstreamTimeout(url, self.timeout) from exc
        if resp.status_code >= 400:
            raise UpstreamRejected(resp.status_code, url)
        return resp

    def _search_sync(self, params: dict[str, str], language: str) -> list[FoundSubtitle]:
        resp = self._get(self.search_url, params)
        content_type = (resp.headers.get("content-type") or "").lower()
        if "json" not in content_type:
            # Some searches answer with the subtitle body itself.
            return [FoundSubtitle(language, language, None, normalize(resp.content))]
        data = resp.json()
        items = data if isinstance(data, list) else (data or {}).get("subtitles") or []
        found: list[FoundSubtitle] = []
        for item in items[: self.max_downloads]:
            if not isinstance(item, dict) or not item.get("url"):
                continue
            url = str(item["url"])
            try:
                body = self._get(url).content
            except (UpstreamRejected, UpstreamTimeout, requests.RequestException) as exc:
                logger.warning(f"Subtitle download failed for {redact_url(url)}: {exc}")
                continue
            lang = str(item.get("language") or language)
            found.append(
                FoundSubtitle(
                    language=lang,
                    label=str(item.get("display") or lang),
                    source_url=url,
                    subtitle=normalize(body, item.get("format")),
                )
            )
        return found

    async def search(
        self,
        id: str,
        language: str = "en",
        season: int | None = None,
        episode: int | None = None,
    ) -> list[FoundSubtitle]:
        params = {"id": id}
        if season is not None:
            params["season"] = str(season)
        if episode is not None:
            params["episode"] = str(episode)
        params["language"] = language
        # search plus each download share one deadline
        deadline = self.timeout * (1 + self.max_downloads)
        logger.info(f"Subtitle search id={id} language={language} s={season} e={episode}")
        try:
            with anyio.fail_after(deadline):
                found = await anyio.to_thread.run_sync(
                    partial(self._search_sync, params, language), abandon_on_cancel=True
                )
        except TimeoutError as exc:
            raise UpstreamTimeout(self.search_url, deadline) from exc
        logger.success(f"Subtitle search id={id} returned {len(found)} subtitle(s)")
        return found
