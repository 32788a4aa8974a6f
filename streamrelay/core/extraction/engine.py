from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Optional

from loguru import logger

from streamrelay.core.errors import ExtractionError, NavigationTimeout, NotFound
from streamrelay.core.subtitles import detect_subtitle_language
from streamrelay.domain.models import (
    CandidateSource,
    StreamCandidate,
    SubtitleFormat,
    SubtitleRef,
)
from streamrelay.utils.logger import redact_url
from .allowlist import DomainAllowlist
from .scoring import (
    MASTER_SCORE_THRESHOLD,
    CandidateSet,
    extract_dom_candidates,
    is_playlist_url,
    is_subtitle_url,
)
from .scripts import (
    PLAY_VIDEO_SCRIPT,
    READ_RECORDED_REQUESTS_SCRIPT,
    VIRTUAL_PLAYER_SCRIPT,
)
from .session import (
    BrowserFrame,
    BrowserSession,
    NetworkEvent,
    SelectorUnsupported,
    SessionFactory,
)

if TYPE_CHECKING:
    from streamrelay.providers.config import ProviderConfig


class ExtractionState(StrEnum):
    NAVIGATING = "navigating"
    PROBING = "probing"
    CANDIDATE_FOUND = "candidate_found"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class ExtractionResult:
    target_url: str
    candidates: list[StreamCandidate]
    subtitles: list[SubtitleRef] = field(default_factory=list)
    state: ExtractionState = ExtractionState.EXHAUSTED
    rounds: int = 0

    @property
    def best(self) -> StreamCandidate:
        return self.candidates[0]


class ExtractionRun:
    """
    One extraction session as a small state machine.

    NAVIGATING -> PROBING -> CANDIDATE_FOUND | EXHAUSTED. Network listeners feed
    the candidate set; a single event wakes the probe loop as soon as a
    candidate reaches the master threshold.
    """

    def __init__(
        self,
        provider: "ProviderConfig",
        target_url: str,
        *,
        rounds: int,
        round_delay: float,
        navigation_timeout_ms: int,
    ) -> None:
        self.provider = provider
        self.target_url = target_url
        self.rounds = rounds
        self.round_delay = round_delay
        self.navigation_timeout_ms = navigation_timeout_ms
        self.state = ExtractionState.NAVIGATING
        self.candidates = CandidateSet(provider.cdn_host_patterns)
        self.subtitles: dict[str, SubtitleRef] = {}
        self.rounds_done = 0
        self._found = asyncio.Event()

    # ---- listeners (synchronous, called for every network event)
    def _observe(self, source: CandidateSource):
        def listener(event: NetworkEvent) -> None:
            self.observe(event.url, source, event.content_type)

        return listener

    def observe(
        self, url: str, source: CandidateSource, content_type: Optional[str] = None
    ) -> None:
        if not url:
            return
        if is_subtitle_url(url):
            self._add_subtitle(url)
            return
        if not is_playlist_url(url, self.provider.playlist_patterns, content_type):
            return
        candidate = self.candidates.add(url, source)
        if candidate is None:
            return
        logger.debug(
            f"[{self.provider.name}] candidate score={candidate.score} via {source.value}: "
            f"{redact_url(url)}"
        )
        if candidate.score >= MASTER_SCORE_THRESHOLD:
            self._found.set()

    def _add_subtitle(self, url: str) -> None:
        key = url.split("#", 1)[0]
        if key in self.subtitles:
            return
        code, label = detect_subtitle_language(key)
        fmt = SubtitleFormat.SRT if key.lower().split("?", 1)[0].endswith(".srt") else SubtitleFormat.VTT
        self.subtitles[key] = SubtitleRef(url=key, language_code=code, label=label, format=fmt)
        logger.trace(f"[{self.provider.name}] subtitle {label}: {redact_url(key)}")

    @property
    def found(self) -> bool:
        return self._found.is_set()

    # ---- driving
    async def run(self, session: BrowserSession) -> ExtractionResult:
        session.on_request(self._observe(CandidateSource.REQUEST))
        session.on_response(self._observe(CandidateSource.RESPONSE))
        session.on_request_finished(self._observe(CandidateSource.FINISHED))

        await self._navigate(session)
        if not self.found:
            self.state = ExtractionState.PROBING
            await self._probe(session)
        if not self.found:
            await self._scan_dom(session)
        return self.finish()

    async def _navigate(self, session: BrowserSession) -> None:
        self.state = ExtractionState.NAVIGATING
        try:
            await session.navigate(self.target_url, self.navigation_timeout_ms)
        except NavigationTimeout:
            if not self.candidates:
                raise
            logger.debug(
                f"[{self.provider.name}] navigation timed out with {len(self.candidates)} "
                "candidate(s) already seen; probing anyway"
            )

    async def _probe(self, session: BrowserSession) -> None:
        for round_no in range(1, self.rounds + 1):
            self.rounds_done = round_no
            clicked = await self._click_play(session)
            await self._start_playback(session)
            logger.trace(f"[{self.provider.name}] probe round {round_no}/{self.rounds} clicked={clicked}")
            try:
                await asyncio.wait_for(self._found.wait(), self.round_delay)
            except asyncio.TimeoutError:
                pass
            if self.found:
                logger.debug(f"[{self.provider.name}] master candidate after {round_no} round(s)")
                return

    async def _click_play(self, session: BrowserSession) -> int:
        clicked = 0
        for frame in session.frames():
            if await self._click_in_frame(frame):
                clicked += 1
        return clicked

    async def _click_in_frame(self, frame: BrowserFrame) -> bool:
        for selector in self.provider.play_selectors:
            try:
                if await frame.click(selector):
                    return True
            except SelectorUnsupported:
                logger.trace(f"[{self.provider.name}] selector unsupported: {selector}")
        for xpath in self.provider.play_xpaths:
            if await frame.click_xpath(xpath):
                return True
        return False

    async def _start_playback(self, session: BrowserSession) -> None:
        for frame in session.frames():
            await frame.evaluate(PLAY_VIDEO_SCRIPT)
        await session.evaluate(VIRTUAL_PLAYER_SCRIPT)

    async def _scan_dom(self, session: BrowserSession) -> None:
        html = await session.content()
        for url in extract_dom_candidates(html or "", self.target_url):
            self.observe(url, CandidateSource.DOM)
        recorded = await session.evaluate(READ_RECORDED_REQUESTS_SCRIPT)
        if isinstance(recorded, list):
            for url in recorded:
                if isinstance(url, str):
                    self.observe(url, CandidateSource.DOM)

    def finish(self) -> ExtractionResult:
        """Close the run: best-so-far result, or NotFound without candidates."""
        if not self.candidates:
            self.state = ExtractionState.EXHAUSTED
            raise NotFound(self.target_url, f"no playlist after {self.rounds_done} probe round(s)")
        self.state = (
            ExtractionState.CANDIDATE_FOUND if self.found else ExtractionState.EXHAUSTED
        )
        return ExtractionResult(
            target_url=self.target_url,
            candidates=self.candidates.ranked(),
            subtitles=list(self.subtitles.values()),
            state=self.state,
            rounds=self.rounds_done,
        )


class BrowserExtractionEngine:
    """Turns a provider's player page into ranked playlist candidates."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        allowlist: DomainAllowlist | None = None,
        rounds: int = 6,
        round_delay_ms: int = 800,
        navigation_timeout_ms: int = 30_000,
    ) -> None:
        self._factory = session_factory
        self._allowlist = allowlist or DomainAllowlist()
        self.rounds = rounds
        self.round_delay_ms = round_delay_ms
        self.navigation_timeout_ms = navigation_timeout_ms

    @classmethod
    def from_config(cls, session_factory: SessionFactory) -> "BrowserExtractionEngine":
        from streamrelay.config import (
            EXTRACTION_ROUND_DELAY_MS,
            EXTRACTION_ROUNDS,
            NAVIGATION_TIMEOUT_MS,
        )

        return cls(
            session_factory,
            allowlist=DomainAllowlist.from_config(),
            rounds=EXTRACTION_ROUNDS,
            round_delay_ms=EXTRACTION_ROUND_DELAY_MS,
            navigation_timeout_ms=NAVIGATION_TIMEOUT_MS,
        )

    @property
    def allowlist(self) -> DomainAllowlist:
        return self._allowlist

    async def extract(
        self, provider: "ProviderConfig", target_url: str, timeout_ms: int
    ) -> ExtractionResult:
        """
        Drive one browser session against `target_url`.

        Raises:
            BlockedDomain: before any navigation when the host is not allowed.
            NavigationTimeout: deadline elapsed with no candidate seen.
            NotFound: every probe round finished with no candidate.
            ExtractionError: the browser failed for another reason.
        """
        self._allowlist.check(target_url, provider.allowed_domains)
        run = ExtractionRun(
            provider,
            target_url,
            rounds=self.rounds,
            round_delay=self.round_delay_ms / 1000,
            navigation_timeout_ms=min(self.navigation_timeout_ms, timeout_ms),
        )
        logger.info(f"[{provider.name}] extracting {redact_url(target_url)} (deadline {timeout_ms}ms)")
        try:
            result = await asyncio.wait_for(self._drive(provider, run), timeout_ms / 1000)
        except asyncio.TimeoutError:
            if not run.candidates:
                raise NavigationTimeout(target_url, timeout_ms) from None
            logger.debug(f"[{provider.name}] deadline hit; returning best of {len(run.candidates)}")
            result = run.finish()
        logger.success(
            f"[{provider.name}] best candidate score={result.best.score} "
            f"state={result.state.value}: {redact_url(result.best.url)}"
        )
        return result

    async def _drive(self, provider: "ProviderConfig", run: ExtractionRun) -> ExtractionResult:
        try:
            async with self._factory.acquire(provider) as session:
                return await run.run(session)
        except ExtractionError:
            raise
        except (OSError, RuntimeError) as exc:
            logger.warning(f"[{provider.name}] browser session failed: {exc}")
            raise ExtractionError(f"browser session failed: {exc}") from exc
