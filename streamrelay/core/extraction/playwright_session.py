"""Playwright-backed BrowserSession and the bounded browser pool."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Optional

from loguru import logger
from playwright.async_api import (
    Browser,
    BrowserContext,
    Frame,
    Page,
    Playwright,
    Request,
    Response,
    Route,
    async_playwright,
)
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from streamrelay.core.errors import ExtractionError, NavigationTimeout
from streamrelay.infrastructure.network import browser_proxy
from streamrelay.utils.logger import redact_url
from .allowlist import DomainAllowlist
from .scripts import INIT_SCRIPT
from .session import NetworkEvent, NetworkListener, SelectorUnsupported

if TYPE_CHECKING:
    from streamrelay.providers.config import ProviderConfig

BLOCKED_RESOURCE_TYPES = frozenset({"image", "stylesheet", "font"})
LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--autoplay-policy=no-user-gesture-required",
]
CLICK_TIMEOUT_MS = 1500


def _is_selector_error(exc: PlaywrightError) -> bool:
    msg = str(exc)
    return "valid selector" in msg or "Unexpected token" in msg or "selector engine" in msg


class PlaywrightFrame:
    def __init__(self, frame: Frame) -> None:
        self._frame = frame

    async def click(self, selector: str) -> bool:
        try:
            handle = await self._frame.query_selector(selector)
        except PlaywrightError as exc:
            if _is_selector_error(exc):
                raise SelectorUnsupported(selector) from exc
            return False
        if handle is None:
            return False
        try:
            await handle.click(timeout=CLICK_TIMEOUT_MS, force=True)
        except PlaywrightError:
            return False
        return True

    async def click_xpath(self, xpath: str) -> bool:
        try:
            handle = await self._frame.query_selector(f"xpath={xpath}")
            if handle is None:
                return False
            await handle.click(timeout=CLICK_TIMEOUT_MS, force=True)
        except PlaywrightError:
            return False
        return True

    async def evaluate(self, script: str) -> Any:
        try:
            return await self._frame.evaluate(script)
        except PlaywrightError as exc:
            logger.trace(f"Frame script failed: {exc}")
            return None


class PlaywrightSession:
    """One BrowserContext with one page; every network event is fanned out."""

    def __init__(
        self,
        context: BrowserContext,
        *,
        allowlist: DomainAllowlist,
        extra_domains: tuple[str, ...] = (),
    ) -> None:
        self._context = context
        self._allowlist = allowlist
        self._extra_domains = extra_domains
        self._page: Optional[Page] = None
        self._listeners: dict[str, list[NetworkListener]] = {
            "request": [],
            "response": [],
            "requestfinished": [],
        }
        self._popups: set[asyncio.Task] = set()
        self._closed = False

    async def open(self) -> None:
        await self._context.add_init_script(INIT_SCRIPT)
        await self._context.route("**/*", self._route)
        self._context.on("request", self._on_request)
        self._context.on("response", self._on_response)
        self._context.on("requestfinished", self._on_request_finished)
        self._page = await self._context.new_page()
        # Registered after the main page so only popups reach the handler.
        self._context.on("page", self._on_popup)

    # ---- interception
    async def _route(self, route: Route) -> None:
        request = route.request
        if request.resource_type in BLOCKED_RESOURCE_TYPES:
            await route.abort()
            return
        if (
            request.is_navigation_request()
            and request.frame.parent_frame is None
            and not self._allowlist.is_allowed(request.url, self._extra_domains)
        ):
            logger.debug(f"Aborting top-level navigation to {redact_url(request.url)}")
            await route.abort()
            return
        await route.continue_()

    def _dispatch(self, kind: str, event: NetworkEvent) -> None:
        for listener in self._listeners[kind]:
            try:
                listener(event)
            except Exception as exc:
                logger.warning(f"Network listener failed on {kind}: {exc}")

    def _on_request(self, request: Request) -> None:
        self._dispatch("request", NetworkEvent(request.url, request.resource_type))

    def _on_response(self, response: Response) -> None:
        self._dispatch(
            "response",
            NetworkEvent(
                response.url,
                response.request.resource_type,
                response.headers.get("content-type"),
                response.status,
            ),
        )

    def _on_request_finished(self, request: Request) -> None:
        self._dispatch("requestfinished", NetworkEvent(request.url, request.resource_type))

    def _on_popup(self, page: Page) -> None:
        if self._closed:
            return
        task = asyncio.ensure_future(self._close_popup(page))
        self._popups.add(task)
        task.add_done_callback(self._popups.discard)

    async def _close_popup(self, page: Page) -> None:
        try:
            await page.close()
            logger.trace("Closed popup page")
        except PlaywrightError as exc:
            logger.trace(f"Popup already gone: {exc}")

    # ---- BrowserSession
    async def navigate(self, url: str, timeout_ms: int) -> None:
        assert self._page is not None, "session not opened"
        try:
            await self._page.goto(url, timeout=timeout_ms, wait_until="domcontentloaded")
        except PlaywrightTimeoutError as exc:
            raise NavigationTimeout(url, timeout_ms) from exc
        except PlaywrightError as exc:
            raise ExtractionError(f"navigation failed: {exc}") from exc

    def on_request(self, listener: NetworkListener) -> None:
        self._listeners["request"].append(listener)

    def on_response(self, listener: NetworkListener) -> None:
        self._listeners["response"].append(listener)

    def on_request_finished(self, listener: NetworkListener) -> None:
        self._listeners["requestfinished"].append(listener)

    async def evaluate(self, script: str) -> Any:
        if self._page is None or self._page.is_closed():
            return None
        try:
            return await self._page.evaluate(script)
        except PlaywrightError as exc:
            logger.trace(f"Page script failed: {exc}")
            return None

    def frames(self) -> list[PlaywrightFrame]:
        if self._page is None or self._page.is_closed():
            return []
        return [PlaywrightFrame(f) for f in self._page.frames]

    async def content(self) -> str:
        if self._page is None or self._page.is_closed():
            return ""
        try:
            return await self._page.content()
        except PlaywrightError:
            return ""

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for task in list(self._popups):
            task.cancel()
        try:
            await self._context.close()
        except PlaywrightError as exc:
            logger.debug(f"Browser context close failed: {exc}")


class PlaywrightBrowserPool:
    """
    One shared Chromium; sessions are fresh contexts gated by a semaphore.

    Excess callers queue on the semaphore instead of opening more contexts.
    The browser launches on first use and is relaunched when it disconnects.
    """

    def __init__(
        self,
        *,
        size: int = 2,
        headless: bool = True,
        user_agent: str,
        allowlist: DomainAllowlist,
        locale: str = "en-US",
        launcher: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.size = size
        self.headless = headless
        self.user_agent = user_agent
        self.locale = locale
        self._allowlist = allowlist
        self._launcher = launcher or async_playwright
        self._sem = asyncio.Semaphore(size)
        self._lock = asyncio.Lock()
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self.active = 0
        self.launches = 0

    @classmethod
    def from_config(cls, allowlist: DomainAllowlist) -> "PlaywrightBrowserPool":
        from streamrelay.config import (
            BROWSER_HEADLESS,
            BROWSER_POOL_SIZE,
            BROWSER_USER_AGENT,
        )

        return cls(
            size=BROWSER_POOL_SIZE,
            headless=BROWSER_HEADLESS,
            user_agent=BROWSER_USER_AGENT,
            allowlist=allowlist,
        )

    async def _ensure_browser(self) -> Browser:
        async with self._lock:
            if self._browser is not None and not self._browser.is_connected():
                logger.warning("Browser disconnected; relaunching")
                self._browser = None
            if self._browser is None:
                if self._playwright is None:
                    self._playwright = await self._launcher().start()
                launch_kwargs: dict[str, Any] = {"headless": self.headless, "args": LAUNCH_ARGS}
                proxy = browser_proxy()
                if proxy:
                    launch_kwargs["proxy"] = proxy
                self._browser = await self._playwright.chromium.launch(**launch_kwargs)
                self.launches += 1
                logger.info(f"Chromium launched (headless={self.headless}, pool size={self.size})")
            return self._browser

    @asynccontextmanager
    async def acquire(self, provider: "ProviderConfig") -> AsyncIterator[PlaywrightSession]:
        async with self._sem:
            browser = await self._ensure_browser()
            context = await browser.new_context(
                user_agent=self.user_agent,
                viewport={"width": 1280, "height": 720},
                bypass_csp=True,
                locale=self.locale,
                java_script_enabled=True,
            )
            session = PlaywrightSession(
                context,
                allowlist=self._allowlist,
                extra_domains=provider.allowed_domains,
            )
            self.active += 1
            logger.debug(f"[{provider.name}] browser session opened ({self.active}/{self.size})")
            try:
                await session.open()
                yield session
            finally:
                self.active -= 1
                # Release must complete even when the caller is being cancelled.
                await asyncio.shield(session.close())
                logger.debug(f"[{provider.name}] browser session released")

    def stats(self) -> dict[str, Any]:
        return {
            "size": self.size,
            "active": self.active,
            "launches": self.launches,
            "connected": bool(self._browser and self._browser.is_connected()),
        }

    async def close(self) -> None:
        async with self._lock:
            if self._browser is not None:
                try:
                    await self._browser.close()
                except PlaywrightError as exc:
                    logger.debug(f"Browser close failed: {exc}")
                self._browser = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None
        logger.info("Browser pool closed")
