from __future__ import annotations

from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncContextManager,
    Callable,
    Optional,
    Protocol,
    Sequence,
)

if TYPE_CHECKING:
    from streamrelay.providers.config import ProviderConfig


@dataclass(frozen=True)
class NetworkEvent:
    url: str
    resource_type: Optional[str] = None
    content_type: Optional[str] = None
    status: Optional[int] = None


NetworkListener = Callable[[NetworkEvent], None]


class SelectorUnsupported(Exception):
    """The frame's selector engine cannot parse a CSS selector."""


class BrowserFrame(Protocol):
    async def click(self, selector: str) -> bool:
        """Click the first match; False when absent or not clickable.

        Raises SelectorUnsupported when the selector cannot be parsed.
        """
        ...

    async def click_xpath(self, xpath: str) -> bool: ...

    async def evaluate(self, script: str) -> Any:
        """Run a script in the frame; page-script errors yield None."""
        ...


class BrowserSession(Protocol):
    """Narrow capability surface the extraction engine drives.

    Listener callbacks are plain functions invoked for every network event of
    the session (all pages and frames). `navigate` raises NavigationTimeout
    when the page does not load in time.
    """

    async def navigate(self, url: str, timeout_ms: int) -> None: ...

    def on_request(self, listener: NetworkListener) -> None: ...

    def on_response(self, listener: NetworkListener) -> None: ...

    def on_request_finished(self, listener: NetworkListener) -> None: ...

    async def evaluate(self, script: str) -> Any: ...

    def frames(self) -> Sequence[BrowserFrame]: ...

    async def content(self) -> str: ...

    async def close(self) -> None: ...


class SessionFactory(Protocol):
    """Hands out sessions from a bounded pool; leaving the context releases it."""

    def acquire(self, provider: "ProviderConfig") -> AsyncContextManager[BrowserSession]: ...
