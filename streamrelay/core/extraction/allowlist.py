from __future__ import annotations

from typing import Iterable
from urllib.parse import urlsplit

from loguru import logger

from streamrelay.core.errors import BlockedDomain

BUILTIN_ALLOWED_DOMAINS: tuple[str, ...] = (
    "111movies.com",
    "vidlink.pro",
    "megafiles.store",
    "vidking.pro",
    "vidking.net",
    "videasy.net",
    "vidsrc.xyz",
    "vidsrc.pro",
    "vidsrc.cc",
    "embed.su",
    "gomo.to",
    "player.smashy.stream",
)


def _normalize(domain: str) -> str:
    return domain.strip().lower().lstrip(".").rstrip(".")


class DomainAllowlist:
    """Hosts the headless browser may be pointed at (exact host or subdomain)."""

    def __init__(self, domains: Iterable[str] = BUILTIN_ALLOWED_DOMAINS) -> None:
        self._domains = frozenset(_normalize(d) for d in domains if d and d.strip())

    @classmethod
    def from_config(cls) -> "DomainAllowlist":
        from streamrelay.config import EXTRA_ALLOWED_DOMAINS

        return cls((*BUILTIN_ALLOWED_DOMAINS, *EXTRA_ALLOWED_DOMAINS))

    @property
    def domains(self) -> frozenset[str]:
        return self._domains

    def is_allowed(self, url: str, extra: Iterable[str] = ()) -> bool:
        try:
            parts = urlsplit(url)
            host = (parts.hostname or "").lower()
        except ValueError:
            return False
        if parts.scheme not in ("http", "https") or not host:
            return False
        domains = self._domains | {_normalize(d) for d in extra}
        return any(host == d or host.endswith("." + d) for d in domains)

    def check(self, url: str, extra: Iterable[str] = ()) -> None:
        """Raise BlockedDomain unless `url` is an http(s) URL on an allowed host."""
        if self.is_allowed(url, extra):
            return
        try:
            host = urlsplit(url).hostname
        except ValueError:
            host = None
        logger.warning("Blocked navigation to non-allowlisted host {}", host or "<invalid>")
        raise BlockedDomain(url, host)
