from __future__ import annotations


class StreamRelayError(Exception):
    pass


class ExtractionError(StreamRelayError):
    """Base class for failures raised by the browser extraction engine."""


class NotFound(ExtractionError):
    """No stream candidate after every probe round (cached negatively)."""

    def __init__(self, target: str, detail: str | None = None) -> None:
        self.target = target
        self.detail = detail
        msg = f"No stream found for {target}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class BlockedDomain(ExtractionError):
    """Target URL failed the domain allowlist check. Fatal, never retried."""

    def __init__(self, url: str, host: str | None = None) -> None:
        self.url = url
        self.host = host
        super().__init__(f"Domain not allowed: {host or url}")


class NavigationTimeout(ExtractionError):
    """Browser navigation or the overall extraction deadline elapsed."""

    def __init__(self, target: str, timeout_ms: int) -> None:
        self.target = target
        self.timeout_ms = timeout_ms
        super().__init__(f"Navigation to {target} timed out after {timeout_ms}ms")


class UpstreamTimeout(StreamRelayError):
    """An upstream HTTP fetch (API, playlist or segment) timed out."""

    def __init__(self, url: str, timeout: float | None = None) -> None:
        self.url = url
        self.timeout = timeout
        suffix = f" after {timeout:g}s" if timeout else ""
        super().__init__(f"Upstream timed out{suffix}")


class UpstreamRejected(StreamRelayError):
    """Upstream answered with an error status, propagated to the caller."""

    def __init__(self, status_code: int, url: str) -> None:
        self.status_code = status_code
        self.url = url
        super().__init__(f"Upstream rejected request with HTTP {status_code}")


class MalformedPlaylist(StreamRelayError):
    """Upstream body is not an HLS playlist; callers pass it through unmodified."""


class ProviderUnavailable(StreamRelayError):
    """Provider is disabled or misconfigured; skipped without negative caching."""

    def __init__(self, provider: str, reason: str) -> None:
        self.provider = provider
        self.reason = reason
        super().__init__(f"Provider '{provider}' unavailable: {reason}")
