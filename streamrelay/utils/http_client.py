from __future__ import annotations

from typing import Any, Optional
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from loguru import logger

from streamrelay.config import BROWSER_USER_AGENT, PROXY_ENABLED
from streamrelay.infrastructure.network import proxies_mapping, requests_verify

_SESSION: Optional[requests.Session] = None


def _build_session() -> requests.Session:
    s = requests.Session()
    proxies = proxies_mapping()
    if proxies:
        s.proxies.update(proxies)

    # Conservative retry policy for transient network hiccups
    retry = Retry(
        total=2,
        connect=2,
        read=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=("GET", "HEAD", "OPTIONS"),
        respect_retry_after_header=True,
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=20)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.verify = requests_verify()
    s.headers.update({"User-Agent": BROWSER_USER_AGENT, "Accept": "application/json, */*"})
    # SOCKS relays tend to mangle compressed responses.
    if PROXY_ENABLED:
        s.headers.update({"Accept-Encoding": "identity"})
        logger.info("HTTP client: forcing Accept-Encoding=identity behind proxy")
    logger.debug(f"HTTP client TLS verify: {'on' if s.verify else 'off'}")
    return s


def get_session() -> requests.Session:
    global _SESSION
    if _SESSION is None:
        _SESSION = _build_session()
    return _SESSION


def close_session() -> None:
    global _SESSION
    if _SESSION is not None:
        _SESSION.close()
        _SESSION = None
        logger.debug("HTTP client session closed.")


def get(url: str, *, timeout: float | int = 20, **kwargs: Any) -> requests.Response:
    s = get_session()
    try:
        return s.get(url, timeout=timeout, **kwargs)
    except requests.exceptions.ContentDecodingError:
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Accept-Encoding"] = "identity"
        logger.warning("HTTP GET retry with Accept-Encoding=identity due to decode error")
        return s.get(url, timeout=timeout, headers=headers, **kwargs)
