from __future__ import annotations

from typing import Dict, Optional
from urllib.parse import urlsplit, urlunsplit

from loguru import logger

from streamrelay.config import PROXY_DISABLE_CERT_VERIFY, PROXY_ENABLED, PROXY_URL


def _mask(url: str | None) -> str:
    """Mask credentials in a proxy URL for safe logging."""
    if not url:
        return ""
    try:
        p = urlsplit(url)
        netloc = p.netloc
        if "@" in netloc:
            userinfo, host = netloc.split("@", 1)
            user = userinfo.split(":", 1)[0]
            netloc = f"{user}:****@{host}"
        return urlunsplit((p.scheme, netloc, p.path or "", p.query or "", p.fragment or ""))
    except ValueError:
        return url


def effective_proxy_url() -> Optional[str]:
    """Return the outbound proxy URL, or None when proxying is disabled."""
    if not PROXY_ENABLED or not PROXY_URL:
        return None
    return PROXY_URL


def proxies_mapping() -> Dict[str, str]:
    """Return a requests-compatible proxies mapping if proxying is enabled.

    Keys: 'http', 'https'. Empty dict when disabled or no URL provided.
    """
    proxy = effective_proxy_url()
    if not proxy:
        logger.debug("Requests proxies inactive or not configured.")
        return {}
    logger.info(f"Requests proxies active: {_mask(proxy)}")
    return {"http": proxy, "https": proxy}


def browser_proxy() -> Optional[dict[str, str]]:
    """Return a Playwright `proxy` launch option, splitting out credentials."""
    proxy = effective_proxy_url()
    if not proxy:
        return None
    p = urlsplit(proxy)
    server = f"{p.scheme}://{p.hostname}"
    if p.port:
        server += f":{p.port}"
    option: dict[str, str] = {"server": server}
    if p.username:
        option["username"] = p.username
    if p.password:
        option["password"] = p.password
    logger.info(f"Browser proxy in use: {_mask(proxy)}")
    return option


def requests_verify() -> bool:
    """Return TLS verification flag for outbound sessions."""
    return not PROXY_DISABLE_CERT_VERIFY


def log_proxy_config_summary() -> None:
    """Emit a one-line summary of proxy configuration at startup."""
    proxy = effective_proxy_url()
    if not proxy:
        logger.info("Proxy: disabled")
        return
    logger.info(
        f"Proxy: enabled url={_mask(proxy)} verify_tls={'on' if requests_verify() else 'off'}"
    )
