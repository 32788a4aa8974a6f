import os
import sys
from loguru import logger


def config():
    """
    Configure the global Loguru logger. Keeps this function lightweight so it
    can be imported across the codebase without side-effects.
    """
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
    logger.remove()
    logger.add(
        sys.stdout,
        level=LOG_LEVEL,
        colorize=True,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    )


def redact_url(url: str) -> str:
    """
    Produce a redacted identifier for logging upstream URLs.

    Signed stream URLs carry tokens in path and query; only the host and a
    short hash of the path are logged.
    """
    from urllib.parse import urlsplit

    try:
        parsed = urlsplit(url)
        host = parsed.netloc
        path = parsed.path or "/"
        return f"{host}:{hash(path) & 0xFFFF_FFFF:x}"
    except ValueError:
        return "<redacted>"
