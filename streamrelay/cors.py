from __future__ import annotations

from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

# Players read these to drive byte-range requests against proxied segments.
EXPOSED_HEADERS = ["Content-Length", "Content-Range", "Accept-Ranges"]


def apply_cors_middleware(
    app: FastAPI,
    *,
    origins: list[str],
    allow_credentials: bool,
) -> None:
    """Apply CORSMiddleware using StreamRelay config semantics.

    - No middleware if origins is empty.
    - Wildcard origins ("*") always disable credentials.
    - Range-related response headers are exposed to browser players.
    """

    if not origins:
        return

    is_wildcard = "*" in origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if is_wildcard else origins,
        allow_credentials=False if is_wildcard else allow_credentials,
        allow_methods=["GET", "HEAD", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=EXPOSED_HEADERS,
    )
