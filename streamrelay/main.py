from __future__ import annotations

from typing import Callable, Optional

from fastapi import FastAPI, Request
from loguru import logger

from streamrelay._version import __version__
from streamrelay.api import proxy_router, resolve_router, subtitles_router
from streamrelay.config import CORS_ALLOW_CREDENTIALS, CORS_ORIGINS
from streamrelay.core.lifespan import Services, build_services, make_lifespan
from streamrelay.cors import apply_cors_middleware


def create_app(services_factory: Optional[Callable[[], Services]] = None) -> FastAPI:
    """Build the FastAPI app; tests pass a factory that wires fakes."""
    app = FastAPI(
        title="StreamRelay",
        version=__version__,
        lifespan=make_lifespan(services_factory or build_services),
    )
    apply_cors_middleware(
        app, origins=CORS_ORIGINS, allow_credentials=CORS_ALLOW_CREDENTIALS
    )
    app.include_router(resolve_router)  # /resolve
    app.include_router(proxy_router)  # /proxy/playlist, /proxy/segment
    app.include_router(subtitles_router)  # /subtitles

    # Healthcheck endpoint for CI/CD and monitoring
    @app.get("/health")
    async def healthcheck(request: Request):
        services: Optional[Services] = getattr(request.app.state, "services", None)
        payload = {"status": "ok", "version": __version__}
        if services is not None:
            payload.update(services.health())
        return payload

    logger.debug("FastAPI app created")
    return app


app = create_app()
