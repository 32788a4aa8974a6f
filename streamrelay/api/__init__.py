from .proxy import router as proxy_router
from .resolve import router as resolve_router
from .subtitles import router as subtitles_router

__all__ = ["proxy_router", "resolve_router", "subtitles_router"]
