from .policy import TtlPolicy, classify_playlist_ttl
from .store import ResolutionStore, SqlResolutionStore
from .resolution_cache import ResolutionCache

__all__ = [
    "TtlPolicy",
    "classify_playlist_ttl",
    "ResolutionStore",
    "SqlResolutionStore",
    "ResolutionCache",
]
