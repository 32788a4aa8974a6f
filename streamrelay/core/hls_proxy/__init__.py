from .cache import CachedPlaylist, PlaylistCache, playlist_key
from .headers import FALLBACK_ORDER, HeaderMode, build_upstream_headers
from .hls import UriKind, classify_uri, rewrite_hls_playlist
from .service import (
    HLS_MEDIA_TYPE,
    INVALIDATING_STATUSES,
    ManifestRewriteProxy,
    RewrittenPlaylist,
    SessionNotFound,
    UpstreamStream,
)
from .sessions import ProxySession, ProxySessionRegistry
from .urls import build_playlist_url, build_segment_url

__all__ = [
    "CachedPlaylist",
    "PlaylistCache",
    "playlist_key",
    "FALLBACK_ORDER",
    "HeaderMode",
    "build_upstream_headers",
    "UriKind",
    "classify_uri",
    "rewrite_hls_playlist",
    "HLS_MEDIA_TYPE",
    "INVALIDATING_STATUSES",
    "ManifestRewriteProxy",
    "RewrittenPlaylist",
    "SessionNotFound",
    "UpstreamStream",
    "ProxySession",
    "ProxySessionRegistry",
    "build_playlist_url",
    "build_segment_url",
]
