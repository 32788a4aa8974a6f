from __future__ import annotations

import re

from streamrelay.domain.models import Track
from .config import ProviderConfig, ProviderKind

# vidlink renders its JW player with these colours; other values trip a
# different (ad-heavy) player build.
VIDLINK_QUERY: tuple[tuple[str, str], ...] = (
    ("primaryColor", "63b8bc"),
    ("secondaryColor", "a2a2a2"),
    ("iconColor", "eefdec"),
    ("icons", "default"),
    ("player", "jw"),
    ("title", "false"),
    ("poster", "false"),
    ("autoplay", "false"),
    ("nextbutton", "false"),
)

WORKERS_TXT_PATTERNS = (
    re.compile(r"\.workers\.dev/.+\.txt(\?|$)", re.IGNORECASE),
    re.compile(r"/file\d*/[^?#]+\.txt(\?|$)", re.IGNORECASE),
)


def builtin_providers() -> list[ProviderConfig]:
    """Return the built-in provider records with API base URLs from config."""
    from streamrelay.config import STREAM_API_URL, VIDIFY_API_URL, VIDIFY_TOKEN

    vidify_query = (("token", VIDIFY_TOKEN),)

    return [
        ProviderConfig(
            name="streamapi",
            kind=ProviderKind.API,
            track=Track.ORIGINAL,
            movie_url="{base}/movie/{id}",
            tv_url="{base}/tv/{id}/{season}/{episode}",
            language="original",
            api_base_url=STREAM_API_URL or None,
        ),
        ProviderConfig(
            name="vidlink",
            kind=ProviderKind.BROWSER,
            track=Track.ORIGINAL,
            movie_url="https://vidlink.pro/movie/{id}",
            tv_url="https://vidlink.pro/tv/{id}/{season}/{episode}",
            query=VIDLINK_QUERY,
            referer="https://vidlink.pro/",
            allowed_domains=("vidlink.pro",),
        ),
        ProviderConfig(
            name="videasy",
            kind=ProviderKind.BROWSER,
            track=Track.ORIGINAL,
            movie_url="https://player.videasy.net/movie/{id}",
            tv_url="https://player.videasy.net/tv/{id}/{season}/{episode}",
            referer="https://player.videasy.net/",
            allowed_domains=("videasy.net",),
        ),
        ProviderConfig(
            name="vidking",
            kind=ProviderKind.BROWSER,
            track=Track.ORIGINAL,
            movie_url="https://www.vidking.net/embed/movie/{id}",
            tv_url="https://www.vidking.net/embed/tv/{id}/{season}/{episode}",
            referer="https://www.vidking.net/",
            allowed_domains=("vidking.net", "vidking.pro"),
        ),
        ProviderConfig(
            name="111movies",
            kind=ProviderKind.BROWSER,
            track=Track.ORIGINAL,
            movie_url="https://111movies.com/movie/{id}",
            tv_url="https://111movies.com/tv/{id}/{season}/{episode}",
            referer="https://111movies.com/",
            allowed_domains=("111movies.com", "megafiles.store"),
            playlist_patterns=WORKERS_TXT_PATTERNS,
        ),
        ProviderConfig(
            name="vidify",
            kind=ProviderKind.VIDIFY,
            track=Track.ENGLISH_DUB,
            movie_url="{base}",
            tv_url="{base}",
            query=vidify_query,
            referer="https://vidify.top/",
            language="English Dub",
            api_base_url=VIDIFY_API_URL or None,
        ),
        ProviderConfig(
            name="latino",
            kind=ProviderKind.VIDIFY,
            track=Track.LATINO,
            movie_url="{base}",
            tv_url="{base}",
            query=vidify_query,
            referer="https://vidify.top/",
            language="LATIN Dub",
            api_base_url=VIDIFY_API_URL or None,
        ),
        ProviderConfig(
            name="vidify-original",
            kind=ProviderKind.VIDIFY,
            track=Track.ORIGINAL,
            movie_url="{base}",
            tv_url="{base}",
            query=vidify_query,
            referer="https://vidify.top/",
            language="original Lang",
            api_base_url=VIDIFY_API_URL or None,
        ),
    ]


def register_builtin_providers() -> None:
    from .registry import register_provider

    for provider in builtin_providers():
        register_provider(provider)
