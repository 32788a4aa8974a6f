"""StreamRelay: HLS stream resolution and manifest-rewrite proxy."""

from ._version import __version__

__all__ = ["__version__"]
