"""Thread-safe registry for stream providers."""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List

from loguru import logger

from .config import ProviderConfig


_PROVIDER_REGISTRY: Dict[str, ProviderConfig] = {}
_PROVIDER_REGISTRY_LOCK = threading.Lock()


def register_provider(provider: ProviderConfig) -> None:
    """Register (or replace) a ProviderConfig in the global registry.

    Parameters:
        provider (ProviderConfig): Provider record to register.
    """
    with _PROVIDER_REGISTRY_LOCK:
        _PROVIDER_REGISTRY[provider.name] = provider


def unregister_provider(name: str) -> None:
    with _PROVIDER_REGISTRY_LOCK:
        _PROVIDER_REGISTRY.pop(name, None)


def get_provider(name: str) -> ProviderConfig | None:
    """Return the provider registered under the given name, if any."""
    with _PROVIDER_REGISTRY_LOCK:
        return _PROVIDER_REGISTRY.get(name)


def list_providers() -> List[ProviderConfig]:
    """Return a list of all registered providers."""
    with _PROVIDER_REGISTRY_LOCK:
        return list(_PROVIDER_REGISTRY.values())


def providers_in_order(names: Iterable[str]) -> List[ProviderConfig]:
    """Resolve an ordered list of provider names, skipping unknown ones.

    Parameters:
        names (Iterable[str]): Provider names in priority order.
    """
    out: List[ProviderConfig] = []
    for name in names:
        provider = get_provider(name)
        if provider is None:
            logger.warning(f"Unknown provider '{name}' in provider order; skipping.")
            continue
        out.append(provider)
    return out
