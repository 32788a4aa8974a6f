from .config import ProviderConfig, ProviderKind
from .registry import (
    get_provider,
    list_providers,
    providers_in_order,
    register_provider,
    unregister_provider,
)
from .builtin import builtin_providers, register_builtin_providers

register_builtin_providers()

__all__ = [
    "ProviderConfig",
    "ProviderKind",
    "get_provider",
    "list_providers",
    "providers_in_order",
    "register_provider",
    "unregister_provider",
    "builtin_providers",
    "register_builtin_providers",
]
