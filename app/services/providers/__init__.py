from app.services.providers.base import (
    InvalidGrantError,
    ProviderAccessDeniedError,
    ProviderAdapter,
    ProviderError,
    ProviderNotConfiguredError,
    TransientProviderError,
    UnsupportedProviderError,
)
from app.services.providers.registry import ProviderRegistry, get_provider_registry

__all__ = [
    "InvalidGrantError",
    "ProviderAccessDeniedError",
    "ProviderAdapter",
    "ProviderError",
    "ProviderNotConfiguredError",
    "ProviderRegistry",
    "TransientProviderError",
    "UnsupportedProviderError",
    "get_provider_registry",
]
