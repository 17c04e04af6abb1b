"""Payment provider adapters."""

from .base import PaymentProvider
from .paypal import PayPalProvider
from .registry import ProviderRegistry, build_provider_registry, get_provider_registry
from .transfi import TransFiProvider

__all__ = [
    "PaymentProvider",
    "PayPalProvider",
    "TransFiProvider",
    "ProviderRegistry",
    "build_provider_registry",
    "get_provider_registry",
]
