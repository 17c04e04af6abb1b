"""Lookup of configured payment providers by id."""

import logging
from typing import Iterable

import httpx
from fastapi import Request

from ..core.config import Settings, settings
from ..core.exceptions import NotFoundError
from .base import PaymentProvider
from .paypal import PayPalProvider
from .transfi import TransFiProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Payment providers available to the gateway, keyed by ``provider_id``."""

    def __init__(self, providers: Iterable[PaymentProvider] = ()):
        self._providers: dict[str, PaymentProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: PaymentProvider) -> None:
        self._providers[provider.provider_id] = provider

    def get(self, provider_id: str) -> PaymentProvider:
        """
        Get a provider by id.

        Raises:
            NotFoundError: If no such provider is configured
        """
        provider = self._providers.get(provider_id)
        if provider is None:
            raise NotFoundError(resource_type="payment provider", resource_id=provider_id)
        return provider

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    @property
    def provider_ids(self) -> list[str]:
        return sorted(self._providers)


def build_provider_registry(client: httpx.AsyncClient, config: Settings = settings) -> ProviderRegistry:
    """Register every provider with credentials present in the configuration."""
    registry = ProviderRegistry()

    if config.paypal_client_id and config.paypal_client_secret:
        registry.register(PayPalProvider(
            client=client,
            base_url=config.paypal_base_url,
            client_id=config.paypal_client_id,
            client_secret=config.paypal_client_secret,
            webhook_id=config.paypal_webhook_id,
            return_url=config.payment_return_url,
            cancel_url=config.payment_cancel_url,
            timeout=config.provider_timeout_seconds,
        ))

    if config.transfi_api_key and config.transfi_secret_key:
        registry.register(TransFiProvider(
            client=client,
            base_url=config.transfi_base_url,
            api_key=config.transfi_api_key,
            secret_key=config.transfi_secret_key,
            webhook_secret=config.transfi_webhook_secret,
            return_url=config.payment_return_url,
            cancel_url=config.payment_cancel_url,
            timeout=config.provider_timeout_seconds,
        ))

    logger.info("Payment providers configured", extra={"providers": registry.provider_ids})
    return registry


def get_provider_registry(request: Request) -> ProviderRegistry:
    """FastAPI dependency returning the registry built at startup."""
    return request.app.state.provider_registry
