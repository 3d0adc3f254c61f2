"""
Integration Registry for FormRelay.

Lookup table from destination type to Provider. The registry is an
explicit instance handed to the IntegrationManager; it is populated once
at startup and then frozen, after which concurrent reads need no
synchronisation.
"""

from __future__ import annotations

import logging
from types import MappingProxyType

from formrelay.integrations.base import Provider, ProviderDescriptor, ProviderNotFoundError

logger = logging.getLogger(__name__)


class IntegrationRegistry:
    """
    Catalog of available Provider implementations.

    Usage:
        registry = IntegrationRegistry()
        registry.register(WebhookProvider(transport))
        registry.register(EmailProvider(transport))
        registry.freeze()

        provider = registry.resolve("webhook")
        descriptors = registry.list()  # For the configuration UI
    """

    def __init__(self, providers: list[Provider] | None = None):
        self._providers: dict[str, Provider] = {}
        self._frozen = False
        for provider in providers or ():
            self.register(provider)

    # ==================== Registration ====================

    def _validate_provider(self, provider: Provider) -> None:
        """Validate provider has required interface."""
        if not getattr(provider, "destination_type", None):
            raise ValueError("Provider must declare a 'destination_type'")
        for method in ("descriptor", "validate", "test", "send"):
            if not callable(getattr(provider, method, None)):
                raise ValueError(f"Provider must have '{method}' method")

    def register(self, provider: Provider) -> None:
        """
        Register a provider, replacing any previous one of the same type.

        Raises:
            RuntimeError: If the registry has been frozen
            ValueError: If the provider does not implement the contract
        """
        if self._frozen:
            raise RuntimeError("Integration registry is frozen")
        self._validate_provider(provider)
        replaced = provider.destination_type in self._providers
        self._providers[provider.destination_type] = provider
        logger.debug(
            f"{'Replaced' if replaced else 'Registered'} provider: {provider.destination_type}"
        )

    def freeze(self) -> None:
        """Make the registry read-only."""
        if not self._frozen:
            self._providers = MappingProxyType(dict(self._providers))
            self._frozen = True
            logger.info(f"Integration registry frozen with {len(self._providers)} provider(s)")

    @property
    def frozen(self) -> bool:
        return self._frozen

    # ==================== Lookup ====================

    def resolve(self, destination_type: str) -> Provider:
        """
        Get the provider for a destination type.

        Raises:
            ProviderNotFoundError: If no provider is registered for the type
        """
        try:
            return self._providers[destination_type]
        except KeyError:
            raise ProviderNotFoundError(destination_type) from None

    def list(self) -> tuple[ProviderDescriptor, ...]:
        """Read-only snapshot of provider descriptors."""
        return tuple(p.descriptor() for p in self._providers.values())

    def destination_types(self) -> list[str]:
        return list(self._providers.keys())

    def __contains__(self, destination_type: object) -> bool:
        return destination_type in self._providers

    def __len__(self) -> int:
        return len(self._providers)

    def __repr__(self) -> str:
        return (
            f"IntegrationRegistry("
            f"[{', '.join(self._providers.keys())}], frozen={self._frozen})"
        )


def create_default_registry(transport) -> IntegrationRegistry:
    """
    Build and freeze a registry with the built-in providers.

    Args:
        transport: DeliveryTransport shared by all providers
    """
    from formrelay.integrations.email import EmailProvider
    from formrelay.integrations.notion import NotionProvider
    from formrelay.integrations.sheets import GoogleSheetsProvider
    from formrelay.integrations.webhook import WebhookProvider

    registry = IntegrationRegistry(
        [
            WebhookProvider(transport),
            GoogleSheetsProvider(transport),
            NotionProvider(transport),
            EmailProvider(transport),
        ]
    )
    registry.freeze()
    return registry
