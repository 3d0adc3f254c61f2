"""
Dependency Injection for FormRelay.

Provides singleton instances of the transport, registry and manager.

All three are built once at startup (see `initialize_services`) and torn
down at shutdown; request handlers receive them through FastAPI's
`Depends`.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache

from formrelay.config import AppSettings, IntegrationConfigStore
from formrelay.integrations.registry import IntegrationRegistry, create_default_registry
from formrelay.integrations.retry import ExponentialBackoff, RetryPolicy
from formrelay.integrations.transport import DEFAULT_USER_AGENT, DeliveryTransport
from formrelay.manager import IntegrationManager

logger = logging.getLogger(__name__)


@lru_cache()
def get_settings() -> AppSettings:
    """
    Get application settings from environment.

    Uses lru_cache for singleton pattern.
    """
    return AppSettings(
        # Service
        service_name=os.getenv("FORMRELAY_SERVICE_NAME", "formrelay"),
        environment=os.getenv("FORMRELAY_ENVIRONMENT", "development"),
        debug=os.getenv("FORMRELAY_DEBUG", "false").lower() == "true",
        log_level=os.getenv("FORMRELAY_LOG_LEVEL", "INFO").upper(),
        # Delivery
        attempt_timeout=float(os.getenv("FORMRELAY_ATTEMPT_TIMEOUT", "10")),
        max_attempts=int(os.getenv("FORMRELAY_MAX_ATTEMPTS", "3")),
        retry_base_delay=float(os.getenv("FORMRELAY_RETRY_BASE_DELAY", "2.0")),
        retry_max_delay=float(os.getenv("FORMRELAY_RETRY_MAX_DELAY", "60")),
        dispatch_timeout=float(os.getenv("FORMRELAY_DISPATCH_TIMEOUT", "60")),
        user_agent=os.getenv("FORMRELAY_USER_AGENT", ""),
        # Seed configs
        config_file=os.getenv("FORMRELAY_CONFIG_FILE") or None,
    )


def build_policy(settings: AppSettings) -> RetryPolicy:
    """Default delivery retry policy from settings."""
    return RetryPolicy(
        max_attempts=settings.max_attempts,
        backoff=ExponentialBackoff(
            base=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            jitter=True,
        ),
        max_delay=settings.retry_max_delay,
    )


# Global instances (initialized on first access)
_transport: DeliveryTransport | None = None
_registry: IntegrationRegistry | None = None
_manager: IntegrationManager | None = None


def get_transport() -> DeliveryTransport:
    """
    Get the shared delivery transport.

    Creates it on first call.
    """
    global _transport
    if _transport is None:
        settings = get_settings()
        _transport = DeliveryTransport(
            attempt_timeout=settings.attempt_timeout,
            policy=build_policy(settings),
            user_agent=settings.user_agent or DEFAULT_USER_AGENT,
        )
    return _transport


def get_registry() -> IntegrationRegistry:
    """
    Get the frozen registry of built-in providers.

    Creates it on first call.
    """
    global _registry
    if _registry is None:
        _registry = create_default_registry(get_transport())
    return _registry


def get_manager() -> IntegrationManager:
    """
    Get the integration manager.

    Seeds the config store from FORMRELAY_CONFIG_FILE on first call when set.
    """
    global _manager
    if _manager is None:
        settings = get_settings()
        store = (
            IntegrationConfigStore.from_file(settings.config_file)
            if settings.config_file
            else IntegrationConfigStore()
        )
        _manager = IntegrationManager(
            get_registry(),
            store,
            dispatch_timeout=settings.dispatch_timeout,
        )
    return _manager


async def initialize_services() -> None:
    """
    Initialize all services on application startup.

    Called from FastAPI lifespan.
    """
    manager = get_manager()
    logger.info(
        f"Providers: {', '.join(manager.registry.destination_types())}; "
        f"{len(manager.store)} integration config(s) loaded"
    )


async def shutdown_services() -> None:
    """
    Cleanup all services on application shutdown.

    Called from FastAPI lifespan. In-flight background dispatches are
    cancelled before the HTTP client is closed.
    """
    global _transport, _registry, _manager
    if _manager is not None:
        await _manager.aclose()
        _manager = None
    _registry = None
    if _transport is not None:
        await _transport.close()
        _transport = None
