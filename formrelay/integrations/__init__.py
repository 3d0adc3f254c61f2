"""
FormRelay Integrations Layer.

Destination providers and the delivery machinery they share.
Each provider follows a consistent pattern:

1. Settings: Pydantic model parsed from `IntegrationConfig.settings`
2. Descriptor: Static metadata for the configuration UI
3. test(): Non-mutating connectivity check
4. send(): One delivery through the shared DeliveryTransport

Directory Structure:
    integrations/
    ├── base.py           # Provider contract, results, exceptions
    ├── registry.py       # IntegrationRegistry
    ├── transport.py      # DeliveryTransport (signing, retry, timeouts)
    ├── retry.py          # Backoff strategies and RetryPolicy
    ├── signing.py        # HMAC-SHA256 signatures
    ├── webhook.py        # Generic HTTP webhook
    ├── sheets.py         # Google Sheets rows
    ├── notion.py         # Notion database pages
    └── email.py          # Email notifications (Resend)

Usage:
    from formrelay.integrations import DeliveryTransport, create_default_registry

    transport = DeliveryTransport(attempt_timeout=10.0)
    registry = create_default_registry(transport)
    provider = registry.resolve("webhook")
    result = await provider.send(payload, config)
"""

from formrelay.integrations.base import (
    AttemptOutcome,
    ConfigField,
    DeliveryAttempt,
    DeliveryResult,
    FieldType,
    IntegrationError,
    MalformedPayloadError,
    Provider,
    ProviderDescriptor,
    ProviderNotFoundError,
    RateLimitError,
    TerminalDeliveryError,
    TransientDeliveryError,
    ValidationError,
)
from formrelay.integrations.registry import IntegrationRegistry, create_default_registry
from formrelay.integrations.retry import (
    DEFAULT_DELIVERY_POLICY,
    NO_RETRY,
    ConstantBackoff,
    ExponentialBackoff,
    NoBackoff,
    RetryPolicy,
)
from formrelay.integrations.signing import sign, verify_signature
from formrelay.integrations.transport import Delivery, DeliveryState, DeliveryTransport

__all__ = [
    # Contract
    "Provider",
    "ProviderDescriptor",
    "ConfigField",
    "FieldType",
    # Results
    "AttemptOutcome",
    "DeliveryAttempt",
    "DeliveryResult",
    # Errors
    "IntegrationError",
    "MalformedPayloadError",
    "ProviderNotFoundError",
    "RateLimitError",
    "TerminalDeliveryError",
    "TransientDeliveryError",
    "ValidationError",
    # Registry
    "IntegrationRegistry",
    "create_default_registry",
    # Delivery
    "Delivery",
    "DeliveryState",
    "DeliveryTransport",
    "RetryPolicy",
    "ExponentialBackoff",
    "ConstantBackoff",
    "NoBackoff",
    "NO_RETRY",
    "DEFAULT_DELIVERY_POLICY",
    "sign",
    "verify_signature",
]
