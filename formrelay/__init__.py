"""
FormRelay - Integration dispatch engine for a form builder.

When a form is submitted (or partially saved, abandoned, ...), FormRelay
delivers the event to every destination the form owner configured:

- **Webhooks**: Signed JSON envelopes to any HTTP endpoint
- **Google Sheets**: One appended row per submission
- **Notion**: One database page per submission
- **Email**: A notification email per submission

Each destination is isolated: a slow or failing one never affects its
siblings, and each delivery is retried with bounded backoff.

Quick Start:
    >>> from formrelay import DeliveryTransport, IntegrationManager, create_default_registry
    >>> from formrelay import EventPayload, IntegrationConfig
    >>>
    >>> transport = DeliveryTransport(attempt_timeout=10.0)
    >>> manager = IntegrationManager(create_default_registry(transport))
    >>> manager.register_config(IntegrationConfig(
    ...     destination_type="webhook",
    ...     form_id="form-1",
    ...     settings={"url": "https://example.com/hook"},
    ...     subscribed_events=["form.submission"],
    ... ))
    >>> results = await manager.dispatch("form-1", EventPayload(
    ...     event="form.submission", form_id="form-1", data={"email": "a@b.co"},
    ... ))
"""

__version__ = "0.1.0"
__license__ = "MIT"

# Core exports for convenient imports
from formrelay.config import IntegrationConfig, IntegrationConfigStore
from formrelay.events import EventKind, EventMetadata, EventPayload
from formrelay.integrations import (
    DeliveryResult,
    DeliveryTransport,
    IntegrationRegistry,
    Provider,
    create_default_registry,
)
from formrelay.manager import IntegrationManager

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Events
    "EventKind",
    "EventMetadata",
    "EventPayload",
    # Configuration
    "IntegrationConfig",
    "IntegrationConfigStore",
    # Delivery
    "DeliveryResult",
    "DeliveryTransport",
    "IntegrationManager",
    "IntegrationRegistry",
    "Provider",
    "create_default_registry",
]
