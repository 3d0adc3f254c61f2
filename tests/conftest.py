"""
Pytest configuration and fixtures for FormRelay tests.

Outbound HTTP is never real: transports are built over
`httpx.MockTransport` and backoff sleeps are recorded instead of awaited.
"""

import sys
from pathlib import Path

import httpx
import pytest

# Add the repository root to path for imports
# This allows `from formrelay.integrations import ...` to work
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from formrelay.config.schemas import IntegrationConfig  # noqa: E402
from formrelay.events import EventPayload  # noqa: E402
from formrelay.integrations.retry import ExponentialBackoff, RetryPolicy  # noqa: E402
from formrelay.integrations.transport import DeliveryTransport  # noqa: E402


@pytest.fixture
def sleeps():
    """Delays the transport would have slept for, in order."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay):
        sleeps.append(delay)

    return _sleep


@pytest.fixture
def make_transport(fake_sleep):
    """
    Factory for a DeliveryTransport backed by a mock HTTP handler.

    Usage:
        transport = make_transport(lambda request: httpx.Response(200))
    """

    def _make(handler, **kwargs):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        kwargs.setdefault(
            "policy",
            RetryPolicy(max_attempts=3, backoff=ExponentialBackoff(base=2.0, multiplier=2.0)),
        )
        kwargs.setdefault("sleep", fake_sleep)
        return DeliveryTransport(client=client, **kwargs)

    return _make


@pytest.fixture
def submission():
    """Contact form submission."""
    return EventPayload(
        event="submission",
        form_id="f1",
        form_name="Contact",
        data={"name": "Ann", "email": "a@b.com"},
        metadata={"responseId": "resp_1", "userAgent": "Mozilla/5.0", "completionTime": 42.5},
    )


@pytest.fixture
def webhook_config():
    """Signed webhook subscribed to submissions of form f1."""
    return IntegrationConfig(
        id="cfg_webhook",
        destination_type="webhook",
        form_id="f1",
        settings={"url": "https://example.com/hook"},
        credentials={"secret": "s3cr3t"},
        subscribed_events=["submission"],
    )
