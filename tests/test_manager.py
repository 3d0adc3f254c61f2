"""
Tests for the integration manager: fan-out, failure isolation, health
counters and background dispatch.
"""
import asyncio
import logging
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from pydantic import BaseModel

from formrelay.config.schemas import IntegrationConfig
from formrelay.events import EventKind, EventPayload
from formrelay.integrations.base import (
    DeliveryResult,
    MalformedPayloadError,
    Provider,
    ProviderDescriptor,
    TerminalDeliveryError,
    ValidationError,
)
from formrelay.integrations.registry import IntegrationRegistry
from formrelay.integrations.sheets import GoogleSheetsProvider
from formrelay.integrations.webhook import WebhookProvider
from formrelay.manager import IntegrationManager


class RecordingSettings(BaseModel):
    fail: bool = False
    delay: float = 0.0
    explode: bool = False
    required: str | None = None


class RecordingProvider(Provider[RecordingSettings]):
    """In-memory provider recording every send."""

    destination_type = "recording"
    settings_model = RecordingSettings

    def __init__(self):
        self.sent: list[tuple[str, EventPayload]] = []
        self.tested: list[str] = []

    def descriptor(self) -> ProviderDescriptor:
        return ProviderDescriptor(destination_type=self.destination_type, name="Recording")

    async def test(self, config):
        self.tested.append(config.id)
        return DeliveryResult.ok(message="reachable")

    async def send(self, payload, config):
        settings = self.settings_for(config)
        self.sent.append((config.id, payload))
        if settings.delay:
            await asyncio.sleep(settings.delay)
        if settings.explode:
            raise RuntimeError("provider bug")
        if settings.fail:
            return DeliveryResult.fail("HTTP 500: down", retryable=True, status_code=500)
        return DeliveryResult.ok(external_id=f"ext-{config.id}")


class StrictProvider(RecordingProvider):
    """Provider whose settings require a field."""

    destination_type = "strict"

    class Settings(BaseModel):
        endpoint: str

    settings_model = Settings


def _config(config_id, events=("submission",), destination_type="recording", **kwargs):
    return IntegrationConfig(
        id=config_id,
        destination_type=destination_type,
        form_id=kwargs.pop("form_id", "f1"),
        subscribed_events=list(events),
        **kwargs,
    )


@pytest.fixture
def provider():
    return RecordingProvider()


@pytest.fixture
def manager(provider):
    registry = IntegrationRegistry([provider, StrictProvider()])
    registry.freeze()
    return IntegrationManager(registry, dispatch_timeout=1.0)


@pytest.fixture
def payload():
    return EventPayload(event="submission", form_id="f1", form_name="Contact", data={"name": "Ann"})


# =============================================================================
# Config management
# =============================================================================


class TestConfigManagement:
    """Tests for register/remove/lookup."""

    def test_register_and_lookup(self, manager):
        manager.register_config(_config("a"))
        manager.register_config(_config("b", form_id="f2"))

        assert manager.get_config("a").id == "a"
        assert [c.id for c in manager.configs_for_form("f1")] == ["a"]

    def test_register_replaces(self, manager):
        manager.register_config(_config("a"))
        manager.register_config(_config("a", events=("viewed",)))

        assert len(manager.configs_for_form("f1")) == 1
        assert manager.get_config("a").is_subscribed(EventKind.VIEWED)

    def test_register_rejects_invalid_settings(self, manager):
        with pytest.raises(ValidationError) as exc_info:
            manager.register_config(_config("s", destination_type="strict"))
        assert exc_info.value.validation_errors
        assert manager.get_config("s") is None

    def test_register_unknown_type_warns(self, manager, caplog):
        manager.register_config(_config("u", destination_type="fax"))
        assert manager.get_config("u") is not None
        assert "unregistered destination type" in caplog.text

    def test_remove(self, manager):
        manager.register_config(_config("a"))
        assert manager.remove_config("a")
        assert not manager.remove_config("a")

    def test_register_accepts_valid_settings(self, manager):
        manager.register_config(_config("s", destination_type="strict", settings={"endpoint": "x"}))
        assert manager.get_config("s").settings == {"endpoint": "x"}


# =============================================================================
# Dispatch
# =============================================================================


class TestDispatch:
    """Tests for dispatch fan-out and isolation."""

    @pytest.mark.asyncio
    async def test_one_send_per_matching_config(self, manager, provider, payload):
        for config_id in ("a", "b", "c"):
            manager.register_config(_config(config_id))

        results = await manager.dispatch("f1", payload)

        assert [r.config_id for r in results] == ["a", "b", "c"]
        assert all(r.success for r in results)
        assert sorted(config_id for config_id, _ in provider.sent) == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_only_subscribed_configs_are_invoked(self, manager, provider, payload):
        manager.register_config(_config("a", events=("submission",)))
        manager.register_config(_config("b", events=("submission", "viewed")))
        manager.register_config(_config("c", events=("viewed",)))

        results = await manager.dispatch("f1", payload)

        assert len(results) == 2
        assert len(provider.sent) == 2
        assert {config_id for config_id, _ in provider.sent} == {"a", "b"}

    @pytest.mark.asyncio
    async def test_disabled_and_other_forms_skipped(self, manager, provider, payload):
        manager.register_config(_config("a"))
        manager.register_config(_config("off", enabled=False))
        manager.register_config(_config("other", form_id="f2"))

        results = await manager.dispatch("f1", payload)

        assert [r.config_id for r in results] == ["a"]

    @pytest.mark.asyncio
    async def test_no_configs(self, manager, payload):
        assert await manager.dispatch("f1", payload) == []

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, manager, provider, payload):
        manager.register_config(_config("ok"))
        manager.register_config(_config("down", settings={"fail": True}))
        manager.register_config(_config("buggy", settings={"explode": True}))
        manager.register_config(_config("missing", destination_type="fax"))

        results = {r.config_id: r for r in await manager.dispatch("f1", payload)}

        assert results["ok"].success
        assert results["ok"].external_id == "ext-ok"
        assert not results["down"].success
        assert results["down"].retryable
        assert not results["buggy"].success
        assert "provider bug" in results["buggy"].error
        assert not results["missing"].success
        assert "Integration type fax not found" in results["missing"].error
        assert not results["missing"].retryable

    @pytest.mark.asyncio
    async def test_raised_integration_error_becomes_result(self, manager, provider, payload):
        manager.register_config(_config("a"))
        gone = TerminalDeliveryError("HTTP 410: gone", "recording", status_code=410)

        with patch.object(provider, "send", AsyncMock(side_effect=gone)) as send:
            [result] = await manager.dispatch("f1", payload)

        send.assert_awaited_once()

        assert not result.success
        assert result.status_code == 410
        assert not result.retryable

    @pytest.mark.asyncio
    async def test_slow_config_times_out_alone(self, provider, payload):
        registry = IntegrationRegistry([provider])
        manager = IntegrationManager(registry, dispatch_timeout=0.05)
        manager.register_config(_config("fast"))
        manager.register_config(_config("slow", settings={"delay": 5}))

        results = {r.config_id: r for r in await manager.dispatch("f1", payload)}

        assert results["fast"].success
        assert not results["slow"].success
        assert results["slow"].retryable
        assert "timed out" in results["slow"].error

    @pytest.mark.asyncio
    async def test_sends_run_concurrently(self, provider, payload):
        registry = IntegrationRegistry([provider])
        manager = IntegrationManager(registry, dispatch_timeout=5.0)
        for config_id in ("a", "b", "c", "d"):
            manager.register_config(_config(config_id, settings={"delay": 0.2}))

        loop = asyncio.get_running_loop()
        started = loop.time()
        results = await manager.dispatch("f1", payload)

        assert all(r.success for r in results)
        assert loop.time() - started < 0.6

    @pytest.mark.asyncio
    async def test_malformed_payload(self, manager, payload):
        with pytest.raises(MalformedPayloadError):
            await manager.dispatch("f1", {"event": "submission"})
        with pytest.raises(MalformedPayloadError):
            await manager.dispatch("f2", payload)


# =============================================================================
# Health counters
# =============================================================================


class TestHealthCounters:
    """Tests for per-config health tracking."""

    @pytest.mark.asyncio
    async def test_failure_increments_and_success_resets(self, manager, payload):
        manager.register_config(_config("a", settings={"fail": True}))

        await manager.dispatch("f1", payload)
        await manager.dispatch("f1", payload)
        failing = manager.get_config("a")
        assert failing.consecutive_error_count == 2
        assert "HTTP 500" in failing.last_error
        assert failing.last_delivery_at is None

        manager.store.put(failing.model_copy(update={"settings": {}}))
        await manager.dispatch("f1", payload)

        healthy = manager.get_config("a")
        assert healthy.consecutive_error_count == 0
        assert healthy.last_error is None
        assert healthy.last_delivery_at is not None

    @pytest.mark.asyncio
    async def test_unknown_provider_counts_as_failure(self, manager, payload):
        manager.register_config(_config("fax", destination_type="fax"))

        await manager.dispatch("f1", payload)

        assert manager.get_config("fax").consecutive_error_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_dispatches_count_every_failure(self, manager, payload):
        manager.register_config(_config("a", settings={"fail": True}))

        await asyncio.gather(*(manager.dispatch("f1", payload) for _ in range(10)))

        assert manager.get_config("a").consecutive_error_count == 10

    @pytest.mark.asyncio
    async def test_connectivity_test_leaves_counters(self, manager, provider):
        manager.register_config(_config("a", consecutive_error_count=3))

        result = await manager.test_config("a")

        assert result.success
        assert result.config_id == "a"
        assert provider.tested == ["a"]
        assert manager.get_config("a").consecutive_error_count == 3

    @pytest.mark.asyncio
    async def test_connectivity_test_unknown_config(self, manager):
        with pytest.raises(KeyError):
            await manager.test_config("nope")


# =============================================================================
# Background dispatch
# =============================================================================


class TestBackgroundDispatch:
    """Tests for fire-and-forget dispatch."""

    @pytest.mark.asyncio
    async def test_background_dispatch_completes(self, manager, provider, payload):
        manager.register_config(_config("a"))

        task = manager.dispatch_background("f1", payload)
        assert manager.pending == 1
        results = await task
        await asyncio.sleep(0)

        assert results[0].success
        assert manager.pending == 0
        assert len(provider.sent) == 1

    @pytest.mark.asyncio
    async def test_aclose_cancels_in_flight(self, manager, provider, payload):
        manager.register_config(_config("slow", settings={"delay": 5}))

        task = manager.dispatch_background("f1", payload)
        await asyncio.sleep(0.01)
        await manager.aclose()

        assert task.cancelled()
        assert manager.pending == 0

    @pytest.mark.asyncio
    async def test_background_failure_is_logged(self, manager, payload, caplog):
        with patch.object(manager, "dispatch", AsyncMock(side_effect=MalformedPayloadError("bad"))):
            task = manager.dispatch_background("f1", payload)
            with caplog.at_level(logging.ERROR, logger="formrelay.manager"):
                with pytest.raises(MalformedPayloadError):
                    await task
                await asyncio.sleep(0)

        assert manager.pending == 0
        assert "failed: bad" in caplog.text


# =============================================================================
# End to end with the webhook provider
# =============================================================================


@pytest.mark.asyncio
async def test_webhook_dispatch_end_to_end(make_transport, submission, webhook_config):
    statuses = iter([500, 500, 200])
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(next(statuses))

    registry = IntegrationRegistry([WebhookProvider(make_transport(handler))])
    registry.freeze()
    manager = IntegrationManager(registry)
    manager.register_config(webhook_config)

    [result] = await manager.dispatch("f1", submission)

    assert result.success
    assert result.config_id == "cfg_webhook"
    assert len(result.attempts) == 3
    assert len(calls) == 3
    assert manager.get_config("cfg_webhook").consecutive_error_count == 0


@pytest.mark.asyncio
async def test_html_reply_from_sheets_is_a_result(make_transport, submission):
    def handler(request):
        return httpx.Response(200, text="<html><body>OK</body></html>", headers={"Content-Type": "text/html"})

    registry = IntegrationRegistry([GoogleSheetsProvider(make_transport(handler))])
    registry.freeze()
    manager = IntegrationManager(registry)
    manager.register_config(
        IntegrationConfig(
            id="cfg_sheets",
            destination_type="google_sheets",
            form_id="f1",
            settings={"spreadsheetId": "1BxiMVs0XRA5nFMdKvBdBZjgmUUqptlbs74OgvE2upms"},
            credentials={"access_token": "ya29.token"},
            subscribed_events=["submission"],
        )
    )

    tested = await manager.test_config("cfg_sheets")
    [result] = await manager.dispatch("f1", submission)

    assert tested.success
    assert result.success
    assert result.error is None
    assert manager.get_config("cfg_sheets").consecutive_error_count == 0
