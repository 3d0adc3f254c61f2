"""
Integration Manager for FormRelay.

Fans one form event out to every matching integration config:

    dispatch(form_id, payload)
        -> select enabled configs of the form subscribed to payload.event
        -> resolve each config's provider through the registry
        -> send to all of them concurrently, each under a timeout
        -> update each config's health counters
        -> return one DeliveryResult per selected config

The aggregate is not atomic. Callers inspect each result rather than
treat the call as all-or-nothing; a failing destination never affects
its siblings and never raises out of dispatch().
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from formrelay.config.schemas import IntegrationConfig
from formrelay.config.store import IntegrationConfigStore
from formrelay.events import EventPayload
from formrelay.integrations.base import (
    DeliveryResult,
    IntegrationError,
    MalformedPayloadError,
    ProviderNotFoundError,
)
from formrelay.integrations.registry import IntegrationRegistry

logger = logging.getLogger(__name__)


class IntegrationManager:
    """
    Routes form events to their configured destinations.

    Usage:
        manager = IntegrationManager(registry, dispatch_timeout=60.0)
        manager.register_config(config)

        # Await the per-config results
        results = await manager.dispatch("form-1", payload)

        # Or fire and forget from a request handler
        manager.dispatch_background("form-1", payload)
    """

    def __init__(
        self,
        registry: IntegrationRegistry,
        store: IntegrationConfigStore | None = None,
        *,
        dispatch_timeout: float = 60.0,
    ):
        """
        Initialize the manager.

        Args:
            registry: Provider lookup, normally frozen
            store: Config store (a fresh in-memory store when omitted)
            dispatch_timeout: Seconds allowed for one config's send
        """
        self.registry = registry
        self.store = store if store is not None else IntegrationConfigStore()
        self.dispatch_timeout = dispatch_timeout
        self._background: set[asyncio.Task] = set()

    # ==================== Config management ====================

    def register_config(self, config: IntegrationConfig) -> IntegrationConfig:
        """
        Add or replace a config.

        Raises:
            ValidationError: If the config's provider rejects its settings
        """
        if config.destination_type in self.registry:
            provider = self.registry.resolve(config.destination_type)
            # Surface the detailed errors to the config owner at save time
            provider.settings_for(config)
        else:
            logger.warning(
                f"Config {config.id} uses unregistered destination type "
                f"'{config.destination_type}'; deliveries will fail"
            )
        self.store.put(config)
        logger.info(
            f"Registered {config.destination_type} config {config.id} for form {config.form_id}"
        )
        return config

    def remove_config(self, config_id: str) -> bool:
        removed = self.store.remove(config_id)
        if removed:
            logger.info(f"Removed config {config_id}")
        return removed

    def get_config(self, config_id: str) -> IntegrationConfig | None:
        return self.store.get(config_id)

    def configs_for_form(self, form_id: str) -> list[IntegrationConfig]:
        return self.store.for_form(form_id)

    def select_configs(self, form_id: str, payload: EventPayload) -> list[IntegrationConfig]:
        """Enabled configs of a form that subscribe to the payload's event."""
        return [
            c
            for c in self.store.for_form(form_id)
            if c.enabled and c.is_subscribed(payload.event)
        ]

    # ==================== Dispatch ====================

    async def dispatch(self, form_id: str, payload: EventPayload) -> list[DeliveryResult]:
        """
        Deliver one event to every matching config.

        Returns:
            One DeliveryResult per selected config, in selection order

        Raises:
            MalformedPayloadError: If payload is not an EventPayload for form_id
        """
        if not isinstance(payload, EventPayload):
            raise MalformedPayloadError(
                f"Expected EventPayload, got {type(payload).__name__}"
            )
        if payload.form_id != form_id:
            raise MalformedPayloadError(
                f"Payload form_id {payload.form_id!r} does not match {form_id!r}"
            )

        configs = self.select_configs(form_id, payload)
        if not configs:
            logger.debug(f"No integrations subscribed to {payload.event.value} for form {form_id}")
            return []

        logger.info(
            f"Dispatching {payload.event.value} for form {form_id} to {len(configs)} integration(s)"
        )
        results = await asyncio.gather(*(self._deliver(c, payload) for c in configs))

        failed = sum(1 for r in results if not r.success)
        if failed:
            logger.warning(
                f"Form {form_id} {payload.event.value}: "
                f"{len(results) - failed}/{len(results)} integrations succeeded, {failed} failed"
            )
        return list(results)

    async def _deliver(self, config: IntegrationConfig, payload: EventPayload) -> DeliveryResult:
        """Send to one config and record the outcome on its health counters."""
        try:
            provider = self.registry.resolve(config.destination_type)
        except ProviderNotFoundError as e:
            logger.error(f"Config {config.id}: {e}")
            result = DeliveryResult.from_error(e, config.id)
            await self._record(config, result)
            return result

        try:
            result = await asyncio.wait_for(
                provider.send(payload, config),
                timeout=self.dispatch_timeout,
            )
            result = result.for_config(config.id)
        except TimeoutError:
            logger.warning(
                f"Config {config.id}: {config.destination_type} send timed out "
                f"after {self.dispatch_timeout:.1f}s"
            )
            result = DeliveryResult.fail(
                f"Delivery timed out after {self.dispatch_timeout:.1f}s",
                config.id,
                retryable=True,
            )
        except IntegrationError as e:
            logger.warning(f"Config {config.id}: {e}")
            result = DeliveryResult.from_error(e, config.id)
        except Exception as e:  # noqa: BLE001
            # A broken provider must not take its siblings down
            logger.error(
                f"Config {config.id}: {config.destination_type} provider raised: {e}",
                exc_info=True,
            )
            result = DeliveryResult.fail(str(e) or type(e).__name__, config.id)

        await self._record(config, result)
        return result

    async def _record(self, config: IntegrationConfig, result: DeliveryResult) -> None:
        if result.success:
            await self.store.record_success(config.id, datetime.now(UTC))
        else:
            await self.store.record_failure(config.id, result.error or "Unknown error")

    # ==================== Fire and forget ====================

    def dispatch_background(self, form_id: str, payload: EventPayload) -> asyncio.Task:
        """
        Schedule dispatch() without awaiting it.

        Must be called from a running event loop. Delivery is best-effort:
        results are only logged.
        """
        task = asyncio.get_running_loop().create_task(
            self.dispatch(form_id, payload),
            name=f"dispatch:{form_id}:{payload.event.value}",
        )
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            logger.info(f"Background {task.get_name()} cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background {task.get_name()} failed: {error}", exc_info=error)

    @property
    def pending(self) -> int:
        """Number of background dispatches still running."""
        return len(self._background)

    async def aclose(self) -> None:
        """Cancel in-flight background dispatches and wait for them to finish."""
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} in-flight dispatch(es)")

    # ==================== Connectivity ====================

    async def test_config(self, config_id: str) -> DeliveryResult:
        """
        Run the provider's connectivity check for a config.

        Does not touch health counters.

        Raises:
            KeyError: If the config does not exist
        """
        config = self.store.get(config_id)
        if config is None:
            raise KeyError(config_id)
        try:
            provider = self.registry.resolve(config.destination_type)
        except ProviderNotFoundError as e:
            return DeliveryResult.from_error(e, config.id)
        try:
            result = await asyncio.wait_for(provider.test(config), timeout=self.dispatch_timeout)
        except TimeoutError:
            return DeliveryResult.fail("Connectivity test timed out", config.id, retryable=True)
        return result.for_config(config.id)


__all__ = ["IntegrationManager"]
