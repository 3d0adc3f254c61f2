"""
Webhook Integration.

Sends signed form events to any HTTP endpoint via the DeliveryTransport.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from formrelay.config.schemas import IntegrationConfig
from formrelay.events import EventPayload
from formrelay.integrations.base import (
    ConfigField,
    DeliveryResult,
    FieldOption,
    FieldType,
    Provider,
    ProviderDescriptor,
    ValidationError,
)
from formrelay.integrations.retry import NO_RETRY
from formrelay.integrations.transport import DeliveryTransport, OutboundRequest

logger = logging.getLogger(__name__)


class WebhookSettings(BaseModel):
    """Settings for a webhook destination."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    url: str = Field(..., min_length=1)
    method: Literal["POST", "PUT", "PATCH"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    retry_on_fail: bool = Field(True, alias="retryOnFail")
    max_attempts: int | None = Field(None, ge=1, le=10, alias="maxAttempts")

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        value = value.strip()
        try:
            url = httpx.URL(value)
        except httpx.InvalidURL as e:
            raise ValueError(f"Invalid URL: {e}") from e
        if url.scheme not in ("http", "https") or not url.host:
            raise ValueError("URL must be an absolute http(s) URL")
        return value

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @field_validator("headers", mode="before")
    @classmethod
    def _parse_headers(cls, value: Any) -> Any:
        # The configuration UI stores custom headers as a JSON object string
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as e:
                raise ValueError(f"Custom headers must be a JSON object: {e.msg}") from e
        if not isinstance(value, dict):
            raise ValueError("Custom headers must be a JSON object")
        return {str(k): str(v) for k, v in value.items()}


class WebhookProvider(Provider[WebhookSettings]):
    """Deliver form events to an arbitrary HTTP endpoint."""

    destination_type = "webhook"
    settings_model = WebhookSettings

    def __init__(self, transport: DeliveryTransport):
        self._transport = transport

    def descriptor(self) -> ProviderDescriptor:
        return ProviderDescriptor(
            destination_type=self.destination_type,
            name="Webhook",
            description="Send form submissions to any HTTP endpoint",
            icon="🔗",
            fields=(
                ConfigField(
                    key="url",
                    label="Webhook URL",
                    type=FieldType.URL,
                    required=True,
                    placeholder="https://your-server.com/webhook",
                    help_text="The URL to send form data to",
                ),
                ConfigField(
                    key="method",
                    label="HTTP Method",
                    type=FieldType.SELECT,
                    required=True,
                    default="POST",
                    options=tuple(FieldOption(value=m, label=m) for m in ("POST", "PUT", "PATCH")),
                ),
                ConfigField(
                    key="headers",
                    label="Custom Headers (JSON)",
                    type=FieldType.TEXTAREA,
                    placeholder='{"Authorization": "Bearer token"}',
                    help_text="Optional custom headers in JSON format",
                ),
                ConfigField(
                    key="secret",
                    label="Webhook Secret",
                    type=FieldType.PASSWORD,
                    help_text="Signs each delivery with HMAC-SHA256 in the X-Signature header",
                    secret=True,
                ),
                ConfigField(
                    key="retry_on_fail",
                    label="Retry on failure",
                    type=FieldType.CHECKBOX,
                    default=True,
                ),
            ),
        )

    async def test(self, config: IntegrationConfig) -> DeliveryResult:
        try:
            settings = self.settings_for(config)
        except ValidationError as e:
            return DeliveryResult.from_error(e, config.id)

        delivery = await self._transport.deliver(
            OutboundRequest(method="HEAD", url=settings.url),
            policy=NO_RETRY,
            integration=self.destination_type,
        )
        status = delivery.response.status_code if delivery.response is not None else None
        # 405 means the endpoint exists but does not accept HEAD
        if delivery.succeeded or (delivery.last_error and delivery.last_error.status_code == 405):
            return DeliveryResult.ok(
                config.id,
                status_code=status or 405,
                message=f"Webhook endpoint is reachable (status: {status or 405})",
                attempts=tuple(delivery.attempts),
            )
        return delivery.to_result(config.id)

    async def send(self, payload: EventPayload, config: IntegrationConfig) -> DeliveryResult:
        try:
            settings = self.settings_for(config)
        except ValidationError as e:
            # Never attempt delivery to an unusable endpoint
            logger.warning(f"Config {config.id}: {e}; delivery skipped")
            return DeliveryResult.from_error(e, config.id)

        policy = self._transport.policy
        if not settings.retry_on_fail:
            policy = policy.with_attempts(1)
        elif settings.max_attempts:
            policy = policy.with_attempts(settings.max_attempts)

        delivery = await self._transport.send_event(
            payload,
            url=settings.url,
            method=settings.method,
            secret=config.secret("secret"),
            headers=settings.headers,
            policy=policy,
            integration=self.destination_type,
        )
        return delivery.to_result(config.id)
