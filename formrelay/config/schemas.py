"""
Configuration Schemas for FormRelay.

Pydantic models for integration subscriptions and service settings.

Security:
    Credential values use SecretStr to prevent accidental logging.
    Access the value with `config.secret(key)`.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

from formrelay.events import EventKind


def _utc_now() -> datetime:
    """Get current UTC time with timezone awareness."""
    return datetime.now(UTC)


def _new_config_id() -> str:
    return f"int_{uuid4().hex[:16]}"


class IntegrationConfig(BaseModel):
    """
    A subscription binding one form to one destination.

    Created and edited by the form builder backend; FormRelay only reads
    it and writes back the health counters (`last_delivery_at`,
    `consecutive_error_count`, `last_error`) after each delivery.
    """

    id: str = Field(default_factory=_new_config_id, description="Unique config identifier")
    destination_type: str = Field(..., min_length=1, description="Registry key of the provider")
    display_name: str = Field("", description="Human-readable name")
    enabled: bool = True
    form_id: str = Field(..., min_length=1)

    credentials: dict[str, SecretStr] = Field(default_factory=dict)
    settings: dict[str, Any] = Field(default_factory=dict)
    subscribed_events: set[EventKind] = Field(default_factory=set)

    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    # Health counters
    last_delivery_at: datetime | None = None
    consecutive_error_count: int = Field(0, ge=0)
    last_error: str | None = None

    @field_validator("subscribed_events", mode="before")
    @classmethod
    def _parse_events(cls, value: Any) -> set[EventKind]:
        if isinstance(value, (str, EventKind)):
            value = [value]
        return {EventKind.parse(v) for v in value or ()}

    @model_validator(mode="after")
    def _enabled_requires_events(self) -> IntegrationConfig:
        if self.enabled and not self.subscribed_events:
            raise ValueError("An enabled integration must subscribe to at least one event")
        return self

    def secret(self, key: str) -> str | None:
        """Return a credential value, or None if unset or empty."""
        value = self.credentials.get(key)
        if value is None:
            return None
        return value.get_secret_value() or None

    def is_subscribed(self, event: EventKind | str) -> bool:
        return EventKind.parse(event) in self.subscribed_events

    def public_view(self) -> dict[str, Any]:
        """Serialise for the configuration UI, without credential values."""
        data = self.model_dump(mode="json", exclude={"credentials"})
        data["subscribed_events"] = sorted(e.value for e in self.subscribed_events)
        data["credential_keys"] = sorted(self.credentials)
        return data


class AppSettings(BaseModel):
    """
    Application settings model.

    Used for type-safe settings access. Populated from FORMRELAY_*
    environment variables by `formrelay.app.dependencies.get_settings`.
    """

    # Service identity
    service_name: str = "formrelay"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Delivery
    attempt_timeout: float = Field(10.0, gt=0, description="Seconds allowed per HTTP attempt")
    max_attempts: int = Field(3, ge=1, le=10)
    retry_base_delay: float = Field(2.0, ge=0)
    retry_max_delay: float = Field(60.0, ge=0)
    dispatch_timeout: float = Field(60.0, gt=0, description="Seconds allowed per config send")
    user_agent: str = ""

    # Optional JSON file of IntegrationConfig records loaded at startup
    config_file: str | None = None
