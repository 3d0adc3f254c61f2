"""
Base classes for FormRelay integrations.

This module defines the foundational abstractions shared by every
destination provider, ensuring consistent patterns across webhooks,
spreadsheets, workspace databases and email.

Design Principles:
1. Async-first: All I/O operations are async
2. Type-safe: Pydantic models for settings and descriptors
3. Observable: Every delivery returns its attempt history
4. Resilient: Failures are classified, never raised out of send()
5. Testable: Providers take their transport by injection

Failure Classification:
    - Retryable: timeouts, network errors, 429, 5xx
    - Terminal: 4xx (except 429), invalid configuration, explicit rejection
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar, Generic, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from formrelay.config.schemas import IntegrationConfig
from formrelay.events import EventPayload

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class IntegrationError(Exception):
    """Base exception for integration errors."""

    def __init__(
        self,
        message: str,
        integration: str,
        *,
        status_code: int | None = None,
        response_body: str | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.integration = integration
        self.status_code = status_code
        self.response_body = response_body
        self.retryable = retryable

    def __str__(self) -> str:
        parts = [f"[{self.integration}] {self.args[0]}"]
        if self.status_code:
            parts.append(f"(status={self.status_code})")
        return " ".join(parts)


class ValidationError(IntegrationError):
    """Raised when an integration config fails structural validation."""

    def __init__(
        self,
        message: str,
        integration: str,
        *,
        validation_errors: list[dict[str, Any]] | None = None,
        **kwargs,
    ):
        super().__init__(message, integration, retryable=False, **kwargs)
        self.validation_errors = validation_errors or []


class ProviderNotFoundError(IntegrationError):
    """Raised when no provider is registered for a destination type."""

    def __init__(self, destination_type: str):
        super().__init__(
            f"Integration type {destination_type} not found",
            destination_type,
            retryable=False,
        )
        self.destination_type = destination_type


class TransientDeliveryError(IntegrationError):
    """Network failure or retryable non-2xx response."""

    def __init__(self, message: str, integration: str, **kwargs):
        super().__init__(message, integration, retryable=True, **kwargs)


class RateLimitError(TransientDeliveryError):
    """Raised when the destination rate limits us (429)."""

    def __init__(
        self,
        message: str,
        integration: str,
        *,
        retry_after: float | None = None,
        **kwargs,
    ):
        super().__init__(message, integration, **kwargs)
        self.retry_after = retry_after


class TerminalDeliveryError(IntegrationError):
    """4xx-class rejection or explicit provider rejection. Never retried."""

    def __init__(self, message: str, integration: str, **kwargs):
        super().__init__(message, integration, retryable=False, **kwargs)


class MalformedPayloadError(ValueError):
    """Raised by dispatch() for a payload it cannot route."""


# =============================================================================
# Result Types
# =============================================================================


class AttemptOutcome(str, Enum):
    """Outcome of a single delivery attempt."""

    SUCCESS = "success"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class DeliveryAttempt:
    """One HTTP attempt made while delivering an event. Not persisted."""

    number: int
    outcome: AttemptOutcome
    status_code: int | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=_utc_now)


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    """Per-config outcome of a delivery or connectivity test."""

    success: bool
    config_id: str = ""
    external_id: str | None = None
    error: str | None = None
    retryable: bool = False
    status_code: int | None = None
    message: str | None = None
    attempts: tuple[DeliveryAttempt, ...] = ()

    @classmethod
    def ok(
        cls,
        config_id: str = "",
        *,
        external_id: str | None = None,
        status_code: int | None = None,
        message: str | None = None,
        attempts: tuple[DeliveryAttempt, ...] = (),
    ) -> DeliveryResult:
        """Create a successful result."""
        return cls(
            success=True,
            config_id=config_id,
            external_id=external_id,
            status_code=status_code,
            message=message,
            attempts=attempts,
        )

    @classmethod
    def fail(
        cls,
        error: str,
        config_id: str = "",
        *,
        retryable: bool = False,
        status_code: int | None = None,
        attempts: tuple[DeliveryAttempt, ...] = (),
    ) -> DeliveryResult:
        """Create a failed result."""
        return cls(
            success=False,
            config_id=config_id,
            error=error,
            retryable=retryable,
            status_code=status_code,
            attempts=attempts,
        )

    @classmethod
    def from_error(cls, error: IntegrationError, config_id: str = "") -> DeliveryResult:
        return cls.fail(
            str(error),
            config_id,
            retryable=error.retryable,
            status_code=error.status_code,
        )

    def for_config(self, config_id: str) -> DeliveryResult:
        """Return a copy stamped with the given config id."""
        return DeliveryResult(
            success=self.success,
            config_id=config_id,
            external_id=self.external_id,
            error=self.error,
            retryable=self.retryable,
            status_code=self.status_code,
            message=self.message,
            attempts=self.attempts,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "config_id": self.config_id,
            "success": self.success,
            "external_id": self.external_id,
            "error": self.error,
            "retryable": self.retryable,
            "status_code": self.status_code,
            "message": self.message,
            "attempts": [
                {
                    "number": a.number,
                    "outcome": a.outcome.value,
                    "status_code": a.status_code,
                    "error": a.error,
                    "timestamp": a.timestamp.isoformat(),
                }
                for a in self.attempts
            ],
        }


# =============================================================================
# Descriptors
# =============================================================================


class FieldType(str, Enum):
    """Input types understood by the configuration UI."""

    TEXT = "text"
    PASSWORD = "password"
    URL = "url"
    SELECT = "select"
    CHECKBOX = "checkbox"
    TEXTAREA = "textarea"
    NUMBER = "number"


class FieldOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: str
    label: str


class ConfigField(BaseModel):
    """One settings or credential field shown by the configuration UI."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    key: str
    label: str
    type: FieldType = FieldType.TEXT
    required: bool = False
    placeholder: str | None = None
    help_text: str | None = None
    options: tuple[FieldOption, ...] = ()
    default: Any = None
    secret: bool = Field(False, description="Stored in credentials rather than settings")


class ProviderDescriptor(BaseModel):
    """Static metadata describing a provider to the configuration UI."""

    model_config = ConfigDict(frozen=True)

    destination_type: str
    name: str
    description: str = ""
    icon: str = ""
    fields: tuple[ConfigField, ...] = ()


# =============================================================================
# Provider
# =============================================================================

S = TypeVar("S", bound=BaseModel)


class Provider(ABC, Generic[S]):
    """
    Abstract base class for destination providers.

    Subclasses declare:
    - destination_type: Registry key
    - settings_model: Pydantic model parsed from `config.settings`
    - required_credentials: Credential keys that must be present

    and implement:
    - descriptor(): Static metadata for the configuration UI
    - test(): Non-mutating connectivity check
    - send(): The actual delivery

    Providers never raise for delivery failures. Every failure comes
    back as a DeliveryResult classified as retryable or terminal.
    """

    destination_type: ClassVar[str]
    settings_model: ClassVar[type[BaseModel]]
    required_credentials: ClassVar[tuple[str, ...]] = ()

    @property
    def name(self) -> str:
        return self.destination_type

    @abstractmethod
    def descriptor(self) -> ProviderDescriptor:
        """Static metadata: name, icon and ordered settings fields."""
        ...

    def settings_for(self, config: IntegrationConfig) -> S:
        """
        Parse and return the typed settings for a config.

        Raises:
            ValidationError: If settings or required credentials are invalid
        """
        missing = [key for key in self.required_credentials if not config.secret(key)]
        if missing:
            raise ValidationError(
                f"Missing credentials: {', '.join(missing)}",
                self.destination_type,
                validation_errors=[{"loc": ("credentials", key), "msg": "required"} for key in missing],
            )
        try:
            return self.settings_model.model_validate(config.settings)
        except pydantic.ValidationError as e:
            raise ValidationError(
                f"Invalid settings: {e.error_count()} error(s)",
                self.destination_type,
                validation_errors=e.errors(include_url=False),
            ) from e

    def validate(self, config: IntegrationConfig) -> bool:
        """Local structural check. Never touches the network."""
        try:
            self.settings_for(config)
        except ValidationError as e:
            logger.debug(f"[{self.destination_type}] Config {config.id} invalid: {e}")
            return False
        return True

    @abstractmethod
    async def test(self, config: IntegrationConfig) -> DeliveryResult:
        """Active, non-mutating connectivity/credential check."""
        ...

    @abstractmethod
    async def send(self, payload: EventPayload, config: IntegrationConfig) -> DeliveryResult:
        """Deliver one event for one config."""
        ...
