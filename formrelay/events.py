"""
Form lifecycle events for FormRelay.

An EventPayload is built by the form runtime for every lifecycle event
(submission, partial save, abandonment, ...) and handed to the
IntegrationManager. It is never persisted by this package.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _utc_now() -> datetime:
    """Get current UTC time with timezone awareness."""
    return datetime.now(UTC)


class EventKind(str, Enum):
    """Form lifecycle event kinds (wire values)."""

    SUBMISSION = "form.submission"
    PARTIAL_SAVE = "form.partial"
    ABANDONED = "form.abandoned"
    VIEWED = "form.viewed"
    STARTED = "form.started"
    RESPONSE_UPDATED = "response.updated"
    RESPONSE_DELETED = "response.deleted"

    @classmethod
    def parse(cls, value: EventKind | str) -> EventKind:
        """
        Parse an event kind from its wire value or short name.

        Accepts "form.submission" as well as "submission", "partial-save",
        "response_updated" and so on.

        Raises:
            ValueError: If the value names no known event kind
        """
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower().replace("_", "-")
        try:
            return cls(key)
        except ValueError:
            pass
        if key in _ALIASES:
            return _ALIASES[key]
        raise ValueError(f"Unknown event kind: {value!r}")


_ALIASES: dict[str, EventKind] = {
    "submission": EventKind.SUBMISSION,
    "partial": EventKind.PARTIAL_SAVE,
    "partial-save": EventKind.PARTIAL_SAVE,
    "abandoned": EventKind.ABANDONED,
    "viewed": EventKind.VIEWED,
    "started": EventKind.STARTED,
    "response-updated": EventKind.RESPONSE_UPDATED,
    "response-deleted": EventKind.RESPONSE_DELETED,
}


class EventMetadata(BaseModel):
    """
    Optional context captured alongside a form event.

    Serialised with camelCase keys (responseId, completionTime, ...).
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    response_id: str | None = None
    user_agent: str | None = None
    referrer: str | None = None
    ip: str | None = None
    completion_time: float | None = Field(None, ge=0, description="Seconds to complete")


class EventPayload(BaseModel):
    """
    A single form lifecycle event.

    `data` maps field labels to submitted values and keeps the order in
    which the form runtime supplied them.
    """

    model_config = ConfigDict(frozen=True)

    event: EventKind
    form_id: str = Field(..., min_length=1)
    form_name: str = ""
    timestamp: datetime = Field(default_factory=_utc_now)
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: EventMetadata = Field(default_factory=EventMetadata)

    @field_validator("event", mode="before")
    @classmethod
    def _parse_event(cls, value: Any) -> EventKind:
        return EventKind.parse(value)

    @field_validator("timestamp")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value
