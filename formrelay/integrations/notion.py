"""
Notion Integration.

Creates one page in a Notion database per form event. The database
schema is read first so each submitted field can be matched to a
property and formatted for that property's type.

Page creation is not idempotent: a retry after a lost response can
create a duplicate page.

API Reference:
    https://developers.notion.com/reference/post-page
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from formrelay.config.schemas import IntegrationConfig
from formrelay.events import EventPayload
from formrelay.integrations.base import (
    ConfigField,
    DeliveryResult,
    FieldType,
    Provider,
    ProviderDescriptor,
    ValidationError,
)
from formrelay.integrations.transport import DeliveryTransport, OutboundRequest, response_json

logger = logging.getLogger(__name__)

NOTION_API_URL = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"

TEXT_LIMIT = 2000  # Notion rich text content limit
OPTION_LIMIT = 100  # Notion select option name limit


class NotionSettings(BaseModel):
    """Settings for a Notion database destination."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    database_id: str = Field(..., min_length=1, alias="databaseId")
    field_mapping: dict[str, str] = Field(default_factory=dict, alias="fieldMapping")


def _text(value: str) -> list[dict[str, Any]]:
    return [{"text": {"content": value[:TEXT_LIMIT]}}]


def format_property_value(value: Any, prop: dict[str, Any]) -> dict[str, Any]:
    """
    Format a submitted value for a Notion property.

    Returns an empty dict when the value cannot be represented by the
    property's type; callers skip those properties.
    """
    prop_type = prop.get("type")

    if prop_type == "title":
        return {"title": _text(value) if isinstance(value, str) else []}

    if prop_type == "rich_text":
        return {"rich_text": _text(value) if isinstance(value, str) else []}

    if prop_type == "number":
        try:
            return {"number": float(value)}
        except (TypeError, ValueError):
            return {"number": None}

    if prop_type == "select":
        if not isinstance(value, str):
            return {}
        for option in prop.get("select", {}).get("options", []):
            if option.get("name", "").lower() == value.lower():
                return {"select": {"id": option["id"]}}
        return {"select": {"name": value[:OPTION_LIMIT]}}

    if prop_type == "multi_select":
        values = value if isinstance(value, (list, tuple)) else [value]
        return {"multi_select": [{"name": str(v)[:OPTION_LIMIT]} for v in values if v]}

    if prop_type == "checkbox":
        return {"checkbox": bool(value) and value not in ("false", "0")}

    if prop_type == "date":
        if isinstance(value, datetime):
            return {"date": {"start": value.isoformat()}}
        if isinstance(value, str) and value:
            try:
                return {"date": {"start": datetime.fromisoformat(value).isoformat()}}
            except ValueError:
                return {}
        return {}

    if prop_type == "email":
        if isinstance(value, str) and "@" in value:
            return {"email": value}
        return {}

    if prop_type == "phone_number":
        return {"phone_number": value} if isinstance(value, str) else {}

    if prop_type == "url":
        return {"url": value} if isinstance(value, str) else {}

    if prop_type == "files":
        if isinstance(value, dict) and value.get("url"):
            return {
                "files": [
                    {"name": value.get("name") or "File", "external": {"url": value["url"]}}
                ]
            }
        return {}

    # Unsupported property types fall back to text where possible
    if isinstance(value, str):
        return {"rich_text": _text(value)}
    return {}


def find_property(properties: dict[str, Any], label: str) -> str | None:
    """Find a database property for a field label (exact, then substring)."""
    normalized = label.lower().strip()
    for name in properties:
        if name.lower() == normalized:
            return name
    for name in properties:
        lowered = name.lower()
        if lowered in normalized or normalized in lowered:
            return name
    return None


def build_page_properties(
    payload: EventPayload,
    properties: dict[str, Any],
    field_mapping: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Map an event onto the properties of a Notion database."""
    field_mapping = field_mapping or {}
    page: dict[str, Any] = {}

    metadata_values = {
        "Form Name": payload.form_name,
        "Submission ID": payload.metadata.response_id or "",
        "Submitted At": payload.timestamp,
    }
    for name, value in metadata_values.items():
        if name in properties:
            formatted = format_property_value(value, properties[name])
            if formatted:
                page[name] = formatted

    for label, value in payload.data.items():
        name = field_mapping.get(label) or find_property(properties, label)
        if not name or name not in properties or name in page:
            continue
        formatted = format_property_value(value, properties[name])
        if formatted:
            page[name] = formatted

    return page


class NotionProvider(Provider[NotionSettings]):
    """Create Notion database pages from form events."""

    destination_type = "notion"
    settings_model = NotionSettings
    required_credentials = ("api_key",)

    def __init__(self, transport: DeliveryTransport, base_url: str = NOTION_API_URL):
        self._transport = transport
        self._base_url = base_url.rstrip("/")

    def descriptor(self) -> ProviderDescriptor:
        return ProviderDescriptor(
            destination_type=self.destination_type,
            name="Notion",
            description="Add form submissions to a Notion database",
            icon="📝",
            fields=(
                ConfigField(
                    key="api_key",
                    label="Integration Token",
                    type=FieldType.PASSWORD,
                    required=True,
                    secret=True,
                ),
                ConfigField(
                    key="database_id",
                    label="Database ID",
                    required=True,
                    help_text="Share the database with your integration first",
                ),
                ConfigField(
                    key="field_mapping",
                    label="Field Mapping",
                    type=FieldType.TEXTAREA,
                    help_text="Optional map of form field label to Notion property name",
                ),
            ),
        )

    def _headers(self, config: IntegrationConfig) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {config.secret('api_key')}",
            "Notion-Version": NOTION_VERSION,
        }

    def _database_request(self, settings: NotionSettings, config: IntegrationConfig) -> OutboundRequest:
        return OutboundRequest(
            method="GET",
            url=f"{self._base_url}/databases/{settings.database_id}",
            headers=self._headers(config),
        )

    async def test(self, config: IntegrationConfig) -> DeliveryResult:
        try:
            settings = self.settings_for(config)
        except ValidationError as e:
            return DeliveryResult.from_error(e, config.id)

        delivery = await self._transport.deliver(
            self._database_request(settings, config),
            integration=self.destination_type,
        )
        if not delivery.succeeded:
            return delivery.to_result(config.id)
        title = response_json(delivery.response).get("title")
        name = "Untitled"
        if isinstance(title, list) and title and isinstance(title[0], dict):
            name = title[0].get("plain_text") or "Untitled"
        return delivery.to_result(
            config.id,
            external_id=settings.database_id,
            message=f"Database '{name}' is accessible",
        )

    async def send(self, payload: EventPayload, config: IntegrationConfig) -> DeliveryResult:
        try:
            settings = self.settings_for(config)
        except ValidationError as e:
            return DeliveryResult.from_error(e, config.id)

        schema = await self._transport.deliver(
            self._database_request(settings, config),
            integration=self.destination_type,
        )
        if not schema.succeeded:
            return schema.to_result(config.id)

        properties = response_json(schema.response).get("properties")
        if not isinstance(properties, dict):
            properties = {}
        properties = {name: prop for name, prop in properties.items() if isinstance(prop, dict)}
        page_properties = build_page_properties(payload, properties, settings.field_mapping)
        if not page_properties:
            logger.warning(
                f"[{self.destination_type}] No fields of form {payload.form_id} match "
                f"properties of database {settings.database_id}"
            )

        delivery = await self._transport.deliver(
            OutboundRequest.json(
                "POST",
                f"{self._base_url}/pages",
                {
                    "parent": {"type": "database_id", "database_id": settings.database_id},
                    "properties": page_properties,
                },
                headers=self._headers(config),
            ),
            integration=self.destination_type,
        )
        if not delivery.succeeded:
            return delivery.to_result(config.id)

        page = response_json(delivery.response)
        return delivery.to_result(
            config.id,
            external_id=page.get("id"),
            message=f"Created Notion page {page.get('url', '')}".strip(),
        )
