"""
Google Sheets Integration.

Appends one row per form event to a Google Spreadsheet through the
Sheets API v4. Authentication uses an OAuth access token supplied in the
config's credentials.

Appending is not idempotent: if a response is lost after the row was
written, the retry appends the row a second time.

API Reference:
    https://developers.google.com/sheets/api/reference/rest/v4/spreadsheets.values/append
"""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import quote

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

SHEETS_API_URL = "https://sheets.googleapis.com/v4/spreadsheets"


class SheetsSettings(BaseModel):
    """Settings for a Google Sheets destination."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    spreadsheet_id: str = Field(..., min_length=11, alias="spreadsheetId")
    sheet_name: str = Field("Sheet1", min_length=1, alias="sheetName")
    include_timestamp: bool = Field(True, alias="includeTimestamp")
    include_metadata: bool = Field(False, alias="includeMetadata")
    header_row: bool = Field(True, alias="headerRow")
    field_order: list[str] | None = Field(None, alias="fieldOrder")


def format_cell_value(value: Any) -> str:
    """Format a submitted value for a spreadsheet cell."""
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def build_sheet_row(
    settings: SheetsSettings,
    payload: EventPayload,
    field_order: list[str],
) -> list[str]:
    """Build the data row for one event."""
    row: list[str] = []
    if settings.include_timestamp:
        row.append(payload.timestamp.isoformat())
    for key in field_order:
        row.append(format_cell_value(payload.data.get(key)))
    if settings.include_metadata:
        row.append(payload.metadata.user_agent or "")
        row.append(payload.metadata.referrer or "")
    return row


def build_header_row(settings: SheetsSettings, field_labels: list[str]) -> list[str]:
    """Build the header row matching build_sheet_row's columns."""
    headers: list[str] = []
    if settings.include_timestamp:
        headers.append("Timestamp")
    headers.extend(field_labels)
    if settings.include_metadata:
        headers.extend(["User Agent", "Referrer"])
    return headers


def _a1_range(sheet_name: str, cells: str | None = None) -> str:
    quoted = "'" + sheet_name.replace("'", "''") + "'"
    return f"{quoted}!{cells}" if cells else quoted


class GoogleSheetsProvider(Provider[SheetsSettings]):
    """Append form events as rows of a Google Spreadsheet."""

    destination_type = "google_sheets"
    settings_model = SheetsSettings
    required_credentials = ("access_token",)

    def __init__(self, transport: DeliveryTransport, base_url: str = SHEETS_API_URL):
        self._transport = transport
        self._base_url = base_url.rstrip("/")

    def descriptor(self) -> ProviderDescriptor:
        return ProviderDescriptor(
            destination_type=self.destination_type,
            name="Google Sheets",
            description="Automatically save form responses to a Google Spreadsheet",
            icon="📊",
            fields=(
                ConfigField(
                    key="spreadsheet_id",
                    label="Spreadsheet ID",
                    required=True,
                    placeholder="1BxiMVs0XRA5nFMdKvBdBZjgmUUqptlbs74OgvE2upms",
                    help_text="The ID from your Google Sheets URL (between /d/ and /edit)",
                ),
                ConfigField(
                    key="sheet_name",
                    label="Sheet Name",
                    placeholder="Form Responses",
                    default="Sheet1",
                    help_text="The name of the sheet tab to write to",
                ),
                ConfigField(
                    key="include_timestamp",
                    label="Include timestamp column",
                    type=FieldType.CHECKBOX,
                    default=True,
                ),
                ConfigField(
                    key="include_metadata",
                    label="Include metadata (browser, referrer)",
                    type=FieldType.CHECKBOX,
                    default=False,
                ),
                ConfigField(
                    key="header_row",
                    label="Auto-create header row",
                    type=FieldType.CHECKBOX,
                    default=True,
                ),
                ConfigField(
                    key="access_token",
                    label="Google OAuth Access Token",
                    type=FieldType.PASSWORD,
                    required=True,
                    secret=True,
                ),
            ),
        )

    def _auth_headers(self, config: IntegrationConfig) -> dict[str, str]:
        return {"Authorization": f"Bearer {config.secret('access_token')}"}

    def _values_url(self, settings: SheetsSettings, a1_range: str, suffix: str = "") -> str:
        return (
            f"{self._base_url}/{quote(settings.spreadsheet_id, safe='')}"
            f"/values/{quote(a1_range, safe='')}{suffix}"
        )

    async def test(self, config: IntegrationConfig) -> DeliveryResult:
        try:
            settings = self.settings_for(config)
        except ValidationError as e:
            return DeliveryResult.from_error(e, config.id)

        delivery = await self._transport.deliver(
            OutboundRequest(
                method="GET",
                url=f"{self._base_url}/{quote(settings.spreadsheet_id, safe='')}",
                headers=self._auth_headers(config),
                params={"fields": "spreadsheetId,properties.title"},
            ),
            integration=self.destination_type,
        )
        if not delivery.succeeded:
            return delivery.to_result(config.id)
        properties = response_json(delivery.response).get("properties")
        title = properties.get("title", "") if isinstance(properties, dict) else ""
        return delivery.to_result(
            config.id,
            external_id=settings.spreadsheet_id,
            message=f"Spreadsheet '{title}' is accessible",
        )

    async def _needs_header(self, settings: SheetsSettings, config: IntegrationConfig) -> bool:
        """Return True when row 1 of the sheet is empty."""
        delivery = await self._transport.deliver(
            OutboundRequest(
                method="GET",
                url=self._values_url(settings, _a1_range(settings.sheet_name, "1:1")),
                headers=self._auth_headers(config),
            ),
            integration=self.destination_type,
        )
        if not delivery.succeeded:
            logger.warning(
                f"[{self.destination_type}] Could not read header row for config {config.id}: "
                f"{delivery.last_error}"
            )
            return False
        return not response_json(delivery.response).get("values")

    async def send(self, payload: EventPayload, config: IntegrationConfig) -> DeliveryResult:
        try:
            settings = self.settings_for(config)
        except ValidationError as e:
            return DeliveryResult.from_error(e, config.id)

        field_order = settings.field_order or list(payload.data.keys())
        values = [build_sheet_row(settings, payload, field_order)]
        if settings.header_row and await self._needs_header(settings, config):
            values.insert(0, build_header_row(settings, field_order))

        delivery = await self._transport.deliver(
            OutboundRequest.json(
                "POST",
                self._values_url(settings, _a1_range(settings.sheet_name), ":append"),
                {"values": values},
                headers=self._auth_headers(config),
                params={"valueInputOption": "USER_ENTERED", "insertDataOption": "INSERT_ROWS"},
            ),
            integration=self.destination_type,
        )
        if not delivery.succeeded:
            return delivery.to_result(config.id)

        updates = response_json(delivery.response).get("updates")
        updated_range = updates.get("updatedRange") if isinstance(updates, dict) else None
        return delivery.to_result(
            config.id,
            external_id=updated_range,
            message=f"Appended {len(values)} row(s) to {settings.sheet_name}",
        )
