"""
Email Integration.

Sends a notification email per form event through the Resend HTTP API.
Each send carries an Idempotency-Key so a retried request does not
produce a second email.

API Reference:
    https://resend.com/docs/api-reference/emails/send-email
"""

from __future__ import annotations

import html
import json
import re
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

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
from formrelay.integrations.transport import DeliveryTransport, OutboundRequest

RESEND_API_URL = "https://api.resend.com"

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
DEFAULT_SUBJECT = "New Form Submission: {{formName}}"


def split_comma_list(value: str | list[str]) -> list[str]:
    if isinstance(value, str):
        value = value.split(",")
    return [email.strip() for email in value if email and email.strip()]


class EmailSettings(BaseModel):
    """Settings for an email notification destination."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    recipients: list[str] = Field(..., min_length=1)
    from_email: str = Field(..., alias="fromEmail")
    subject: str = DEFAULT_SUBJECT
    reply_to: str | None = Field(None, alias="replyTo")
    include_all_fields: bool = Field(True, alias="includeAllFields")
    # Field keys listed when include_all_fields is off, in this order
    selected_fields: list[str] = Field(default_factory=list, alias="selectedFields")

    @field_validator("recipients", mode="before")
    @classmethod
    def _split_recipients(cls, value: Any) -> Any:
        if isinstance(value, (str, list)):
            return split_comma_list(value)
        return value

    @field_validator("selected_fields", mode="before")
    @classmethod
    def _split_selected_fields(cls, value: Any) -> Any:
        if isinstance(value, (str, list)):
            return split_comma_list(value)
        return value

    @field_validator("recipients")
    @classmethod
    def _check_recipients(cls, value: list[str]) -> list[str]:
        invalid = [email for email in value if not EMAIL_PATTERN.match(email)]
        if invalid:
            raise ValueError(f"Invalid email addresses: {', '.join(invalid)}")
        return value

    @field_validator("from_email")
    @classmethod
    def _check_sender(cls, value: str) -> str:
        # Allow "Name <address>" as well as a bare address
        match = re.search(r"<([^>]+)>", value)
        if not EMAIL_PATTERN.match(match.group(1) if match else value.strip()):
            raise ValueError("Invalid sender address")
        return value.strip()


def format_field_label(key: str) -> str:
    """Humanise a field key: "firstName" -> "First Name", "first_name" -> "First name"."""
    label = re.sub(r"([A-Z])", r" \1", key)
    label = re.sub(r"[_-]", " ", label).strip()
    label = re.sub(r"\s+", " ", label)
    return label[:1].upper() + label[1:]


def format_field_value(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, indent=2, ensure_ascii=False)
    return str(value)


def render_template(template: str, payload: EventPayload) -> str:
    """Substitute {{formName}}, {{responseId}} and {{email}} placeholders."""
    replacements = {
        "formName": payload.form_name,
        "responseId": payload.metadata.response_id or "",
        "email": str(payload.data.get("email") or ""),
    }
    return re.sub(
        r"\{\{\s*(\w+)\s*\}\}",
        lambda m: replacements.get(m.group(1), m.group(0)),
        template,
    )


def _visible_fields(settings: EmailSettings, payload: EventPayload) -> list[tuple[str, Any]]:
    if settings.include_all_fields:
        return list(payload.data.items())
    return [(key, payload.data[key]) for key in settings.selected_fields if key in payload.data]


def generate_email_text(settings: EmailSettings, payload: EventPayload) -> str:
    lines = [f"New Form Submission: {payload.form_name}", "=" * 50, ""]
    for key, value in _visible_fields(settings, payload):
        lines.append(f"{format_field_label(key)}: {format_field_value(value)}")
    lines.extend(["", "-" * 50, f"Submitted: {payload.timestamp.isoformat()}"])
    if payload.metadata.completion_time:
        lines.append(f"Completion time: {payload.metadata.completion_time:g}s")
    return "\n".join(lines)


def generate_email_html(settings: EmailSettings, payload: EventPayload) -> str:
    rows = "\n".join(
        "<tr>"
        f'<td style="padding: 12px 15px; border-bottom: 1px solid #eee; color: #666;">'
        f"{html.escape(format_field_label(key))}</td>"
        f'<td style="padding: 12px 15px; border-bottom: 1px solid #eee; color: #333;">'
        f"{html.escape(format_field_value(value))}</td>"
        "</tr>"
        for key, value in _visible_fields(settings, payload)
    )
    completion = ""
    if payload.metadata.completion_time:
        completion = f"<p>Completion time: {payload.metadata.completion_time:g}s</p>"
    return (
        "<!DOCTYPE html>\n"
        '<html><head><meta charset="utf-8"><title>New Form Submission</title></head>\n'
        '<body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">\n'
        f"<h1>New Form Submission</h1>\n<p>{html.escape(payload.form_name)}</p>\n"
        f'<table style="width: 100%; border-collapse: collapse;">\n{rows}\n</table>\n'
        f'<div style="color: #888; font-size: 12px;">'
        f"<p>Submitted: {payload.timestamp.isoformat()}</p>{completion}</div>\n"
        "</body></html>\n"
    )


class EmailProvider(Provider[EmailSettings]):
    """Email a notification for each form event."""

    destination_type = "email"
    settings_model = EmailSettings
    required_credentials = ("api_key",)

    def __init__(self, transport: DeliveryTransport, base_url: str = RESEND_API_URL):
        self._transport = transport
        self._base_url = base_url.rstrip("/")

    def descriptor(self) -> ProviderDescriptor:
        return ProviderDescriptor(
            destination_type=self.destination_type,
            name="Email Notifications",
            description="Receive email notifications when forms are submitted",
            icon="📧",
            fields=(
                ConfigField(
                    key="recipients",
                    label="Recipient Emails",
                    required=True,
                    placeholder="email@example.com, another@example.com",
                    help_text="Comma-separated list of email addresses",
                ),
                ConfigField(
                    key="from_email",
                    label="From",
                    required=True,
                    placeholder="Forms <forms@yourdomain.com>",
                ),
                ConfigField(
                    key="subject",
                    label="Email Subject",
                    default=DEFAULT_SUBJECT,
                    help_text="Use {{formName}} and {{responseId}} as placeholders",
                ),
                ConfigField(
                    key="include_all_fields",
                    label="Include all form fields in email",
                    type=FieldType.CHECKBOX,
                    default=True,
                ),
                ConfigField(
                    key="selected_fields",
                    label="Fields to include",
                    placeholder="name, email",
                    help_text="Comma-separated field keys, used when not including all fields",
                ),
                ConfigField(
                    key="reply_to",
                    label="Reply-To Email",
                    placeholder="Use {{email}} to use submitter's email",
                ),
                ConfigField(
                    key="api_key",
                    label="Resend API Key",
                    type=FieldType.PASSWORD,
                    required=True,
                    secret=True,
                ),
            ),
        )

    def _headers(self, config: IntegrationConfig) -> dict[str, str]:
        return {"Authorization": f"Bearer {config.secret('api_key')}"}

    def build_message(self, settings: EmailSettings, payload: EventPayload) -> dict[str, Any]:
        message: dict[str, Any] = {
            "from": settings.from_email,
            "to": settings.recipients,
            "subject": render_template(settings.subject, payload),
            "html": generate_email_html(settings, payload),
            "text": generate_email_text(settings, payload),
        }
        if settings.reply_to:
            reply_to = render_template(settings.reply_to, payload).strip()
            if EMAIL_PATTERN.match(reply_to):
                message["reply_to"] = reply_to
        return message

    async def test(self, config: IntegrationConfig) -> DeliveryResult:
        try:
            self.settings_for(config)
        except ValidationError as e:
            return DeliveryResult.from_error(e, config.id)

        delivery = await self._transport.deliver(
            OutboundRequest(method="GET", url=f"{self._base_url}/domains", headers=self._headers(config)),
            integration=self.destination_type,
        )
        return delivery.to_result(config.id, message="Email API key accepted")

    async def send(self, payload: EventPayload, config: IntegrationConfig) -> DeliveryResult:
        try:
            settings = self.settings_for(config)
        except ValidationError as e:
            return DeliveryResult.from_error(e, config.id)

        delivery_id = uuid4().hex
        delivery = await self._transport.deliver(
            OutboundRequest.json(
                "POST",
                f"{self._base_url}/emails",
                self.build_message(settings, payload),
                headers={**self._headers(config), "Idempotency-Key": delivery_id},
            ),
            integration=self.destination_type,
            delivery_id=delivery_id,
        )
        return delivery.to_result(
            config.id,
            message=f"Email sent to {len(settings.recipients)} recipient(s)",
        )
