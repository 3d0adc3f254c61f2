"""
Tests for the built-in destination providers.

Each provider is driven through a DeliveryTransport over
httpx.MockTransport, so request construction is checked end to end.
"""
import json

import httpx
import pytest

from formrelay.config.schemas import IntegrationConfig
from formrelay.events import EventPayload
from formrelay.integrations.base import ValidationError
from formrelay.integrations.email import (
    EmailProvider,
    EmailSettings,
    format_field_label,
    format_field_value,
    generate_email_html,
    generate_email_text,
    render_template,
)
from formrelay.integrations.notion import (
    NotionProvider,
    build_page_properties,
    find_property,
    format_property_value,
)
from formrelay.integrations.sheets import (
    GoogleSheetsProvider,
    SheetsSettings,
    build_header_row,
    build_sheet_row,
    format_cell_value,
)
from formrelay.integrations.webhook import WebhookProvider

SPREADSHEET_ID = "1BxiMVs0XRA5nFMdKvBdBZjgmUUqptlbs74OgvE2upms"


def _recorder(responder):
    """Wrap a responder so every request is kept for inspection."""
    calls = []

    def handler(request):
        calls.append(request)
        return responder(request)

    return handler, calls


# =============================================================================
# Webhook
# =============================================================================


class TestWebhookProvider:
    """Tests for WebhookProvider."""

    @pytest.mark.asyncio
    async def test_send_signed(self, make_transport, submission, webhook_config):
        handler, calls = _recorder(lambda r: httpx.Response(200, json={"id": "evt_9"}))
        provider = WebhookProvider(make_transport(handler))

        result = await provider.send(submission, webhook_config)

        assert result.success
        assert result.config_id == "cfg_webhook"
        assert result.external_id == "evt_9"
        assert len(calls) == 1
        assert calls[0].headers["X-Signature"].startswith("sha256=")
        assert str(calls[0].url) == "https://example.com/hook"

    @pytest.mark.asyncio
    async def test_custom_headers_from_json_string(self, make_transport, submission):
        handler, calls = _recorder(lambda r: httpx.Response(200))
        provider = WebhookProvider(make_transport(handler))
        config = IntegrationConfig(
            destination_type="webhook",
            form_id="f1",
            settings={
                "url": "https://example.com/hook",
                "method": "put",
                "headers": '{"Authorization": "Bearer abc", "X-Signature": "forged"}',
            },
            subscribed_events=["submission"],
        )

        result = await provider.send(submission, config)

        assert result.success
        assert calls[0].method == "PUT"
        assert calls[0].headers["Authorization"] == "Bearer abc"
        assert "X-Signature" not in calls[0].headers

    @pytest.mark.asyncio
    async def test_invalid_url_makes_no_attempt(self, make_transport, submission):
        handler, calls = _recorder(lambda r: httpx.Response(200))
        provider = WebhookProvider(make_transport(handler))
        config = IntegrationConfig(
            destination_type="webhook",
            form_id="f1",
            settings={"url": "not a url"},
            subscribed_events=["submission"],
        )

        result = await provider.send(submission, config)

        assert not result.success
        assert not result.retryable
        assert result.attempts == ()
        assert calls == []

    @pytest.mark.asyncio
    async def test_retry_disabled(self, make_transport, submission, webhook_config):
        handler, calls = _recorder(lambda r: httpx.Response(500))
        provider = WebhookProvider(make_transport(handler))
        config = webhook_config.model_copy(
            update={"settings": {"url": "https://example.com/hook", "retryOnFail": False}}
        )

        result = await provider.send(submission, config)

        assert not result.success
        assert result.retryable
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_max_attempts_setting(self, make_transport, submission, webhook_config):
        handler, calls = _recorder(lambda r: httpx.Response(502))
        provider = WebhookProvider(make_transport(handler))
        config = webhook_config.model_copy(
            update={"settings": {"url": "https://example.com/hook", "maxAttempts": 5}}
        )

        result = await provider.send(submission, config)

        assert len(calls) == 5
        assert len(result.attempts) == 5

    @pytest.mark.asyncio
    async def test_connectivity_accepts_method_not_allowed(self, make_transport, webhook_config):
        handler, calls = _recorder(lambda r: httpx.Response(405))
        provider = WebhookProvider(make_transport(handler))

        result = await provider.test(webhook_config)

        assert result.success
        assert result.status_code == 405
        assert calls[0].method == "HEAD"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_connectivity_failure(self, make_transport, webhook_config):
        handler, _ = _recorder(lambda r: httpx.Response(404))
        provider = WebhookProvider(make_transport(handler))

        result = await provider.test(webhook_config)

        assert not result.success
        assert result.status_code == 404

    def test_validate(self, webhook_config):
        provider = WebhookProvider(None)
        assert provider.validate(webhook_config)
        bad = webhook_config.model_copy(update={"settings": {"url": "ftp://example.com"}})
        assert not provider.validate(bad)

    def test_settings_for_reports_errors(self, webhook_config):
        provider = WebhookProvider(None)
        bad = webhook_config.model_copy(update={"settings": {"url": "https://x.test", "headers": "[1]"}})
        with pytest.raises(ValidationError) as exc_info:
            provider.settings_for(bad)
        assert exc_info.value.validation_errors
        assert exc_info.value.validation_errors[0]["loc"] == ("headers",)


# =============================================================================
# Google Sheets
# =============================================================================


def _sheets_config(**settings):
    return IntegrationConfig(
        id="cfg_sheets",
        destination_type="google_sheets",
        form_id="f1",
        settings={"spreadsheetId": SPREADSHEET_ID, **settings},
        credentials={"access_token": "ya29.token"},
        subscribed_events=["submission"],
    )


class TestSheetsFormatting:
    """Tests for row building."""

    def test_format_cell_value(self):
        assert format_cell_value(None) == ""
        assert format_cell_value(["a", "b"]) == "a, b"
        assert format_cell_value({"k": 1}) == '{"k": 1}'
        assert format_cell_value(3) == "3"

    def test_row_and_header_line_up(self, submission):
        settings = SheetsSettings(spreadsheet_id=SPREADSHEET_ID, include_metadata=True)
        order = ["name", "email", "phone"]

        row = build_sheet_row(settings, submission, order)
        header = build_header_row(settings, order)

        assert header == ["Timestamp", "name", "email", "phone", "User Agent", "Referrer"]
        assert row == [submission.timestamp.isoformat(), "Ann", "a@b.com", "", "Mozilla/5.0", ""]

    def test_row_without_timestamp(self, submission):
        settings = SheetsSettings(spreadsheet_id=SPREADSHEET_ID, include_timestamp=False)
        assert build_sheet_row(settings, submission, ["email"]) == ["a@b.com"]

    def test_short_spreadsheet_id_rejected(self):
        provider = GoogleSheetsProvider(None)
        config = _sheets_config(spreadsheetId="short")
        assert not provider.validate(config)


class TestGoogleSheetsProvider:
    """Tests for GoogleSheetsProvider."""

    @pytest.mark.asyncio
    async def test_appends_header_and_row_to_empty_sheet(self, make_transport, submission):
        def responder(request):
            if request.method == "GET":
                return httpx.Response(200, json={"range": "Sheet1!1:1"})
            return httpx.Response(200, json={"updates": {"updatedRange": "Sheet1!A1:C2"}})

        handler, calls = _recorder(responder)
        provider = GoogleSheetsProvider(make_transport(handler))

        result = await provider.send(submission, _sheets_config())

        assert result.success
        assert result.external_id == "Sheet1!A1:C2"
        append = calls[-1]
        assert append.method == "POST"
        assert append.url.path.endswith(":append")
        assert append.url.params["valueInputOption"] == "USER_ENTERED"
        assert append.headers["Authorization"] == "Bearer ya29.token"
        values = json.loads(append.content)["values"]
        assert values[0] == ["Timestamp", "name", "email"]
        assert values[1][1:] == ["Ann", "a@b.com"]

    @pytest.mark.asyncio
    async def test_no_header_when_sheet_has_one(self, make_transport, submission):
        def responder(request):
            if request.method == "GET":
                return httpx.Response(200, json={"values": [["Timestamp", "name", "email"]]})
            return httpx.Response(200, json={"updates": {"updatedRange": "Sheet1!A2:C2"}})

        handler, calls = _recorder(responder)
        provider = GoogleSheetsProvider(make_transport(handler))

        await provider.send(submission, _sheets_config())

        assert len(json.loads(calls[-1].content)["values"]) == 1

    @pytest.mark.asyncio
    async def test_field_order_setting(self, make_transport, submission):
        handler, calls = _recorder(lambda r: httpx.Response(200, json={}))
        provider = GoogleSheetsProvider(make_transport(handler))
        config = _sheets_config(headerRow=False, includeTimestamp=False, fieldOrder=["email", "name"])

        await provider.send(submission, config)

        assert len(calls) == 1
        assert json.loads(calls[0].content)["values"] == [["a@b.com", "Ann"]]

    @pytest.mark.asyncio
    async def test_missing_token_fails_without_request(self, make_transport, submission):
        handler, calls = _recorder(lambda r: httpx.Response(200))
        provider = GoogleSheetsProvider(make_transport(handler))
        config = _sheets_config().model_copy(update={"credentials": {}})

        result = await provider.send(submission, config)

        assert not result.success
        assert "access_token" in result.error
        assert calls == []

    @pytest.mark.asyncio
    async def test_forbidden_is_terminal(self, make_transport, submission):
        handler, calls = _recorder(lambda r: httpx.Response(403, json={"error": "denied"}))
        provider = GoogleSheetsProvider(make_transport(handler))

        result = await provider.send(submission, _sheets_config(headerRow=False))

        assert not result.success
        assert not result.retryable
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_plain_text_replies_still_append(self, make_transport, submission):
        handler, calls = _recorder(lambda r: httpx.Response(200, text="OK"))
        provider = GoogleSheetsProvider(make_transport(handler))

        result = await provider.send(submission, _sheets_config())

        assert result.success
        assert result.external_id is None
        assert [c.method for c in calls] == ["GET", "POST"]
        # An unreadable header row counts as empty
        assert json.loads(calls[-1].content)["values"][0] == ["Timestamp", "name", "email"]

    @pytest.mark.asyncio
    async def test_connectivity_with_plain_text_reply(self, make_transport):
        handler, _ = _recorder(lambda r: httpx.Response(200, text="OK"))
        provider = GoogleSheetsProvider(make_transport(handler))

        result = await provider.test(_sheets_config())

        assert result.success
        assert result.external_id == SPREADSHEET_ID


# =============================================================================
# Notion
# =============================================================================

DATABASE = {
    "title": [{"plain_text": "Leads"}],
    "properties": {
        "Name": {"type": "title"},
        "Email": {"type": "email"},
        "Form Name": {"type": "rich_text"},
        "Submitted At": {"type": "date"},
        "Plan": {"type": "select", "select": {"options": [{"id": "opt-pro", "name": "Pro"}]}},
    },
}


def _notion_config():
    return IntegrationConfig(
        id="cfg_notion",
        destination_type="notion",
        form_id="f1",
        settings={"databaseId": "db-1"},
        credentials={"api_key": "secret_abc"},
        subscribed_events=["submission"],
    )


class TestNotionFormatting:
    """Tests for Notion property formatting."""

    def test_number(self):
        assert format_property_value("42", {"type": "number"}) == {"number": 42.0}
        assert format_property_value("n/a", {"type": "number"}) == {"number": None}

    def test_select_matches_existing_option(self):
        prop = DATABASE["properties"]["Plan"]
        assert format_property_value("pro", prop) == {"select": {"id": "opt-pro"}}
        assert format_property_value("Team", prop) == {"select": {"name": "Team"}}

    def test_checkbox(self):
        assert format_property_value(True, {"type": "checkbox"}) == {"checkbox": True}
        assert format_property_value("false", {"type": "checkbox"}) == {"checkbox": False}

    def test_text_is_truncated(self):
        value = format_property_value("x" * 3000, {"type": "rich_text"})
        assert len(value["rich_text"][0]["text"]["content"]) == 2000

    def test_email_requires_at_sign(self):
        assert format_property_value("nope", {"type": "email"}) == {}

    def test_find_property(self):
        props = DATABASE["properties"]
        assert find_property(props, "email") == "Email"
        assert find_property(props, "Your Email Address") == "Email"
        assert find_property(props, "unrelated") is None

    def test_build_page_properties(self, submission):
        page = build_page_properties(submission, DATABASE["properties"])
        assert page["Name"] == {"title": [{"text": {"content": "Ann"}}]}
        assert page["Email"] == {"email": "a@b.com"}
        assert page["Form Name"] == {"rich_text": [{"text": {"content": "Contact"}}]}
        assert page["Submitted At"]["date"]["start"] == submission.timestamp.isoformat()

    def test_field_mapping_wins(self):
        payload = EventPayload(event="submission", form_id="f1", data={"Tier": "Pro"})
        page = build_page_properties(payload, DATABASE["properties"], {"Tier": "Plan"})
        assert page["Plan"] == {"select": {"id": "opt-pro"}}


class TestNotionProvider:
    """Tests for NotionProvider."""

    @pytest.mark.asyncio
    async def test_creates_page(self, make_transport, submission):
        def responder(request):
            if request.method == "GET":
                return httpx.Response(200, json=DATABASE)
            return httpx.Response(200, json={"id": "page-1", "url": "https://notion.so/page-1"})

        handler, calls = _recorder(responder)
        provider = NotionProvider(make_transport(handler))

        result = await provider.send(submission, _notion_config())

        assert result.success
        assert result.external_id == "page-1"
        create = calls[-1]
        assert create.url.path == "/v1/pages"
        assert create.headers["Notion-Version"] == "2022-06-28"
        assert create.headers["Authorization"] == "Bearer secret_abc"
        body = json.loads(create.content)
        assert body["parent"] == {"type": "database_id", "database_id": "db-1"}
        assert body["properties"]["Email"] == {"email": "a@b.com"}

    @pytest.mark.asyncio
    async def test_schema_failure_skips_create(self, make_transport, submission):
        handler, calls = _recorder(lambda r: httpx.Response(404, json={"code": "object_not_found"}))
        provider = NotionProvider(make_transport(handler))

        result = await provider.send(submission, _notion_config())

        assert not result.success
        assert [c.method for c in calls] == ["GET"]

    @pytest.mark.asyncio
    async def test_connectivity_names_database(self, make_transport):
        handler, _ = _recorder(lambda r: httpx.Response(200, json=DATABASE))
        provider = NotionProvider(make_transport(handler))

        result = await provider.test(_notion_config())

        assert result.success
        assert "Leads" in result.message

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"text": "OK"},
            {"json": ["not", "an", "object"]},
            {"json": {"properties": {"Email": "oops"}, "title": "Leads"}},
        ],
    )
    async def test_unexpected_reply_bodies(self, make_transport, submission, body):
        handler, calls = _recorder(lambda r: httpx.Response(200, **body))
        provider = NotionProvider(make_transport(handler))

        sent = await provider.send(submission, _notion_config())
        tested = await provider.test(_notion_config())

        assert sent.success
        assert sent.external_id is None
        assert json.loads(calls[1].content)["properties"] == {}
        assert tested.success
        assert "Untitled" in tested.message


# =============================================================================
# Email
# =============================================================================


def _email_config(**settings):
    return IntegrationConfig(
        id="cfg_email",
        destination_type="email",
        form_id="f1",
        settings={
            "recipients": "owner@example.com, team@example.com",
            "fromEmail": "Forms <forms@example.com>",
            **settings,
        },
        credentials={"api_key": "re_123"},
        subscribed_events=["submission"],
    )


class TestEmailFormatting:
    """Tests for email rendering helpers."""

    def test_recipients_split(self):
        settings = EmailSettings(recipients="a@x.com, b@y.org ,", from_email="f@x.com")
        assert settings.recipients == ["a@x.com", "b@y.org"]

    def test_invalid_recipient_rejected(self):
        provider = EmailProvider(None)
        assert not provider.validate(_email_config(recipients="a@x.com, nope"))

    def test_field_label(self):
        assert format_field_label("firstName") == "First Name"
        assert format_field_label("first_name") == "First name"

    def test_field_value(self):
        assert format_field_value(True) == "Yes"
        assert format_field_value(None) == "-"
        assert format_field_value(["a", "b"]) == "a, b"

    def test_render_template(self, submission):
        assert render_template("New: {{formName}} ({{ responseId }})", submission) == "New: Contact (resp_1)"
        assert render_template("{{unknown}}", submission) == "{{unknown}}"

    def test_html_escapes_values(self):
        payload = EventPayload(event="submission", form_id="f1", form_name="<Form>", data={"name": "<b>Ann</b>"})
        settings = EmailSettings(recipients=["a@x.com"], from_email="f@x.com")
        body = generate_email_html(settings, payload)
        assert "&lt;b&gt;Ann&lt;/b&gt;" in body
        assert "<b>Ann</b>" not in body

    def test_selected_fields_only_when_not_including_all(self, submission):
        settings = EmailSettings(
            recipients=["a@x.com"],
            from_email="f@x.com",
            include_all_fields=False,
            selected_fields="email, missing",
        )
        assert settings.selected_fields == ["email", "missing"]

        text = generate_email_text(settings, submission)

        assert "Email: a@b.com" in text
        assert "Ann" not in text

    def test_selected_fields_ignored_when_including_all(self, submission):
        settings = EmailSettings(recipients=["a@x.com"], from_email="f@x.com", selectedFields=["email"])
        assert "Name: Ann" in generate_email_text(settings, submission)


class TestEmailProvider:
    """Tests for EmailProvider."""

    @pytest.mark.asyncio
    async def test_sends_with_idempotency_key(self, make_transport, submission):
        handler, calls = _recorder(lambda r: httpx.Response(200, json={"id": "email_1"}))
        provider = EmailProvider(make_transport(handler))

        result = await provider.send(submission, _email_config(replyTo="{{email}}"))

        assert result.success
        assert result.external_id == "email_1"
        request = calls[0]
        assert request.url.path == "/emails"
        assert request.headers["Authorization"] == "Bearer re_123"
        assert request.headers["Idempotency-Key"]
        message = json.loads(request.content)
        assert message["to"] == ["owner@example.com", "team@example.com"]
        assert message["subject"] == "New Form Submission: Contact"
        assert message["reply_to"] == "a@b.com"
        assert "Ann" in message["text"]

    @pytest.mark.asyncio
    async def test_idempotency_key_stable_across_retries(self, make_transport, submission):
        responses = iter([httpx.Response(503), httpx.Response(200, json={"id": "email_1"})])
        handler, calls = _recorder(lambda r: next(responses))
        provider = EmailProvider(make_transport(handler))

        result = await provider.send(submission, _email_config())

        assert result.success
        assert calls[0].headers["Idempotency-Key"] == calls[1].headers["Idempotency-Key"]

    @pytest.mark.asyncio
    async def test_invalid_reply_to_is_dropped(self, make_transport):
        handler, calls = _recorder(lambda r: httpx.Response(200, json={"id": "email_1"}))
        provider = EmailProvider(make_transport(handler))
        payload = EventPayload(event="submission", form_id="f1", data={"email": "not-an-email"})

        await provider.send(payload, _email_config(replyTo="{{email}}"))

        assert "reply_to" not in json.loads(calls[0].content)
