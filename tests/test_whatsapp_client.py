"""Tests for the Graph API client (httpx.MockTransport, no network)."""
import hashlib
import hmac
import json

import httpx
import pytest

from channels.base import ConfigurationError, InvalidRequest, RemoteAPIError
from channels.whatsapp_client import resolve_media_kind
from models.schemas import MediaKind


def ok_send(request):
    return httpx.Response(200, json={
        "messaging_product": "whatsapp",
        "contacts": [{"input": "+911234567890", "wa_id": "911234567890"}],
        "messages": [{"id": "wamid.ABC"}],
    })


PAYLOAD = {"messaging_product": "whatsapp", "to": "+911234567890", "type": "text", "text": {"body": "hi"}}


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_success(self, graph_client_factory):
        seen = []

        def handler(request):
            seen.append(request)
            return ok_send(request)

        client = graph_client_factory(handler)
        result = await client.send_message(PAYLOAD, idempotency_key="msg-1")
        await client.close()

        assert result["message_id"] == "wamid.ABC"
        assert result["contact_id"] == "911234567890"
        request = seen[0]
        assert request.url == "https://graph.facebook.com/v22.0/1001/messages"
        assert request.headers["Authorization"] == "Bearer test-token"
        assert request.headers["Idempotency-Key"] == "msg-1"
        assert json.loads(request.content) == PAYLOAD

    @pytest.mark.asyncio
    async def test_retries_server_errors_with_same_key(self, graph_client_factory):
        keys = []

        def handler(request):
            keys.append(request.headers.get("Idempotency-Key"))
            if len(keys) < 3:
                return httpx.Response(503, json={"error": {"message": "Service unavailable"}})
            return ok_send(request)

        client = graph_client_factory(handler, retry_attempts=3)
        result = await client.send_message(PAYLOAD, idempotency_key="msg-7")

        assert result["message_id"] == "wamid.ABC"
        assert keys == ["msg-7", "msg-7", "msg-7"]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, graph_client_factory):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, json={})

        client = graph_client_factory(handler, retry_attempts=2)
        with pytest.raises(RemoteAPIError) as exc_info:
            await client.send_message(PAYLOAD, idempotency_key="k")

        assert len(calls) == 2
        assert exc_info.value.status_code == 500
        assert str(exc_info.value) == "Meta API request failed (500)"

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self, graph_client_factory):
        statuses = iter([429, 200])

        def handler(request):
            status = next(statuses)
            return ok_send(request) if status == 200 else httpx.Response(429, json={})

        client = graph_client_factory(handler)
        assert (await client.send_message(PAYLOAD))["message_id"] == "wamid.ABC"

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, graph_client_factory):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"error": {
                "message": "(#131030) Recipient phone number not in allowed list",
                "code": 131030,
            }})

        client = graph_client_factory(handler)
        with pytest.raises(RemoteAPIError) as exc_info:
            await client.send_message(PAYLOAD)

        assert len(calls) == 1
        assert exc_info.value.status_code == 400
        assert not exc_info.value.retryable
        assert "allowed list" in str(exc_info.value)
        assert exc_info.value.response["error"]["code"] == 131030

    @pytest.mark.asyncio
    async def test_error_details_fallback(self, graph_client_factory):
        client = graph_client_factory(lambda r: httpx.Response(
            400, json={"error": {"error_data": {"details": "Parameter value is not valid"}}},
        ))
        with pytest.raises(RemoteAPIError, match="Parameter value is not valid"):
            await client.send_message(PAYLOAD)

    @pytest.mark.asyncio
    async def test_missing_message_id(self, graph_client_factory):
        client = graph_client_factory(lambda r: httpx.Response(200, json={"messages": []}))
        with pytest.raises(RemoteAPIError) as exc_info:
            await client.send_message(PAYLOAD)
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_top_level_id_fallback(self, graph_client_factory):
        client = graph_client_factory(lambda r: httpx.Response(200, json={"id": "wamid.TOP"}))
        result = await client.send_message(PAYLOAD)
        assert result["message_id"] == "wamid.TOP"
        assert result["contact_id"] is None

    @pytest.mark.asyncio
    async def test_network_error_is_remote_error(self, graph_client_factory):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = graph_client_factory(handler, retry_attempts=1)
        with pytest.raises(RemoteAPIError) as exc_info:
            await client.send_message(PAYLOAD)
        assert exc_info.value.status_code is None
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_missing_credentials_before_network(self, graph_client_factory):
        calls = []
        client = graph_client_factory(lambda r: calls.append(r), access_token="")
        with pytest.raises(ConfigurationError, match="META_WHATSAPP_ACCESS_TOKEN"):
            await client.send_message(PAYLOAD)
        assert calls == []


class TestMediaUpload:
    @pytest.mark.asyncio
    async def test_multipart_upload(self, graph_client_factory):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"id": "media-42"})

        client = graph_client_factory(handler)
        upload = await client.upload_media(b"%PDF-1.4 itinerary", filename="itinerary.pdf",
                                           mime_type="application/pdf")

        assert upload.media_id == "media-42"
        assert upload.kind == MediaKind.DOCUMENT
        assert upload.size == len(b"%PDF-1.4 itinerary")
        request = seen[0]
        assert request.url == "https://graph.facebook.com/v22.0/1001/media"
        assert request.headers["Authorization"] == "Bearer test-token"
        assert request.headers["Content-Type"].startswith("multipart/form-data")
        body = request.content
        assert b'name="messaging_product"' in body
        assert b'name="filename"' in body
        assert b'filename="itinerary.pdf"' in body
        assert b"%PDF-1.4 itinerary" in body

    @pytest.mark.asyncio
    async def test_image_has_no_filename_field(self, graph_client_factory):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"id": "media-1"})

        upload = await graph_client_factory(handler).upload_media(b"\x89PNG", "", "image/png")

        assert upload.kind == MediaKind.IMAGE
        assert upload.filename.startswith("attachment-")
        assert b'name="filename"' not in seen[0].content

    @pytest.mark.parametrize("mime,override,expected", [
        ("image/jpeg", None, MediaKind.IMAGE),
        ("video/mp4", None, MediaKind.VIDEO),
        ("audio/ogg", None, MediaKind.AUDIO),
        ("application/zip", None, MediaKind.DOCUMENT),
        ("image/webp", "STICKER", MediaKind.STICKER),
    ])
    def test_resolve_kind(self, mime, override, expected):
        assert resolve_media_kind(mime, override) == expected

    def test_unknown_override_rejected(self):
        with pytest.raises(InvalidRequest):
            resolve_media_kind("image/png", "gif")

    @pytest.mark.asyncio
    async def test_size_limit_checked_before_network(self, graph_client_factory):
        calls = []
        client = graph_client_factory(lambda r: calls.append(r))
        with pytest.raises(InvalidRequest, match="limited to"):
            await client.upload_media(b"x" * (500 * 1024 + 1), mime_type="image/webp", kind="sticker")
        assert calls == []

    @pytest.mark.asyncio
    async def test_provider_error(self, graph_client_factory):
        client = graph_client_factory(lambda r: httpx.Response(
            400, json={"error": {"message": "Param file must be a file with one of the following types"}},
        ))
        with pytest.raises(RemoteAPIError, match="Param file") as exc_info:
            await client.upload_media(b"data", mime_type="text/plain")
        assert exc_info.value.status_code == 400


class TestBusinessAccount:
    @pytest.mark.asyncio
    async def test_derived_once(self, graph_client_factory):
        lookups = []

        def handler(request):
            if request.url.path.endswith("/1001"):
                lookups.append(request)
                return httpx.Response(200, json={"whatsapp_business_account": {"id": "WABA-9"}})
            return httpx.Response(200, json={"data": []})

        client = graph_client_factory(handler)
        first = await client.resolve_business_account_id()
        second = await client.resolve_business_account_id()

        assert first == second == "WABA-9"
        assert len(lookups) == 1
        assert lookups[0].url.params["fields"] == "whatsapp_business_account"
        assert client.config_status()["has_business_account_id"]

    @pytest.mark.asyncio
    async def test_configured_id_skips_lookup(self, graph_client_factory):
        calls = []
        client = graph_client_factory(lambda r: calls.append(r), business_account_id="WABA-1")
        assert await client.resolve_business_account_id() == "WABA-1"
        assert calls == []

    @pytest.mark.asyncio
    async def test_lookup_without_account(self, graph_client_factory):
        client = graph_client_factory(lambda r: httpx.Response(200, json={"id": "1001"}))
        with pytest.raises(ConfigurationError):
            await client.resolve_business_account_id()


class TestTemplates:
    @pytest.mark.asyncio
    async def test_pagination(self, graph_client_factory):
        pages = {
            None: {"data": [{"name": "a"}, {"name": "b"}],
                   "paging": {"cursors": {"after": "CUR1"}, "next": "https://graph/next"}},
            "CUR1": {"data": [{"name": "c"}], "paging": {"cursors": {"after": "CUR2"}}},
        }
        seen_after = []

        def handler(request):
            after = request.url.params.get("after")
            seen_after.append(after)
            assert request.url.path.endswith("/WABA-1/message_templates")
            return httpx.Response(200, json=pages[after])

        client = graph_client_factory(handler, business_account_id="WABA-1")
        templates = await client.list_templates(page_size=2)

        assert [t["name"] for t in templates] == ["a", "b", "c"]
        assert seen_after == [None, "CUR1"]


class TestTokenExchange:
    @pytest.mark.asyncio
    async def test_exchange(self, graph_client_factory):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"access_token": "long", "token_type": "bearer", "expires_in": 5184000})

        client = graph_client_factory(handler, app_id="app", app_secret="secret")
        result = await client.exchange_token_for_long_lived("short")

        assert result == {"access_token": "long", "token_type": "bearer", "expires_in": 5184000}
        params = seen[0].url.params
        assert params["grant_type"] == "fb_exchange_token"
        assert params["fb_exchange_token"] == "short"
        assert "Authorization" not in seen[0].headers

    @pytest.mark.asyncio
    async def test_requires_app_credentials(self, graph_client_factory):
        with pytest.raises(ConfigurationError):
            await graph_client_factory().exchange_token_for_long_lived("short")


class TestWebhookVerification:
    def test_challenge(self, graph_client_factory):
        client = graph_client_factory()
        params = {"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "1158201444"}
        assert client.verify_webhook(params) == "1158201444"

    @pytest.mark.parametrize("params", [
        {"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "x"},
        {"hub.mode": "unsubscribe", "hub.verify_token": "verify-me", "hub.challenge": "x"},
    ])
    def test_rejected(self, graph_client_factory, params):
        assert graph_client_factory().verify_webhook(params) is None

    def test_unconfigured_token_rejects_everything(self, graph_client_factory):
        client = graph_client_factory(webhook_verify_token="")
        assert client.verify_webhook({"hub.mode": "subscribe", "hub.verify_token": "", "hub.challenge": "x"}) is None

    def test_signature(self, graph_client_factory):
        client = graph_client_factory(app_secret="s3cret")
        body = b'{"entry": []}'
        good = "sha256=" + hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
        assert client.verify_webhook_signature(body, good)
        assert not client.verify_webhook_signature(body, "sha256=deadbeef")
        assert not client.verify_webhook_signature(body, "")

    def test_signature_skipped_without_secret(self, graph_client_factory):
        assert graph_client_factory().verify_webhook_signature(b"{}", "")


class TestParseWebhook:
    def test_statuses_and_messages(self, graph_client_factory):
        payload = {"entry": [{"changes": [{"value": {
            "statuses": [{"id": "wamid.1", "status": "read", "timestamp": "1760000000", "recipient_id": "91"}],
            "contacts": [{"wa_id": "91", "profile": {"name": "Asha"}}],
            "messages": [
                {"from": "91", "id": "wamid.2", "type": "interactive",
                 "interactive": {"type": "list_reply", "list_reply": {"id": "bali", "title": "Bali"}}},
                {"from": "91", "id": "wamid.3", "type": "image",
                 "image": {"id": "media-1", "mime_type": "image/jpeg", "caption": "Passport"}},
                {"from": "91", "id": "wamid.4", "type": "location",
                 "location": {"latitude": 8.65, "longitude": 115.2}},
            ],
        }}]}]}

        parsed = graph_client_factory().parse_webhook(payload)

        assert parsed.statuses[0].status == "read"
        assert parsed.statuses[0].timestamp.year == 2025
        reply, image, location = parsed.messages
        assert reply.text == "Bali"
        assert reply.metadata["list_item_id"] == "bali"
        assert reply.contact_name == "Asha"
        assert image.text == "Passport"
        assert image.metadata["media_id"] == "media-1"
        assert location.text == "Location: 8.65, 115.2"

    def test_flow_reply_token(self, graph_client_factory):
        payload = {"entry": [{"changes": [{"value": {"messages": [{
            "from": "91", "id": "wamid.5", "type": "interactive",
            "interactive": {"type": "nfm_reply", "nfm_reply": {
                "response_json": '{"flow_token": "auto_flow_token_1_ab", "tour": "bali"}',
            }},
        }]}}]}]}

        message = graph_client_factory().parse_webhook(payload).messages[0]

        assert message.flow_token == "auto_flow_token_1_ab"
        assert message.flow_response["tour"] == "bali"
        assert message.text == "[Flow response]"

    def test_empty_payload(self, graph_client_factory):
        parsed = graph_client_factory().parse_webhook({})
        assert parsed.statuses == [] and parsed.messages == []
