"""
WhatsApp Graph API client — the production MessagingTransport.

Provides:
- Authenticated Graph API requests over a lazily created httpx.AsyncClient
- send_message with bounded retry (tenacity, exponential backoff) and one
  idempotency key reused on every attempt
- Business account id derivation, memoized on the WhatsAppConfig
- Template listing (cursor pagination)
- Media upload (multipart) returning the provider media id
- Long-lived token exchange
- Webhook verification (hub.verify_token challenge) and payload parsing
  (status receipts, inbound text / interactive / media / flow replies)
"""
from __future__ import annotations

import hashlib
import hmac
import json
import structlog
import time
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential,
)

from channels.base import InvalidRequest, MessagingTransport, RemoteAPIError
from config.settings import ConfigurationError, WhatsAppConfig, get_settings
from models.schemas import (
    InboundMessage, MediaKind, MediaUpload, ParsedWebhook, WebhookStatus,
)

logger = structlog.get_logger()


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, RemoteAPIError) and exc.retryable


def _error_message(data: Any, status_code: int) -> str:
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        details = (error.get("error_data") or {}).get("details")
        message = error.get("message") or details
        if message:
            return message
    return f"Meta API request failed ({status_code})"


_DOCUMENT_MIMES = {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "text/plain",
}

MAX_MEDIA_BYTES = {
    MediaKind.IMAGE: 16 * 1024 * 1024,
    MediaKind.VIDEO: 16 * 1024 * 1024,
    MediaKind.AUDIO: 16 * 1024 * 1024,
    MediaKind.DOCUMENT: 25 * 1024 * 1024,
    MediaKind.STICKER: 500 * 1024,
}


def resolve_media_kind(mime_type: str, override: Optional[str] = None) -> MediaKind:
    """Explicit kind wins; otherwise image/video/audio by MIME prefix, anything else is a document."""
    if override:
        try:
            return MediaKind(override.lower())
        except ValueError:
            raise InvalidRequest(f"Unsupported media type: {override}")
    for prefix in ("image", "video", "audio"):
        if mime_type.startswith(prefix + "/"):
            return MediaKind(prefix)
    if mime_type not in _DOCUMENT_MIMES:
        logger.info("media_mime_treated_as_document", mime_type=mime_type)
    return MediaKind.DOCUMENT


def _timestamp(value: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError):
        return None


class GraphAPIClient(MessagingTransport):
    """
    WhatsApp Business Cloud API client.

    Credentials come from WhatsAppConfig; missing ones raise
    ConfigurationError before any network call.
    """

    def __init__(
        self,
        config: Optional[WhatsAppConfig] = None,
        retry_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.config = config or settings.whatsapp
        dispatch = settings.dispatch
        self.retry_attempts = retry_attempts if retry_attempts is not None else dispatch.retry_attempts
        self.backoff_base = backoff_base if backoff_base is not None else dispatch.retry_backoff_base
        self.backoff_max = backoff_max if backoff_max is not None else dispatch.retry_backoff_max
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.api_base,
                timeout=httpx.Timeout(float(self.config.timeout_seconds), connect=10.0),
                transport=self._transport,
            )
        return self._client

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(max(1, int(self.retry_attempts))),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )

    # ── Raw requests ──────────────────────────────────────────

    async def graph_request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        json_body: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
        authenticated: bool = True,
        form: Optional[dict[str, Any]] = None,
        files: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """One Graph API call. Errors become RemoteAPIError; no retry here."""
        request_headers = dict(headers or {})
        if files is None:
            request_headers.setdefault("Content-Type", "application/json")
        if authenticated:
            if not self.config.access_token:
                raise ConfigurationError("Missing WhatsApp credentials: META_WHATSAPP_ACCESS_TOKEN")
            request_headers["Authorization"] = f"Bearer {self.config.access_token}"

        client = await self._get_client()
        try:
            response = await client.request(
                method, path.lstrip("/"), params=params, json=json_body,
                data=form, files=files, headers=request_headers,
            )
        except httpx.HTTPError as e:
            raise RemoteAPIError(f"Meta API request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.is_error:
            message = _error_message(data, response.status_code)
            logger.warning("graph_api_error",
                           path=path, status_code=response.status_code, error=message)
            raise RemoteAPIError(message, status_code=response.status_code, response=data)
        return data

    # ── Send ──────────────────────────────────────────────────

    async def send_message(
        self, payload: dict[str, Any], idempotency_key: str = "",
    ) -> dict[str, Any]:
        self.config.validate()
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        path = f"{self.config.phone_number_id}/messages"

        async for attempt in self._retrying():
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info("whatsapp_send_retry",
                                attempt=attempt.retry_state.attempt_number,
                                idempotency_key=idempotency_key)
                data = await self.graph_request("POST", path, json_body=payload, headers=headers)

        messages = data.get("messages") or []
        message_id = (messages[0].get("id") if messages else None) or data.get("id")
        if not message_id:
            raise RemoteAPIError(
                "Meta API response did not include a message id",
                status_code=200, response=data, retryable=False,
            )
        contacts = data.get("contacts") or []
        contact_id = contacts[0].get("wa_id") if contacts else None

        logger.info("whatsapp_message_sent",
                    to=payload.get("to"), type=payload.get("type"), message_id=message_id)
        return {"message_id": message_id, "contact_id": contact_id, "raw": data}

    # ── Media ─────────────────────────────────────────────────

    async def upload_media(
        self,
        content: bytes,
        filename: str = "",
        mime_type: str = "",
        kind: Optional[str] = None,
    ) -> MediaUpload:
        """
        Store a file with the provider (multipart POST to /{phone_number_id}/media).
        The returned media id goes into `MediaContent.id`. Not retried.
        """
        self.config.validate()
        mime_type = mime_type or "application/octet-stream"
        media_kind = resolve_media_kind(mime_type, kind)
        if not content:
            raise InvalidRequest("Upload requires a non-empty file")
        limit = MAX_MEDIA_BYTES[media_kind]
        if len(content) > limit:
            raise InvalidRequest(f"{media_kind.value} uploads are limited to {limit} bytes")

        filename = filename.strip() or f"attachment-{int(time.time() * 1000)}"
        form = {"messaging_product": "whatsapp", "type": mime_type}
        if media_kind == MediaKind.DOCUMENT:
            form["filename"] = filename

        data = await self.graph_request(
            "POST", f"{self.config.phone_number_id}/media",
            form=form, files={"file": (filename, content, mime_type)},
        )
        media_id = data.get("id")
        if not media_id:
            raise RemoteAPIError(
                "Meta API response did not include a media id",
                status_code=200, response=data, retryable=False,
            )
        logger.info("whatsapp_media_uploaded",
                    media_id=media_id, kind=media_kind.value, size=len(content))
        return MediaUpload(
            media_id=media_id, kind=media_kind, mime_type=mime_type,
            filename=filename, size=len(content),
        )

    # ── Business account ──────────────────────────────────────

    async def _lookup_business_account_id(self) -> str:
        self.config.validate()
        data = await self.graph_request(
            "GET", self.config.phone_number_id,
            params={"fields": "whatsapp_business_account"},
        )
        account = data.get("whatsapp_business_account") or {}
        business_id = account.get("id", "")
        logger.info("business_account_resolved", business_account_id=business_id)
        return business_id

    async def resolve_business_account_id(self) -> str:
        return await self.config.resolve_business_account_id(self._lookup_business_account_id)

    # ── Templates ─────────────────────────────────────────────

    async def list_templates(self, page_size: int = 100) -> list[dict[str, Any]]:
        """All message templates of the business account, following cursors."""
        business_id = await self.resolve_business_account_id()
        templates: list[dict[str, Any]] = []
        after: Optional[str] = None
        while True:
            params: dict[str, Any] = {"limit": page_size}
            if after:
                params["after"] = after
            data = await self.graph_request("GET", f"{business_id}/message_templates", params=params)
            templates.extend(data.get("data") or [])
            paging = data.get("paging") or {}
            after = (paging.get("cursors") or {}).get("after")
            if not after or not paging.get("next"):
                break
        return templates

    # ── Tokens ────────────────────────────────────────────────

    async def exchange_token_for_long_lived(self, short_lived_token: str) -> dict[str, Any]:
        if not self.config.app_id or not self.config.app_secret:
            raise ConfigurationError(
                "META_APP_ID and META_APP_SECRET are required for token exchange"
            )
        data = await self.graph_request(
            "GET", "oauth/access_token",
            params={
                "grant_type": "fb_exchange_token",
                "client_id": self.config.app_id,
                "client_secret": self.config.app_secret,
                "fb_exchange_token": short_lived_token,
            },
            authenticated=False,
        )
        return {
            "access_token": data.get("access_token", ""),
            "token_type": data.get("token_type", "bearer"),
            "expires_in": data.get("expires_in"),
        }

    def config_status(self) -> dict[str, Any]:
        return self.config.status()

    # ── Webhooks ──────────────────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """
        Verify the webhook subscription.
        Returns the challenge string on success, None on failure.
        """
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        challenge = params.get("hub.challenge", "")

        if mode == "subscribe" and self.config.webhook_verify_token and token == self.config.webhook_verify_token:
            return challenge
        return None

    def verify_webhook_signature(self, body: bytes, signature: str) -> bool:
        """
        Check X-Hub-Signature-256 against the app secret.
        Without an app secret configured every payload is accepted.
        """
        if not self.config.app_secret:
            return True
        if not signature or not signature.startswith("sha256="):
            return False
        expected = hmac.new(self.config.app_secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.split("=", 1)[1])

    def parse_webhook(self, payload: dict[str, Any]) -> ParsedWebhook:
        parsed = ParsedWebhook()
        for entry in payload.get("entry") or []:
            for change in entry.get("changes") or []:
                value = change.get("value") or {}
                for status in value.get("statuses") or []:
                    parsed.statuses.append(self._parse_status(status))
                names = {
                    c.get("wa_id"): (c.get("profile") or {}).get("name", "")
                    for c in value.get("contacts") or []
                }
                for msg in value.get("messages") or []:
                    parsed.messages.append(self._parse_message(msg, names))
        return parsed

    @staticmethod
    def _parse_status(status: dict[str, Any]) -> WebhookStatus:
        error = None
        errors = status.get("errors") or []
        if errors:
            first = errors[0]
            error = first.get("message") or first.get("title") or str(first.get("code", ""))
        return WebhookStatus(
            provider_message_id=status.get("id", ""),
            status=status.get("status", ""),
            recipient_id=status.get("recipient_id"),
            timestamp=_timestamp(status.get("timestamp")),
            error=error,
        )

    @staticmethod
    def _parse_message(msg: dict[str, Any], names: dict[str, str]) -> InboundMessage:
        sender = msg.get("from", "")
        msg_type = msg.get("type", "text")
        text = ""
        flow_token = None
        flow_response: dict[str, Any] = {}
        metadata: dict[str, Any] = {"message_type": msg_type}

        if msg_type == "text":
            text = (msg.get("text") or {}).get("body", "")

        elif msg_type == "interactive":
            interactive = msg.get("interactive") or {}
            itype = interactive.get("type", "")
            metadata["message_type"] = itype or msg_type

            if itype == "button_reply":
                reply = interactive.get("button_reply") or {}
                text = reply.get("title", "")
                metadata["button_id"] = reply.get("id", "")

            elif itype == "list_reply":
                reply = interactive.get("list_reply") or {}
                text = reply.get("title", "")
                metadata["list_item_id"] = reply.get("id", "")

            elif itype == "nfm_reply":
                reply = interactive.get("nfm_reply") or {}
                raw = reply.get("response_json") or "{}"
                try:
                    flow_response = json.loads(raw) if isinstance(raw, str) else dict(raw)
                except ValueError:
                    logger.warning("flow_response_unparseable", message_id=msg.get("id"))
                    flow_response = {}
                flow_token = flow_response.get("flow_token")
                text = reply.get("body", "") or "[Flow response]"

        elif msg_type == "button":
            button = msg.get("button") or {}
            text = button.get("text", "")
            metadata["button_payload"] = button.get("payload", "")

        elif msg_type in ("image", "video", "document", "audio", "sticker"):
            media = msg.get(msg_type) or {}
            text = media.get("caption") or media.get("filename") or f"[{msg_type}]"
            metadata["media_id"] = media.get("id", "")
            metadata["mime_type"] = media.get("mime_type", "")

        elif msg_type == "location":
            loc = msg.get("location") or {}
            text = f"Location: {loc.get('latitude', 0)}, {loc.get('longitude', 0)}"
            metadata["latitude"] = loc.get("latitude")
            metadata["longitude"] = loc.get("longitude")

        else:
            text = f"[{msg_type}]"

        return InboundMessage(
            provider_message_id=msg.get("id", ""),
            from_number=sender,
            contact_name=names.get(sender, ""),
            type=msg_type,
            text=text,
            flow_token=flow_token,
            flow_response=flow_response,
            metadata=metadata,
            timestamp=_timestamp(msg.get("timestamp")),
        )

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
