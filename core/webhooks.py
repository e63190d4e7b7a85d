"""
Webhook Processor — applies provider webhooks to stored state.

- Status receipts → Dispatcher.update_status (forward-only)
- Inbound messages → inbound Message record, Session touched (flow replies
  carry their flow token back, which finds the session that issued it),
  then `message.received` analytics and automations

Provider webhooks are retried on timeouts, so an inbound message whose
provider id is already stored is ignored.
"""
from __future__ import annotations

import structlog
from typing import Any

from channels.whatsapp_client import GraphAPIClient
from context.sessions import SessionHints, SessionManager
from core.dispatcher import Dispatcher
from database.store_base import BaseMessagingStore
from models.schemas import (
    EventType, InboundMessage, Message, MessageDirection, MessageStatus,
)
from utils.phone import normalize_e164
from utils.side_effects import non_fatal

logger = structlog.get_logger()


class WebhookProcessor:
    def __init__(
        self,
        client: GraphAPIClient,
        dispatcher: Dispatcher,
        sessions: SessionManager,
        store: BaseMessagingStore,
    ):
        self.client = client
        self.dispatcher = dispatcher
        self.sessions = sessions
        self.store = store

    async def handle(self, payload: dict[str, Any]) -> dict[str, int]:
        parsed = self.client.parse_webhook(payload)
        counts = {"statuses": 0, "messages": 0}

        for status in parsed.statuses:
            async with non_fatal("webhook_status", provider_message_id=status.provider_message_id):
                updated = await self.dispatcher.update_status(
                    status.provider_message_id, status.status,
                    error=status.error, timestamp=status.timestamp,
                )
                if updated is not None:
                    counts["statuses"] += 1

        for inbound in parsed.messages:
            async with non_fatal("webhook_message", provider_message_id=inbound.provider_message_id):
                if await self.record_inbound(inbound) is not None:
                    counts["messages"] += 1

        logger.info("webhook_processed", **counts)
        return counts

    async def record_inbound(self, inbound: InboundMessage) -> Message | None:
        if inbound.provider_message_id:
            existing = await self.store.get_message_by_provider_id(inbound.provider_message_id)
            if existing is not None:
                logger.info("inbound_duplicate_ignored",
                            provider_message_id=inbound.provider_message_id)
                return None

        phone = normalize_e164(inbound.from_number)
        message = Message(
            to=self.client.config.phone_number_id,
            from_address=phone,
            preview=inbound.text,
            status=MessageStatus.DELIVERED,
            direction=MessageDirection.INBOUND,
            provider_message_id=inbound.provider_message_id or None,
            metadata={
                **inbound.metadata,
                "contact_name": inbound.contact_name,
                "flow_response": inbound.flow_response,
            },
            payload=inbound.model_dump(mode="json"),
            delivered_at=inbound.timestamp,
        )

        context: dict[str, Any] = {}
        if inbound.contact_name:
            context["contact_name"] = inbound.contact_name
        session = await self.sessions.ensure_session(SessionHints(
            phone_number=phone,
            contact_id=inbound.from_number or None,
            flow_token=inbound.flow_token,
            context=context,
            last_action=inbound.metadata.get("message_type"),
            last_screen=inbound.flow_response.get("screen"),
            last_message_id=message.id,
        ))
        if session is not None:
            message.session_id = session.id

        record = await self.store.create_message(message)
        logger.info("inbound_message_recorded",
                    message_id=record.id, from_address=phone, type=inbound.type)

        await self.dispatcher.emit_event(
            EventType.MESSAGE_RECEIVED,
            session_id=record.session_id,
            message_id=record.id,
            payload={
                "type": inbound.type,
                "text": inbound.text,
                "flow_token": inbound.flow_token,
                "flow_response": inbound.flow_response,
            },
        )
        return record
