"""
Dispatcher — the single entry point for outbound sends.

Per send, strictly in order:
  normalize destination → build payload (template FLOW buttons completed
  first) → ensure session → schedule, or call the transport → persist the
  Message → record analytics → run automations.

`send` returns a SendResult for every transport, persistence or automation
problem; only malformed requests (InvalidRequest) and missing credentials
(ConfigurationError) raise.

Also handles the two other ways a Message changes state:
  deliver_stored  replay of a stored payload (scheduled messages)
  update_status   delivery receipts (delivered / read / failed)
"""
from __future__ import annotations

import re
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from channels.base import ConfigurationError, InvalidRequest, MessagingTransport, RemoteAPIError
from channels.flow_tokens import FlowPreparation, FlowTokenManager
from channels.payloads import build_payload, render_preview
from context.sessions import SessionHints, SessionManager
from core.analytics import AnalyticsRecorder
from database.store_base import BaseMessagingStore
from models.schemas import (
    EventType, Message, MessageStatus, SendRequest, SendResult, Session,
    can_transition, utcnow,
)
from rules.engine import AutomationContext, AutomationEngine, AutomationOutcome
from utils.phone import digits_only, normalize_e164
from utils.side_effects import non_fatal

logger = structlog.get_logger()

_STATUS_EVENTS = {
    MessageStatus.DELIVERED: EventType.MESSAGE_DELIVERED,
    MessageStatus.READ: EventType.MESSAGE_READ,
    MessageStatus.FAILED: EventType.MESSAGE_FAILED,
}


def _provider_error_code(exc: Exception) -> Optional[str]:
    """Graph error code from the response body, else a "(#131050)" marker in the text."""
    if isinstance(exc, RemoteAPIError) and isinstance(exc.response, dict):
        code = (exc.response.get("error") or {}).get("code")
        if code is not None:
            return str(code)
    match = re.search(r"\(#(\d+)\)", str(exc))
    return match.group(1) if match else None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Dispatcher:
    def __init__(
        self,
        store: BaseMessagingStore,
        transport: MessagingTransport,
        sessions: SessionManager,
        analytics: AnalyticsRecorder,
        flow_tokens: FlowTokenManager,
        automations: Optional[AutomationEngine] = None,
        schedule_threshold_seconds: float = 1.0,
    ):
        self.store = store
        self.transport = transport
        self.sessions = sessions
        self.analytics = analytics
        self.flow_tokens = flow_tokens
        self.automations = automations
        self.schedule_threshold_seconds = schedule_threshold_seconds

    # ══════════════════════════════════════════════════════════
    #  SEND
    # ══════════════════════════════════════════════════════════

    async def send(self, request: SendRequest) -> SendResult:
        to = normalize_e164(request.to or "")
        if not digits_only(to):
            raise InvalidRequest("Destination number is required")

        # validates the request before any I/O
        payload = build_payload(request, to=to)

        prep: Optional[FlowPreparation] = None
        if request.template is not None:
            prep = await self.flow_tokens.prepare(request.template, flow_token=request.flow_token)
            payload = build_payload(request, to=to, button_params=prep.button_params)

        session: Optional[Session] = None
        async with non_fatal("ensure_session", to=to):
            session = await self.sessions.ensure_session(SessionHints(
                phone_number=to,
                contact_id=request.contact_id,
                flow_token=request.flow_token,
                flow_tokens=prep.token_values if prep else [],
                context=request.context,
            ))

        metadata: dict[str, Any] = dict(request.metadata)
        if prep and prep.tokens:
            metadata["flow_tokens"] = [t.model_dump(mode="json") for t in prep.tokens]
        if request.causation:
            metadata["causation"] = list(request.causation)

        message = Message(
            to=to,
            preview=render_preview(request),
            metadata=metadata,
            payload=payload,
            session_id=session.id if session else None,
            automation_id=request.automation_id,
        )

        schedule_for = _as_utc(request.schedule_for) if request.schedule_for else None
        if (
            schedule_for is not None
            and request.save_to_db
            and (schedule_for - utcnow()).total_seconds() > self.schedule_threshold_seconds
        ):
            return await self._schedule(message, schedule_for, session)

        return await self._transmit(
            message, session, persist=request.save_to_db, stored=False,
            causation=list(request.causation),
        )

    async def _schedule(
        self, message: Message, schedule_for: datetime, session: Optional[Session],
    ) -> SendResult:
        message.status = MessageStatus.SCHEDULED
        message.scheduled_at = schedule_for
        try:
            record = await self.store.create_message(message)
        except Exception as e:
            logger.error("message_schedule_failed", to=message.to, error=str(e))
            return SendResult(success=False, error=f"Failed to schedule message: {e}")

        await self.analytics.record(
            EventType.MESSAGE_SCHEDULED,
            session_id=record.session_id, message_id=record.id,
            automation_id=record.automation_id,
            payload={"to": record.to, "scheduled_at": schedule_for.isoformat()},
        )
        logger.info("message_scheduled",
                    message_id=record.id, to=record.to, scheduled_at=schedule_for.isoformat())
        return SendResult(success=True, db_record=record, scheduled=True)

    # ══════════════════════════════════════════════════════════
    #  STORED DELIVERY
    # ══════════════════════════════════════════════════════════

    async def deliver_stored(self, message: Message) -> SendResult:
        """Send a previously persisted Message's payload and record the outcome."""
        session = await self._load_session(message.session_id)
        causation = list(message.metadata.get("causation") or [])
        if not message.payload:
            return await self._record_failure(
                message, session, "Stored message has no payload",
                persist=True, stored=True, causation=causation,
            )
        return await self._transmit(message, session, persist=True, stored=True, causation=causation)

    # ══════════════════════════════════════════════════════════
    #  TRANSPORT + BOOKKEEPING
    # ══════════════════════════════════════════════════════════

    async def _transmit(
        self,
        message: Message,
        session: Optional[Session],
        persist: bool,
        stored: bool,
        causation: list[str],
    ) -> SendResult:
        try:
            # message id doubles as the idempotency key for every retry
            response = await self.transport.send_message(message.payload, idempotency_key=message.id)
        except ConfigurationError:
            raise
        except Exception as e:
            status_code = e.status_code if isinstance(e, RemoteAPIError) else None
            return await self._record_failure(
                message, session, str(e), persist=persist, stored=stored,
                causation=causation, status_code=status_code,
                error_code=_provider_error_code(e),
            )

        provider_id = response.get("message_id")
        metadata = dict(message.metadata)
        if response.get("contact_id"):
            metadata["provider_contact_id"] = response["contact_id"]

        sent = message.model_copy(update={
            "status": MessageStatus.SENT,
            "provider_message_id": provider_id,
            "sent_at": utcnow(),
            "error": None,
            "metadata": metadata,
        })
        record: Optional[Message] = None
        if stored:
            async with non_fatal("persist_sent_message", message_id=message.id):
                record = await self.store.update_message(
                    message.id,
                    status=MessageStatus.SENT,
                    provider_message_id=provider_id,
                    sent_at=sent.sent_at,
                    error=None,
                    metadata=metadata,
                )
        elif persist:
            async with non_fatal("persist_sent_message", to=message.to):
                record = await self.store.create_message(sent)

        logger.info("message_sent",
                    message_id=sent.id, to=sent.to, provider_message_id=provider_id)

        await self.analytics.record(
            EventType.MESSAGE_SENT,
            session_id=sent.session_id, message_id=sent.id,
            automation_id=sent.automation_id,
            payload={
                "to": sent.to,
                "type": sent.payload.get("type"),
                "provider_message_id": provider_id,
            },
        )
        await self._run_automations(
            EventType.MESSAGE_SENT, session, record or sent, causation,
            payload={"provider_message_id": provider_id},
        )
        return SendResult(success=True, message_id=provider_id, db_record=record)

    async def _record_failure(
        self,
        message: Message,
        session: Optional[Session],
        error: str,
        persist: bool,
        stored: bool,
        causation: list[str],
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ) -> SendResult:
        logger.warning("message_send_failed",
                       message_id=message.id, to=message.to, error=error, status_code=status_code)

        failed = message.model_copy(update={"status": MessageStatus.FAILED, "error": error})
        record: Optional[Message] = None
        if stored:
            async with non_fatal("persist_failed_message", message_id=message.id):
                record = await self.store.update_message(
                    message.id, status=MessageStatus.FAILED, error=error,
                )
        elif persist:
            async with non_fatal("persist_failed_message", to=message.to):
                record = await self.store.create_message(failed)

        await self.analytics.record(
            EventType.MESSAGE_FAILED,
            session_id=failed.session_id, message_id=failed.id,
            automation_id=failed.automation_id,
            payload={"to": failed.to, "error": error, "status_code": status_code,
                     "error_code": error_code},
        )
        await self._run_automations(
            EventType.MESSAGE_FAILED, session, record or failed, causation,
            payload={"error": error, "status_code": status_code, "error_code": error_code},
        )
        return SendResult(success=False, error=error, error_code=error_code, db_record=record)

    # ══════════════════════════════════════════════════════════
    #  STATUS UPDATES
    # ══════════════════════════════════════════════════════════

    async def update_status(
        self,
        provider_message_id: str,
        status: str,
        error: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> Optional[Message]:
        """Apply a delivery receipt. Backward moves are ignored."""
        try:
            new_status = MessageStatus(str(status).lower())
        except ValueError:
            logger.info("message_status_unknown",
                        provider_message_id=provider_message_id, status=status)
            return None

        message = await self.store.get_message_by_provider_id(provider_message_id)
        if message is None:
            logger.info("message_status_unmatched",
                        provider_message_id=provider_message_id, status=new_status.value)
            return None

        if not can_transition(message.status, new_status):
            logger.info("message_status_regression_ignored",
                        message_id=message.id, current=MessageStatus(message.status).value,
                        received=new_status.value)
            return message

        at = _as_utc(timestamp) if timestamp else utcnow()
        fields: dict[str, Any] = {"status": new_status}
        if new_status == MessageStatus.DELIVERED:
            fields["delivered_at"] = at
        elif new_status == MessageStatus.READ:
            fields["read_at"] = at
            if message.delivered_at is None:
                fields["delivered_at"] = at
        elif new_status == MessageStatus.FAILED:
            fields["error"] = error or "Delivery failed"

        previous = MessageStatus(message.status).value
        record = await self.store.update_message(message.id, **fields)
        if record is None:
            return None
        logger.info("message_status_updated",
                    message_id=record.id, previous=previous, status=new_status.value)

        await self.analytics.record(
            EventType.MESSAGE_STATUS,
            session_id=record.session_id, message_id=record.id,
            automation_id=record.automation_id,
            payload={
                "status": new_status.value,
                "previous": previous,
                "provider_message_id": provider_message_id,
                "error": error,
            },
        )

        session = await self._load_session(record.session_id)
        causation = list(record.metadata.get("causation") or [])
        payload = {"status": new_status.value, "previous": previous, "error": error}
        await self._run_automations(EventType.MESSAGE_STATUS, session, record, causation, payload)
        specific = _STATUS_EVENTS.get(new_status)
        if specific:
            await self._run_automations(specific, session, record, causation, payload)
        return record

    # ══════════════════════════════════════════════════════════
    #  CUSTOM EVENTS
    # ══════════════════════════════════════════════════════════

    async def emit_event(
        self,
        event_type: str,
        session_id: Optional[str] = None,
        message_id: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
        causation: Optional[list[str]] = None,
    ) -> list[AutomationOutcome]:
        """Record an application event and run the automations listening for it."""
        payload = payload or {}
        await self.analytics.record(
            event_type, session_id=session_id, message_id=message_id, payload=payload,
        )
        session = await self._load_session(session_id)
        message = None
        if message_id:
            async with non_fatal("load_message", message_id=message_id):
                message = await self.store.get_message(message_id)
        return await self._run_automations(
            event_type, session, message, list(causation or []), payload,
        )

    # ── Helpers ───────────────────────────────────────────────

    async def _load_session(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        session = None
        async with non_fatal("load_session", session_id=session_id):
            session = await self.sessions.store.get_session(session_id)
        return session

    async def _run_automations(
        self,
        event_type: str,
        session: Optional[Session],
        message: Optional[Message],
        causation: list[str],
        payload: Optional[dict[str, Any]] = None,
    ) -> list[AutomationOutcome]:
        if self.automations is None:
            return []
        outcomes: list[AutomationOutcome] = []
        async with non_fatal("run_automations", event_type=event_type):
            outcomes = await self.automations.run_automations(event_type, AutomationContext(
                session=session,
                message=message,
                payload=payload or {},
                causation=causation,
                skip_automation_id=message.automation_id if message else None,
            ))
        return outcomes
