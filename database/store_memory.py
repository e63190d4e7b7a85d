"""
InMemoryMessagingStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlMessagingStore
  - Safe under asyncio (single event loop, no awaits inside mutations)
  - Records are copied on the way in and out, so callers never alias
    stored state
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional

from database.store_base import BaseMessagingStore, SessionConflictError
from models.schemas import (
    AnalyticsEvent, Automation, Campaign, CampaignRecipient, FlowButtonDefault,
    Message, MessageStatus, RecipientStatus, Session, Template, utcnow,
)

logger = structlog.get_logger()


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


class InMemoryMessagingStore(BaseMessagingStore):
    """Full-featured in-memory store with the same interface as SqlMessagingStore."""

    def __init__(self):
        self._messages: dict[str, Message] = {}
        self._sessions: dict[str, Session] = {}
        self._automations: dict[str, Automation] = {}
        self._events: list[AnalyticsEvent] = []
        self._templates: dict[str, Template] = {}
        self._campaigns: dict[str, Campaign] = {}
        self._recipients: dict[str, CampaignRecipient] = {}

        # Indexes
        self._provider_index: dict[str, str] = {}      # provider_message_id → message id
        logger.info("inmemory_store_initialized")

    # ── Messages ──────────────────────────────────────────

    async def create_message(self, message: Message) -> Message:
        stored = _copy(message)
        self._messages[stored.id] = stored
        if stored.provider_message_id:
            self._provider_index[stored.provider_message_id] = stored.id
        return _copy(stored)

    async def get_message(self, message_id: str) -> Optional[Message]:
        return _copy(self._messages.get(message_id))

    async def get_message_by_provider_id(self, provider_message_id: str) -> Optional[Message]:
        mid = self._provider_index.get(provider_message_id)
        return _copy(self._messages.get(mid)) if mid else None

    async def update_message(self, message_id: str, **fields: Any) -> Optional[Message]:
        msg = self._messages.get(message_id)
        if msg is None:
            return None
        updated = msg.model_copy(update={**fields, "updated_at": utcnow()}, deep=True)
        self._messages[message_id] = updated
        if updated.provider_message_id:
            self._provider_index[updated.provider_message_id] = message_id
        return _copy(updated)

    async def list_messages(
        self, limit: int = 50, status: Optional[MessageStatus] = None,
        session_id: Optional[str] = None,
    ) -> list[Message]:
        msgs = [
            m for m in self._messages.values()
            if (status is None or m.status == status)
            and (session_id is None or m.session_id == session_id)
        ]
        msgs.sort(key=lambda m: m.created_at, reverse=True)
        return [_copy(m) for m in msgs[:limit]]

    async def list_due_messages(self, now: datetime, limit: int = 50) -> list[Message]:
        due = [
            m for m in self._messages.values()
            if m.status == MessageStatus.SCHEDULED
            and m.scheduled_at is not None
            and m.scheduled_at <= now
        ]
        due.sort(key=lambda m: m.scheduled_at)
        return [_copy(m) for m in due[:limit]]

    async def claim_scheduled_message(self, message_id: str) -> bool:
        msg = self._messages.get(message_id)
        if msg is None or msg.status != MessageStatus.SCHEDULED:
            return False
        msg.status = MessageStatus.IN_PROGRESS
        msg.updated_at = utcnow()
        return True

    # ── Sessions ──────────────────────────────────────────

    def _check_phone_free(self, session: Session) -> None:
        if session.archived or not session.phone_number:
            return
        for other in self._sessions.values():
            if (other.id != session.id and not other.archived
                    and other.phone_number == session.phone_number):
                raise SessionConflictError(
                    f"Active session {other.id} already owns {session.phone_number}"
                )

    async def create_session(self, session: Session) -> Session:
        self._check_phone_free(session)
        stored = _copy(session)
        self._sessions[stored.id] = stored
        return _copy(stored)

    async def get_session(self, session_id: str) -> Optional[Session]:
        return _copy(self._sessions.get(session_id))

    def _most_recent_active(self, predicate) -> Optional[Session]:
        active = [
            s for s in self._sessions.values()
            if not s.archived and predicate(s)
        ]
        if not active:
            return None
        active.sort(key=lambda s: s.last_interaction, reverse=True)
        return _copy(active[0])

    async def find_session_by_flow_token(self, flow_token: str) -> Optional[Session]:
        return self._most_recent_active(
            lambda s: s.flow_token == flow_token or flow_token in s.context.flow_tokens
        )

    async def find_active_session_by_contact_id(self, contact_id: str) -> Optional[Session]:
        return self._most_recent_active(lambda s: s.contact_id == contact_id)

    async def find_active_session_by_phone(self, phone_number: str) -> Optional[Session]:
        return self._most_recent_active(lambda s: s.phone_number == phone_number)

    async def save_session(self, session: Session) -> Session:
        self._check_phone_free(session)
        stored = _copy(session)
        stored.updated_at = utcnow()
        self._sessions[stored.id] = stored
        return _copy(stored)

    async def list_sessions(self, include_archived: bool = False) -> list[Session]:
        return [
            _copy(s) for s in self._sessions.values()
            if include_archived or not s.archived
        ]

    # ── Automations ───────────────────────────────────────

    async def create_automation(self, automation: Automation) -> Automation:
        stored = _copy(automation)
        self._automations[stored.id] = stored
        return _copy(stored)

    async def get_automation(self, automation_id: str) -> Optional[Automation]:
        return _copy(self._automations.get(automation_id))

    async def update_automation(self, automation_id: str, **fields: Any) -> Optional[Automation]:
        auto = self._automations.get(automation_id)
        if auto is None:
            return None
        updated = auto.model_copy(update={**fields, "updated_at": utcnow()}, deep=True)
        self._automations[automation_id] = updated
        return _copy(updated)

    async def list_active_automations(self, trigger_type: str, limit: int = 50) -> list[Automation]:
        matches = [
            a for a in self._automations.values()
            if a.is_active and a.trigger_type == trigger_type
        ]
        matches.sort(key=lambda a: a.updated_at, reverse=True)
        return [_copy(a) for a in matches[:limit]]

    # ── Analytics ─────────────────────────────────────────

    async def add_analytics_event(self, event: AnalyticsEvent) -> AnalyticsEvent:
        stored = _copy(event)
        self._events.append(stored)
        return _copy(stored)

    async def list_analytics_events(
        self, event_type: Optional[str] = None,
        message_id: Optional[str] = None, limit: int = 100,
    ) -> list[AnalyticsEvent]:
        events = [
            e for e in self._events
            if (event_type is None or e.event_type == event_type)
            and (message_id is None or e.message_id == message_id)
        ]
        return [_copy(e) for e in events[:limit]]

    # ── Templates ─────────────────────────────────────────

    async def get_template(self, name: str) -> Optional[Template]:
        return _copy(self._templates.get(name))

    async def upsert_template(self, template: Template) -> Template:
        stored = _copy(template)
        stored.updated_at = utcnow()
        self._templates[stored.name] = stored
        return _copy(stored)

    async def update_template_flow_defaults(
        self, name: str, flow_defaults: list[FlowButtonDefault],
    ) -> None:
        template = self._templates.get(name)
        if template is None:
            template = Template(name=name)
            self._templates[name] = template
        template.flow_defaults = [_copy(d) for d in flow_defaults]
        template.updated_at = utcnow()

    # ── Campaigns ─────────────────────────────────────────

    async def create_campaign(self, campaign: Campaign) -> Campaign:
        stored = _copy(campaign)
        self._campaigns[stored.id] = stored
        return _copy(stored)

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        return _copy(self._campaigns.get(campaign_id))

    async def update_campaign(self, campaign_id: str, **fields: Any) -> Optional[Campaign]:
        campaign = self._campaigns.get(campaign_id)
        if campaign is None:
            return None
        updated = campaign.model_copy(update={**fields, "updated_at": utcnow()}, deep=True)
        self._campaigns[campaign_id] = updated
        return _copy(updated)

    async def add_campaign_recipients(
        self, campaign_id: str, recipients: list[CampaignRecipient],
    ) -> int:
        phones = {
            r.phone_number for r in self._recipients.values()
            if r.campaign_id == campaign_id
        }
        for recipient in recipients:
            if recipient.phone_number in phones:
                continue
            stored = recipient.model_copy(update={"campaign_id": campaign_id}, deep=True)
            self._recipients[stored.id] = stored
            phones.add(stored.phone_number)
        return len(phones)

    async def list_campaign_recipients(
        self, campaign_id: str,
        statuses: Optional[list[RecipientStatus]] = None,
        limit: Optional[int] = None,
    ) -> list[CampaignRecipient]:
        matches = [
            r for r in self._recipients.values()
            if r.campaign_id == campaign_id
            and (statuses is None or r.status in statuses)
        ]
        matches.sort(key=lambda r: (r.created_at, r.phone_number))
        if limit is not None:
            matches = matches[:limit]
        return [_copy(r) for r in matches]

    async def update_campaign_recipient(
        self, recipient_id: str, **fields: Any,
    ) -> Optional[CampaignRecipient]:
        recipient = self._recipients.get(recipient_id)
        if recipient is None:
            return None
        updated = recipient.model_copy(update=fields, deep=True)
        self._recipients[recipient_id] = updated
        return _copy(updated)

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "messages": len(self._messages),
            "sessions": len(self._sessions),
            "automations": len(self._automations),
            "analytics_events": len(self._events),
            "templates": len(self._templates),
            "campaigns": len(self._campaigns),
            "campaign_recipients": len(self._recipients),
        }
