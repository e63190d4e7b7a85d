"""
Abstract Messaging Store — Interface for all storage backends.

Implementations:
  - SqlMessagingStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryMessagingStore (dict-based, single-process, no persistence)

Every method reads or writes one entity (Message, Session, Automation,
AnalyticsEvent, Template). Records go in and come out as the pydantic models
from models/schemas.py, never as ORM rows.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import (
    AnalyticsEvent, Automation, Campaign, CampaignRecipient, FlowButtonDefault,
    Message, MessageStatus, RecipientStatus, Session, Template,
)


class SessionConflictError(Exception):
    """A second non-archived Session for the same phone number was rejected."""


class BaseMessagingStore(ABC):
    """Interface that all messaging store backends must implement."""

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def create_message(self, message: Message) -> Message:
        ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[Message]:
        ...

    @abstractmethod
    async def get_message_by_provider_id(self, provider_message_id: str) -> Optional[Message]:
        ...

    @abstractmethod
    async def update_message(self, message_id: str, **fields: Any) -> Optional[Message]:
        ...

    @abstractmethod
    async def list_messages(
        self, limit: int = 50, status: Optional[MessageStatus] = None,
        session_id: Optional[str] = None,
    ) -> list[Message]:
        """Most recent first."""
        ...

    @abstractmethod
    async def list_due_messages(self, now: datetime, limit: int = 50) -> list[Message]:
        """Scheduled messages with scheduled_at <= now, oldest first."""
        ...

    @abstractmethod
    async def claim_scheduled_message(self, message_id: str) -> bool:
        """
        Atomically move a message from `scheduled` to `in_progress`.
        Returns False when another worker claimed it first.
        """
        ...

    # ── Sessions ──────────────────────────────────────────────

    @abstractmethod
    async def create_session(self, session: Session) -> Session:
        """Raises SessionConflictError when the phone number already has an active session."""
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def find_session_by_flow_token(self, flow_token: str) -> Optional[Session]:
        """Match the session's current token or any token in its context."""
        ...

    @abstractmethod
    async def find_active_session_by_contact_id(self, contact_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def find_active_session_by_phone(self, phone_number: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def save_session(self, session: Session) -> Session:
        """Insert or replace. Same phone-number rule as create_session."""
        ...

    @abstractmethod
    async def list_sessions(self, include_archived: bool = False) -> list[Session]:
        ...

    # ── Automations ───────────────────────────────────────────

    @abstractmethod
    async def create_automation(self, automation: Automation) -> Automation:
        ...

    @abstractmethod
    async def get_automation(self, automation_id: str) -> Optional[Automation]:
        ...

    @abstractmethod
    async def update_automation(self, automation_id: str, **fields: Any) -> Optional[Automation]:
        ...

    @abstractmethod
    async def list_active_automations(self, trigger_type: str, limit: int = 50) -> list[Automation]:
        """Active automations for a trigger, most recently updated first."""
        ...

    # ── Analytics ─────────────────────────────────────────────

    @abstractmethod
    async def add_analytics_event(self, event: AnalyticsEvent) -> AnalyticsEvent:
        ...

    @abstractmethod
    async def list_analytics_events(
        self, event_type: Optional[str] = None,
        message_id: Optional[str] = None, limit: int = 100,
    ) -> list[AnalyticsEvent]:
        """Oldest first."""
        ...

    # ── Templates ─────────────────────────────────────────────

    @abstractmethod
    async def get_template(self, name: str) -> Optional[Template]:
        ...

    @abstractmethod
    async def upsert_template(self, template: Template) -> Template:
        ...

    @abstractmethod
    async def update_template_flow_defaults(
        self, name: str, flow_defaults: list[FlowButtonDefault],
    ) -> None:
        ...

    # ── Campaigns ─────────────────────────────────────────────

    @abstractmethod
    async def create_campaign(self, campaign: Campaign) -> Campaign:
        ...

    @abstractmethod
    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        ...

    @abstractmethod
    async def update_campaign(self, campaign_id: str, **fields: Any) -> Optional[Campaign]:
        ...

    @abstractmethod
    async def add_campaign_recipients(
        self, campaign_id: str, recipients: list[CampaignRecipient],
    ) -> int:
        """
        Add recipients, skipping phone numbers already on the campaign.
        Returns the campaign's recipient total afterwards.
        """
        ...

    @abstractmethod
    async def list_campaign_recipients(
        self, campaign_id: str,
        statuses: Optional[list[RecipientStatus]] = None,
        limit: Optional[int] = None,
    ) -> list[CampaignRecipient]:
        """Oldest first."""
        ...

    @abstractmethod
    async def update_campaign_recipient(
        self, recipient_id: str, **fields: Any,
    ) -> Optional[CampaignRecipient]:
        ...
