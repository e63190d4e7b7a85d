"""
SqlMessagingStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Notes:
  - JSON columns are never queried inside the database. Flow tokens a
    session was issued earlier are looked up through `session_flow_tokens`.
  - A rejected duplicate active session surfaces as SessionConflictError.
  - SQLite returns naive datetimes; every value read back is tagged UTC.
  - The scheduled-message claim is a conditional UPDATE, so only one
    worker can move a row out of `scheduled`.
"""
from __future__ import annotations

import json
import structlog
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import select, update, and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import (
    AnalyticsEventRow, AutomationRow, CampaignRecipientRow, CampaignRow,
    MessageRow, SessionFlowTokenRow, SessionRow, TemplateRow,
)
from database.session import get_session_factory, session_scope
from database.store_base import BaseMessagingStore, SessionConflictError
from models.schemas import (
    AnalyticsEvent, Automation, Campaign, CampaignRecipient, FlowButtonDefault,
    Message, MessageStatus, RecipientStatus, Session, SessionContext, Template,
    utcnow,
)

logger = structlog.get_logger()


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    # Handle string (SQLite may hand back JSON text from raw queries)
    if isinstance(value, str):
        return json.loads(value)
    return value


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


_MESSAGE_COLUMNS = {
    "to", "from_address", "preview", "status", "direction",
    "provider_message_id", "error", "payload", "session_id", "automation_id",
    "scheduled_at", "sent_at", "delivered_at", "read_at",
}


class SqlMessagingStore(BaseMessagingStore):
    """
    Persistent messaging store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._factory = session_factory

    def _session(self):
        return session_scope(self._factory or get_session_factory())

    # ── Messages ───────────────────────────────────────────

    async def create_message(self, message: Message) -> Message:
        async with self._session() as db:
            row = MessageRow(
                id=message.id,
                to=message.to,
                from_address=message.from_address,
                preview=message.preview,
                status=_plain(message.status),
                direction=_plain(message.direction),
                provider_message_id=message.provider_message_id,
                error=message.error,
                metadata_=message.metadata,
                payload=message.payload,
                session_id=message.session_id,
                automation_id=message.automation_id,
                scheduled_at=message.scheduled_at,
                sent_at=message.sent_at,
                delivered_at=message.delivered_at,
                read_at=message.read_at,
                created_at=message.created_at,
                updated_at=message.updated_at,
            )
            db.add(row)
        return message.model_copy(deep=True)

    async def get_message(self, message_id: str) -> Optional[Message]:
        async with self._session() as db:
            row = await db.get(MessageRow, message_id)
            return self._row_to_message(row) if row else None

    async def get_message_by_provider_id(self, provider_message_id: str) -> Optional[Message]:
        async with self._session() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.provider_message_id == provider_message_id)
                .order_by(MessageRow.created_at.desc())
                .limit(1)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_message(row) if row else None

    async def update_message(self, message_id: str, **fields: Any) -> Optional[Message]:
        async with self._session() as db:
            row = await db.get(MessageRow, message_id)
            if row is None:
                return None
            for key, value in fields.items():
                if key == "metadata":
                    row.metadata_ = value
                elif key in _MESSAGE_COLUMNS:
                    setattr(row, key, _plain(value))
                else:
                    logger.warning("unknown_message_field", field=key)
            row.updated_at = utcnow()
            await db.flush()
            return self._row_to_message(row)

    async def list_messages(
        self, limit: int = 50, status: Optional[MessageStatus] = None,
        session_id: Optional[str] = None,
    ) -> list[Message]:
        async with self._session() as db:
            stmt = select(MessageRow)
            if status is not None:
                stmt = stmt.where(MessageRow.status == _plain(status))
            if session_id is not None:
                stmt = stmt.where(MessageRow.session_id == session_id)
            stmt = stmt.order_by(MessageRow.created_at.desc()).limit(limit)
            result = await db.execute(stmt)
            return [self._row_to_message(r) for r in result.scalars()]

    async def list_due_messages(self, now: datetime, limit: int = 50) -> list[Message]:
        async with self._session() as db:
            stmt = (
                select(MessageRow)
                .where(and_(
                    MessageRow.status == MessageStatus.SCHEDULED.value,
                    MessageRow.scheduled_at.is_not(None),
                    MessageRow.scheduled_at <= now,
                ))
                .order_by(MessageRow.scheduled_at.asc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_message(r) for r in result.scalars()]

    async def claim_scheduled_message(self, message_id: str) -> bool:
        async with self._session() as db:
            stmt = (
                update(MessageRow)
                .where(and_(
                    MessageRow.id == message_id,
                    MessageRow.status == MessageStatus.SCHEDULED.value,
                ))
                .values(status=MessageStatus.IN_PROGRESS.value, updated_at=utcnow())
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    # ── Sessions ───────────────────────────────────────────

    async def create_session(self, session: Session) -> Session:
        try:
            async with self._session() as db:
                db.add(SessionRow(
                    id=session.id,
                    phone_number=session.phone_number,
                    contact_id=session.contact_id,
                    flow_token=session.flow_token,
                    context=session.context.model_dump(mode="json"),
                    last_interaction=session.last_interaction,
                    archived=session.archived,
                    expires_at=session.expires_at,
                    created_at=session.created_at,
                    updated_at=session.updated_at,
                ))
                await db.flush()
                await self._record_flow_tokens(db, session)
        except IntegrityError as e:
            raise SessionConflictError(
                f"Active session already exists for {session.phone_number}"
            ) from e
        return session.model_copy(deep=True)

    async def get_session(self, session_id: str) -> Optional[Session]:
        async with self._session() as db:
            row = await db.get(SessionRow, session_id)
            return self._row_to_session(row) if row else None

    async def _most_recent_active(self, *criteria) -> Optional[Session]:
        async with self._session() as db:
            stmt = (
                select(SessionRow)
                .where(and_(SessionRow.archived.is_(False), *criteria))
                .order_by(SessionRow.last_interaction.desc())
                .limit(1)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_session(row) if row else None

    async def find_session_by_flow_token(self, flow_token: str) -> Optional[Session]:
        issued = select(SessionFlowTokenRow.session_id).where(SessionFlowTokenRow.token == flow_token)
        return await self._most_recent_active(or_(
            SessionRow.flow_token == flow_token,
            SessionRow.id.in_(issued),
        ))

    async def find_active_session_by_contact_id(self, contact_id: str) -> Optional[Session]:
        return await self._most_recent_active(SessionRow.contact_id == contact_id)

    async def find_active_session_by_phone(self, phone_number: str) -> Optional[Session]:
        return await self._most_recent_active(SessionRow.phone_number == phone_number)

    async def save_session(self, session: Session) -> Session:
        try:
            async with self._session() as db:
                row = await db.get(SessionRow, session.id)
                if row is None:
                    row = SessionRow(id=session.id, created_at=session.created_at)
                    db.add(row)
                row.phone_number = session.phone_number
                row.contact_id = session.contact_id
                row.flow_token = session.flow_token
                row.context = session.context.model_dump(mode="json")
                row.last_interaction = session.last_interaction
                row.archived = session.archived
                row.expires_at = session.expires_at
                row.updated_at = utcnow()
                await db.flush()
                await self._record_flow_tokens(db, session)
        except IntegrityError as e:
            raise SessionConflictError(
                f"Active session already exists for {session.phone_number}"
            ) from e
        return session.model_copy(deep=True)

    @staticmethod
    async def _record_flow_tokens(db: AsyncSession, session: Session) -> None:
        tokens = list(dict.fromkeys(
            t for t in [session.flow_token, *session.context.flow_tokens] if t
        ))
        if not tokens:
            return
        result = await db.execute(
            select(SessionFlowTokenRow.token).where(and_(
                SessionFlowTokenRow.session_id == session.id,
                SessionFlowTokenRow.token.in_(tokens),
            ))
        )
        known = set(result.scalars())
        for token in tokens:
            if token not in known:
                db.add(SessionFlowTokenRow(token=token, session_id=session.id))

    async def list_sessions(self, include_archived: bool = False) -> list[Session]:
        async with self._session() as db:
            stmt = select(SessionRow)
            if not include_archived:
                stmt = stmt.where(SessionRow.archived.is_(False))
            result = await db.execute(stmt)
            return [self._row_to_session(r) for r in result.scalars()]

    # ── Automations ────────────────────────────────────────

    async def create_automation(self, automation: Automation) -> Automation:
        async with self._session() as db:
            db.add(AutomationRow(
                id=automation.id,
                name=automation.name,
                trigger_type=automation.trigger_type,
                action_type=_plain(automation.action_type),
                action_config=automation.action_config,
                conditions=[c.model_dump(mode="json") for c in automation.conditions],
                is_active=automation.is_active,
                created_at=automation.created_at,
                updated_at=automation.updated_at,
            ))
        return automation.model_copy(deep=True)

    async def get_automation(self, automation_id: str) -> Optional[Automation]:
        async with self._session() as db:
            row = await db.get(AutomationRow, automation_id)
            return self._row_to_automation(row) if row else None

    async def update_automation(self, automation_id: str, **fields: Any) -> Optional[Automation]:
        async with self._session() as db:
            row = await db.get(AutomationRow, automation_id)
            if row is None:
                return None
            for key, value in fields.items():
                if key == "conditions":
                    value = [c.model_dump(mode="json") if hasattr(c, "model_dump") else c for c in value]
                setattr(row, key, _plain(value))
            row.updated_at = utcnow()
            await db.flush()
            return self._row_to_automation(row)

    async def list_active_automations(self, trigger_type: str, limit: int = 50) -> list[Automation]:
        async with self._session() as db:
            stmt = (
                select(AutomationRow)
                .where(and_(
                    AutomationRow.trigger_type == trigger_type,
                    AutomationRow.is_active.is_(True),
                ))
                .order_by(AutomationRow.updated_at.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_automation(r) for r in result.scalars()]

    # ── Analytics ──────────────────────────────────────────

    async def add_analytics_event(self, event: AnalyticsEvent) -> AnalyticsEvent:
        async with self._session() as db:
            db.add(AnalyticsEventRow(
                id=event.id,
                event_type=event.event_type,
                session_id=event.session_id,
                message_id=event.message_id,
                automation_id=event.automation_id,
                payload=event.payload,
                observed_at=event.observed_at,
            ))
        return event.model_copy(deep=True)

    async def list_analytics_events(
        self, event_type: Optional[str] = None,
        message_id: Optional[str] = None, limit: int = 100,
    ) -> list[AnalyticsEvent]:
        async with self._session() as db:
            stmt = select(AnalyticsEventRow)
            if event_type is not None:
                stmt = stmt.where(AnalyticsEventRow.event_type == event_type)
            if message_id is not None:
                stmt = stmt.where(AnalyticsEventRow.message_id == message_id)
            stmt = stmt.order_by(AnalyticsEventRow.observed_at.asc()).limit(limit)
            result = await db.execute(stmt)
            return [
                AnalyticsEvent(
                    id=r.id, event_type=r.event_type, session_id=r.session_id,
                    message_id=r.message_id, automation_id=r.automation_id,
                    payload=_json(r.payload, {}), observed_at=_aware(r.observed_at),
                )
                for r in result.scalars()
            ]

    # ── Templates ──────────────────────────────────────────

    async def get_template(self, name: str) -> Optional[Template]:
        async with self._session() as db:
            row = await db.get(TemplateRow, name)
            return self._row_to_template(row) if row else None

    async def upsert_template(self, template: Template) -> Template:
        async with self._session() as db:
            row = await db.get(TemplateRow, template.name)
            if row is None:
                row = TemplateRow(name=template.name)
                db.add(row)
            row.language = template.language
            row.category = template.category
            row.status = template.status
            row.body = template.body
            row.components = template.components
            row.variables = template.variables
            row.flow_defaults = [d.model_dump(mode="json") for d in template.flow_defaults]
            row.updated_at = utcnow()
        return template.model_copy(deep=True)

    async def update_template_flow_defaults(
        self, name: str, flow_defaults: list[FlowButtonDefault],
    ) -> None:
        async with self._session() as db:
            row = await db.get(TemplateRow, name)
            if row is None:
                row = TemplateRow(name=name)
                db.add(row)
            row.flow_defaults = [d.model_dump(mode="json") for d in flow_defaults]
            row.updated_at = utcnow()

    # ── Campaigns ──────────────────────────────────────────

    async def create_campaign(self, campaign: Campaign) -> Campaign:
        async with self._session() as db:
            db.add(CampaignRow(
                id=campaign.id,
                name=campaign.name,
                template_name=campaign.template_name,
                template_language=campaign.template_language,
                template_variables=campaign.template_variables,
                status=_plain(campaign.status),
                rate_limit=campaign.rate_limit,
                send_window_start=campaign.send_window_start,
                send_window_end=campaign.send_window_end,
                total_recipients=campaign.total_recipients,
                sent_count=campaign.sent_count,
                failed_count=campaign.failed_count,
                started_at=campaign.started_at,
                completed_at=campaign.completed_at,
                created_at=campaign.created_at,
                updated_at=campaign.updated_at,
            ))
        return campaign.model_copy(deep=True)

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        async with self._session() as db:
            row = await db.get(CampaignRow, campaign_id)
            return self._row_to_campaign(row) if row else None

    async def update_campaign(self, campaign_id: str, **fields: Any) -> Optional[Campaign]:
        async with self._session() as db:
            row = await db.get(CampaignRow, campaign_id)
            if row is None:
                return None
            for key, value in fields.items():
                setattr(row, key, _plain(value))
            row.updated_at = utcnow()
            await db.flush()
            return self._row_to_campaign(row)

    async def add_campaign_recipients(
        self, campaign_id: str, recipients: list[CampaignRecipient],
    ) -> int:
        async with self._session() as db:
            result = await db.execute(
                select(CampaignRecipientRow.phone_number)
                .where(CampaignRecipientRow.campaign_id == campaign_id)
            )
            phones = set(result.scalars())
            for recipient in recipients:
                if recipient.phone_number in phones:
                    continue
                db.add(CampaignRecipientRow(
                    id=recipient.id,
                    campaign_id=campaign_id,
                    phone_number=recipient.phone_number,
                    name=recipient.name,
                    variables=recipient.variables,
                    status=_plain(recipient.status),
                    retry_count=recipient.retry_count,
                    created_at=recipient.created_at,
                ))
                phones.add(recipient.phone_number)
            return len(phones)

    async def list_campaign_recipients(
        self, campaign_id: str,
        statuses: Optional[list[RecipientStatus]] = None,
        limit: Optional[int] = None,
    ) -> list[CampaignRecipient]:
        async with self._session() as db:
            stmt = select(CampaignRecipientRow).where(CampaignRecipientRow.campaign_id == campaign_id)
            if statuses is not None:
                stmt = stmt.where(CampaignRecipientRow.status.in_([_plain(s) for s in statuses]))
            stmt = stmt.order_by(CampaignRecipientRow.created_at.asc(), CampaignRecipientRow.phone_number.asc())
            if limit is not None:
                stmt = stmt.limit(limit)
            result = await db.execute(stmt)
            return [self._row_to_recipient(r) for r in result.scalars()]

    async def update_campaign_recipient(
        self, recipient_id: str, **fields: Any,
    ) -> Optional[CampaignRecipient]:
        async with self._session() as db:
            row = await db.get(CampaignRecipientRow, recipient_id)
            if row is None:
                return None
            for key, value in fields.items():
                setattr(row, key, _plain(value))
            await db.flush()
            return self._row_to_recipient(row)

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _row_to_message(row: MessageRow) -> Message:
        return Message(
            id=row.id, to=row.to, from_address=row.from_address or "",
            preview=row.preview or "",
            status=MessageStatus(row.status),
            direction=row.direction,
            provider_message_id=row.provider_message_id,
            error=row.error,
            metadata=_json(row.metadata_, {}),
            payload=_json(row.payload, {}),
            session_id=row.session_id,
            automation_id=row.automation_id,
            scheduled_at=_aware(row.scheduled_at),
            sent_at=_aware(row.sent_at),
            delivered_at=_aware(row.delivered_at),
            read_at=_aware(row.read_at),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _row_to_session(row: SessionRow) -> Session:
        return Session(
            id=row.id,
            phone_number=row.phone_number,
            contact_id=row.contact_id,
            flow_token=row.flow_token,
            context=SessionContext(**_json(row.context, {})),
            last_interaction=_aware(row.last_interaction),
            archived=bool(row.archived),
            expires_at=_aware(row.expires_at),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _row_to_automation(row: AutomationRow) -> Automation:
        return Automation(
            id=row.id, name=row.name or "",
            trigger_type=row.trigger_type,
            action_type=row.action_type,
            action_config=_json(row.action_config, {}),
            conditions=_json(row.conditions, []),
            is_active=bool(row.is_active),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _row_to_template(row: TemplateRow) -> Template:
        return Template(
            name=row.name,
            language=row.language or "en_US",
            category=row.category or "",
            status=row.status or "",
            body=row.body or "",
            components=_json(row.components, []),
            variables=_json(row.variables, []),
            flow_defaults=_json(row.flow_defaults, []),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _row_to_campaign(row: CampaignRow) -> Campaign:
        return Campaign(
            id=row.id, name=row.name or "",
            template_name=row.template_name,
            template_language=row.template_language or "en_US",
            template_variables=_json(row.template_variables, {}),
            status=row.status,
            rate_limit=row.rate_limit if row.rate_limit is not None else 10,
            send_window_start=row.send_window_start,
            send_window_end=row.send_window_end,
            total_recipients=row.total_recipients or 0,
            sent_count=row.sent_count or 0,
            failed_count=row.failed_count or 0,
            started_at=_aware(row.started_at),
            completed_at=_aware(row.completed_at),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _row_to_recipient(row: CampaignRecipientRow) -> CampaignRecipient:
        return CampaignRecipient(
            id=row.id, campaign_id=row.campaign_id,
            phone_number=row.phone_number,
            name=row.name,
            variables=_json(row.variables, {}),
            status=row.status,
            provider_message_id=row.provider_message_id,
            message_id=row.message_id,
            error_code=row.error_code,
            error_message=row.error_message,
            retry_count=row.retry_count or 0,
            sent_at=_aware(row.sent_at),
            failed_at=_aware(row.failed_at),
            created_at=_aware(row.created_at),
        )


# Backward-compatible alias
PostgresMessagingStore = SqlMessagingStore
