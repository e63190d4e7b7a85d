"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - String primary keys (uuid hex) — no database-specific sequences.
  - Analytics events are append-only; nothing updates that table.
  - One active session per phone number is enforced by a partial unique
    index on PostgreSQL and SQLite. MySQL has no partial indexes, so there
    the Session Manager's per-phone lock is the only guard.
  - Every flow token a session was issued gets a row in
    `session_flow_tokens`, so older tokens resolve through an index.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, DateTime, Text, ForeignKey, Boolean, Integer,
    Index, JSON, UniqueConstraint, text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Sessions
# ──────────────────────────────────────────────────────────────

class SessionRow(Base):
    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    phone_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    contact_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    flow_token: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    context: Mapped[Any] = mapped_column(JSON, default=dict)

    last_interaction: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    archived: Mapped[bool] = mapped_column(Boolean, default=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_sessions_phone_archived", "phone_number", "archived"),
        Index("ix_sessions_contact_archived", "contact_id", "archived"),
        Index("ix_sessions_flow_token", "flow_token"),
        Index(
            "uq_sessions_active_phone", "phone_number", unique=True,
            postgresql_where=text("archived = false"),
            sqlite_where=text("archived = 0"),
        ).ddl_if(dialect=("postgresql", "sqlite")),
    )


class SessionFlowTokenRow(Base):
    __tablename__ = "session_flow_tokens"

    token: Mapped[str] = mapped_column(String(256), primary_key=True)
    session_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("sessions.id", ondelete="CASCADE"), primary_key=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_session_flow_tokens_session", "session_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Automations
# ──────────────────────────────────────────────────────────────

class AutomationRow(Base):
    __tablename__ = "automations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), default="")
    trigger_type: Mapped[str] = mapped_column(String(128), nullable=False)
    action_type: Mapped[str] = mapped_column(String(32), nullable=False)
    action_config: Mapped[Any] = mapped_column(JSON, default=dict)
    conditions: Mapped[Any] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_automations_trigger_active", "trigger_type", "is_active"),
    )


# ──────────────────────────────────────────────────────────────
#  Messages
# ──────────────────────────────────────────────────────────────

class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    to: Mapped[str] = mapped_column(String(64), nullable=False)
    from_address: Mapped[str] = mapped_column(String(64), default="")
    preview: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(32), default="sent")
    direction: Mapped[str] = mapped_column(String(16), default="outbound")
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)
    payload: Mapped[Any] = mapped_column(JSON, default=dict)

    session_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("sessions.id"), nullable=True)
    automation_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("automations.id"), nullable=True)

    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_messages_status_scheduled", "status", "scheduled_at"),
        Index("ix_messages_provider_id", "provider_message_id"),
        Index("ix_messages_session", "session_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Analytics events
# ──────────────────────────────────────────────────────────────

class AnalyticsEventRow(Base):
    __tablename__ = "analytics_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    session_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    message_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    automation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_analytics_type_observed", "event_type", "observed_at"),
        Index("ix_analytics_message", "message_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Templates (cache)
# ──────────────────────────────────────────────────────────────

class TemplateRow(Base):
    __tablename__ = "templates"

    name: Mapped[str] = mapped_column(String(512), primary_key=True)
    language: Mapped[str] = mapped_column(String(16), default="en_US")
    category: Mapped[str] = mapped_column(String(64), default="")
    status: Mapped[str] = mapped_column(String(32), default="")
    body: Mapped[str] = mapped_column(Text, default="")
    components: Mapped[Any] = mapped_column(JSON, default=list)
    variables: Mapped[Any] = mapped_column(JSON, default=list)
    flow_defaults: Mapped[Any] = mapped_column(JSON, default=list)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Campaigns
# ──────────────────────────────────────────────────────────────

class CampaignRow(Base):
    __tablename__ = "campaigns"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), default="")
    template_name: Mapped[str] = mapped_column(String(512), nullable=False)
    template_language: Mapped[str] = mapped_column(String(16), default="en_US")
    template_variables: Mapped[Any] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(32), default="draft")
    rate_limit: Mapped[int] = mapped_column(Integer, default=10)
    send_window_start: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    send_window_end: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_recipients: Mapped[int] = mapped_column(Integer, default=0)
    sent_count: Mapped[int] = mapped_column(Integer, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, default=0)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class CampaignRecipientRow(Base):
    __tablename__ = "campaign_recipients"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    campaign_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False,
    )
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    variables: Mapped[Any] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(32), default="pending")
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    message_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)

    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("campaign_id", "phone_number", name="uq_campaign_recipient_phone"),
        Index("ix_campaign_recipients_status", "campaign_id", "status"),
    )
