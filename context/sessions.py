"""
Session Manager — one standing conversation per contact.

A Session is found by flow token, then by provider contact id, then by phone
number (most recent non-archived match each time), and created only when the
caller supplied at least one of those identifiers. Every touch stamps
`last_interaction` and pushes `expires_at` out by the session TTL.

Context updates go through SessionContext.merge, so tags and flow tokens
accumulate while the `last_*` fields track the latest turn.

Find-or-create is serialized per phone number (or contact id) inside one
process; across processes the store rejects a second active session for a
phone with SessionConflictError, and the loser adopts the winner's session.
"""
from __future__ import annotations

import asyncio
import structlog
import weakref
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional, Union

from pydantic import BaseModel

from database.store_base import BaseMessagingStore, SessionConflictError
from models.schemas import Session, SessionContext, utcnow
from utils.phone import normalize_e164

logger = structlog.get_logger()


class SessionHints(BaseModel):
    phone_number: Optional[str] = None
    contact_id: Optional[str] = None
    flow_token: Optional[str] = None
    flow_tokens: list[str] = []
    context: dict[str, Any] = {}
    last_screen: Optional[str] = None
    last_action: Optional[str] = None
    last_message_id: Optional[str] = None
    create_if_missing: bool = True

    @property
    def identifying(self) -> bool:
        return bool(self.phone_number or self.contact_id or self.flow_token)

    def context_patch(self) -> dict[str, Any]:
        patch = dict(self.context)
        tokens = list(self.flow_tokens)
        if self.flow_token and self.flow_token not in tokens:
            tokens.append(self.flow_token)
        if tokens:
            patch["flow_tokens"] = tokens
            patch["last_flow_token"] = tokens[-1]
        for key in ("last_screen", "last_action", "last_message_id"):
            value = getattr(self, key)
            if value:
                patch[key] = value
        return patch


class SessionManager:
    def __init__(self, store: BaseMessagingStore, ttl_hours: float = 24):
        self.store = store
        self.ttl = timedelta(hours=ttl_hours)
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, hints: SessionHints) -> asyncio.Lock:
        # find-or-create for one contact runs one at a time in this process
        key = hints.phone_number or f"contact:{hints.contact_id or hints.flow_token}"
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def find_session(self, hints: SessionHints) -> Optional[Session]:
        if hints.flow_token:
            session = await self.store.find_session_by_flow_token(hints.flow_token)
            if session:
                return session
        if hints.contact_id:
            session = await self.store.find_active_session_by_contact_id(hints.contact_id)
            if session:
                return session
        if hints.phone_number:
            return await self.store.find_active_session_by_phone(hints.phone_number)
        return None

    async def ensure_session(self, hints: SessionHints) -> Optional[Session]:
        """Find or create the contact's session and apply the hints to it."""
        if hints.phone_number:
            hints = hints.model_copy(update={"phone_number": normalize_e164(hints.phone_number)})
        if not hints.identifying:
            return None

        async with self._lock_for(hints):
            now = utcnow()
            session = await self.find_session(hints)

            if session is None:
                if not hints.create_if_missing:
                    return None
                try:
                    return await self._create(hints, now)
                except SessionConflictError:
                    # another process created it between lookup and insert
                    if hints.phone_number:
                        session = await self.store.find_active_session_by_phone(hints.phone_number)
                    if session is None:
                        raise
                    logger.info("session_create_conflict", session_id=session.id,
                                phone=hints.phone_number)

            return await self._apply(session, hints, now)

    async def _create(self, hints: SessionHints, now: datetime) -> Session:
        context = SessionContext().merge(hints.context_patch())
        session = Session(
            phone_number=hints.phone_number,
            contact_id=hints.contact_id,
            flow_token=context.last_flow_token,
            context=context,
            last_interaction=now,
            expires_at=now + self.ttl,
        )
        session = await self.store.create_session(session)
        logger.info("session_created",
                    session_id=session.id, phone=session.phone_number,
                    contact_id=session.contact_id)
        return session

    async def _apply(self, session: Session, hints: SessionHints, now: datetime) -> Session:
        session.context = session.context.merge(hints.context_patch())
        if session.context.last_flow_token:
            session.flow_token = session.context.last_flow_token
        if hints.contact_id and not session.contact_id:
            session.contact_id = hints.contact_id
        if hints.phone_number and not session.phone_number:
            # keep one active session per phone
            owner = await self.store.find_active_session_by_phone(hints.phone_number)
            if owner is None:
                session.phone_number = hints.phone_number
        session.last_interaction = now
        session.expires_at = now + self.ttl
        return await self.store.save_session(session)

    async def add_tags(
        self, session: Union[Session, str], tags: Iterable[str],
    ) -> Optional[Session]:
        """Union `tags` into the session context."""
        if isinstance(session, str):
            session = await self.store.get_session(session)
            if session is None:
                return None
        session.context = session.context.merge({"tags": list(tags)})
        session.last_interaction = utcnow()
        saved = await self.store.save_session(session)
        logger.info("session_tagged", session_id=saved.id, tags=saved.context.tags)
        return saved

    async def archive(self, session_id: str) -> Optional[Session]:
        session = await self.store.get_session(session_id)
        if session is None or session.archived:
            return session
        session.archived = True
        logger.info("session_archived", session_id=session_id)
        return await self.store.save_session(session)

    async def archive_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        archived = 0
        for session in await self.store.list_sessions():
            if session.expires_at is not None and session.expires_at <= now:
                session.archived = True
                await self.store.save_session(session)
                archived += 1
        if archived:
            logger.info("sessions_expired", count=archived)
        return archived
