"""
Analytics Recorder — append-only event log.

Recording never fails the caller: store errors are logged and counted
through `non_fatal`.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from database.store_base import BaseMessagingStore
from models.schemas import AnalyticsEvent
from utils.side_effects import non_fatal

logger = structlog.get_logger()


class AnalyticsRecorder:
    def __init__(self, store: BaseMessagingStore):
        self.store = store

    async def record(
        self,
        event_type: str,
        session_id: Optional[str] = None,
        message_id: Optional[str] = None,
        automation_id: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> Optional[AnalyticsEvent]:
        event = AnalyticsEvent(
            event_type=event_type,
            session_id=session_id,
            message_id=message_id,
            automation_id=automation_id,
            payload=payload or {},
        )
        stored = None
        async with non_fatal("record_analytics", event_type=event_type, message_id=message_id):
            stored = await self.store.add_analytics_event(event)
            logger.debug("analytics_recorded", event_type=event_type, message_id=message_id)
        return stored
