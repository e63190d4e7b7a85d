"""
Scheduled Message Processor — sends Messages whose scheduled time has come.

Each due Message is claimed first (conditional `scheduled → in_progress`
update), so overlapping runs, e.g. two cron triggers, never send the same
Message twice. Claimed Messages go through Dispatcher.deliver_stored, which
applies the same sent/failed bookkeeping as an immediate send. Missing
credentials put the claimed Message back to `scheduled` and stop the run.

Runs from the cron CLI (scripts/process_scheduled.py), the HTTP API, or the
in-process ScheduledMessagePoller.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from channels.base import ConfigurationError
from core.dispatcher import Dispatcher
from database.store_base import BaseMessagingStore
from models.schemas import MessageStatus, utcnow

logger = structlog.get_logger()


@dataclass
class ProcessSummary:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class ScheduledMessageProcessor:
    def __init__(self, store: BaseMessagingStore, dispatcher: Dispatcher, batch_size: int = 50):
        self.store = store
        self.dispatcher = dispatcher
        self.batch_size = batch_size

    async def process_due(
        self, limit: Optional[int] = None, now: Optional[datetime] = None,
    ) -> ProcessSummary:
        """Send up to `limit` due Messages, oldest first, one at a time."""
        limit = limit or self.batch_size
        now = now or utcnow()
        summary = ProcessSummary()

        due = await self.store.list_due_messages(now, limit=limit)
        for message in due:
            if not await self.store.claim_scheduled_message(message.id):
                logger.info("scheduled_message_already_claimed", message_id=message.id)
                summary.skipped += 1
                continue

            summary.processed += 1
            try:
                result = await self.dispatcher.deliver_stored(message)
            except ConfigurationError as e:
                # a claimed row never stays in_progress
                await self.store.update_message(message.id, status=MessageStatus.SCHEDULED)
                logger.error("scheduled_message_released",
                             message_id=message.id, error=str(e))
                raise
            if result.success:
                summary.sent += 1
            else:
                summary.failed += 1

        if due:
            logger.info("scheduled_messages_processed", **summary.to_dict())
        return summary


class ScheduledMessagePoller:
    """Runs process_due on an interval as a background task."""

    def __init__(self, processor: ScheduledMessageProcessor, interval_s: float = 60):
        self.processor = processor
        self.interval_s = interval_s
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="scheduled_message_poller")
        logger.info("scheduled_poller_started", interval_s=self.interval_s)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("scheduled_poller_stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.processor.process_due()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("scheduled_poll_error", error=str(e))

            await asyncio.sleep(self.interval_s)
