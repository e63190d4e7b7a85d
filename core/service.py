"""
Service wiring — builds every component from one store and one transport.

    service = create_messaging_service()
    result = await service.dispatcher.send(SendRequest(to="+911234567890", message="Hello"))
    await service.close()
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Optional

from channels.base import MessagingTransport
from channels.flow_tokens import FlowTokenManager
from channels.whatsapp_client import GraphAPIClient
from config.settings import Settings, get_settings
from context.sessions import SessionManager
from core.analytics import AnalyticsRecorder
from core.campaigns import CampaignSender
from core.dispatcher import Dispatcher
from core.webhooks import WebhookProcessor
from database.store_base import BaseMessagingStore
from database.store_factory import create_store
from job_queue.scheduler import ScheduledMessagePoller, ScheduledMessageProcessor
from rules.engine import AutomationEngine

logger = structlog.get_logger()


@dataclass
class MessagingService:
    settings: Settings
    store: BaseMessagingStore
    transport: MessagingTransport
    sessions: SessionManager
    analytics: AnalyticsRecorder
    flow_tokens: FlowTokenManager
    automations: AutomationEngine
    dispatcher: Dispatcher
    processor: ScheduledMessageProcessor
    poller: ScheduledMessagePoller
    campaigns: CampaignSender
    webhooks: Optional[WebhookProcessor] = None

    async def close(self) -> None:
        await self.poller.stop()
        await self.automations.close()
        await self.transport.close()


def create_messaging_service(
    store: Optional[BaseMessagingStore] = None,
    transport: Optional[MessagingTransport] = None,
    settings: Optional[Settings] = None,
) -> MessagingService:
    settings = settings or get_settings()
    dispatch = settings.dispatch
    store = store or create_store({"store_backend": settings.database.store_backend})
    transport = transport or GraphAPIClient(
        settings.whatsapp,
        retry_attempts=dispatch.retry_attempts,
        backoff_base=dispatch.retry_backoff_base,
        backoff_max=dispatch.retry_backoff_max,
    )

    sessions = SessionManager(store, ttl_hours=float(dispatch.session_ttl_hours))
    analytics = AnalyticsRecorder(store)
    flow_tokens = FlowTokenManager(store)
    automations = AutomationEngine(
        store, sessions, analytics,
        batch_size=int(dispatch.automation_batch_size),
        max_depth=int(dispatch.max_automation_depth),
        webhook_timeout=float(dispatch.webhook_timeout_seconds),
    )
    dispatcher = Dispatcher(
        store, transport, sessions, analytics, flow_tokens,
        automations=automations,
        schedule_threshold_seconds=float(dispatch.schedule_threshold_seconds),
    )
    automations.attach_sender(dispatcher.send)

    processor = ScheduledMessageProcessor(
        store, dispatcher, batch_size=int(dispatch.process_due_batch_size),
    )
    poller = ScheduledMessagePoller(processor, interval_s=float(dispatch.poll_interval_seconds))
    campaigns = CampaignSender(
        store, dispatcher, analytics, max_retries=int(dispatch.campaign_max_retries),
    )

    webhooks = None
    if isinstance(transport, GraphAPIClient):
        webhooks = WebhookProcessor(transport, dispatcher, sessions, store)

    logger.info("messaging_service_created",
                store=type(store).__name__, transport=type(transport).__name__)
    return MessagingService(
        settings=settings,
        store=store,
        transport=transport,
        sessions=sessions,
        analytics=analytics,
        flow_tokens=flow_tokens,
        automations=automations,
        dispatcher=dispatcher,
        processor=processor,
        poller=poller,
        campaigns=campaigns,
        webhooks=webhooks,
    )
