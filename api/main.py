"""
FastAPI Application — HTTP surface of the messaging engine.

Provides:
- POST /messages                 send now or schedule
- POST /messages/process-due     run the Scheduled Message Processor once
- POST /events/{event_type}      record a custom event and run its automations
- GET  /webhooks/whatsapp        subscription verification
- POST /webhooks/whatsapp        delivery receipts and inbound messages
- POST /templates/sync           refresh the template cache from the provider
- POST /media                    upload a file (raw body), returns the provider media id
- POST /campaigns                create a draft Campaign
- GET  /campaigns/{id}           Campaign with counts
- POST /campaigns/{id}/recipients add recipients (duplicates skipped)
- GET  /campaigns/{id}/recipients list recipients, optionally by status
- POST /campaigns/{id}/send      start sending in the background
- GET  /health                   configuration and side-effect diagnostics
"""
from __future__ import annotations

import json
import structlog
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from channels.base import ConfigurationError, InvalidRequest, NotFound, RemoteAPIError
from channels.whatsapp_client import GraphAPIClient
from core.service import MessagingService, create_messaging_service
from database.session import close_db, init_db
from database.store import SqlMessagingStore
from models.schemas import Campaign, CampaignRecipient, RecipientStatus, SendRequest
from utils.side_effects import side_effect_metrics

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class EventRequest(BaseModel):
    session_id: Optional[str] = None
    message_id: Optional[str] = None
    payload: dict[str, Any] = {}


class RecipientsRequest(BaseModel):
    recipients: list[CampaignRecipient]


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(service: Optional[MessagingService] = None) -> FastAPI:
    service = service or create_messaging_service()
    uses_sql = isinstance(service.store, SqlMessagingStore)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if uses_sql:
            await init_db()
        if service.settings.dispatch.poller_enabled:
            await service.poller.start()
        logger.info("messaging_api_started",
                    store=type(service.store).__name__,
                    poller=service.poller.running)
        yield

        await service.close()
        if uses_sql:
            await close_db()
        logger.info("messaging_api_stopped")

    app = FastAPI(
        title="Messaging Engine API",
        description="Outbound messaging dispatch and automation engine",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.service = service

    def _client() -> GraphAPIClient:
        if not isinstance(service.transport, GraphAPIClient):
            raise HTTPException(503, "Graph API client not configured")
        return service.transport

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        config = service.transport.config_status() if isinstance(service.transport, GraphAPIClient) else {}
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "store": type(service.store).__name__,
            "whatsapp": config,
            "poller_running": service.poller.running,
            "side_effects_dropped": side_effect_metrics.to_dict(),
        }

    # ══════════════════════════════════════════════════════════
    #  MESSAGES
    # ══════════════════════════════════════════════════════════

    @app.post("/messages")
    async def send_message(req: SendRequest):
        try:
            result = await service.dispatcher.send(req)
        except InvalidRequest as e:
            raise HTTPException(400, str(e))
        except ConfigurationError as e:
            logger.error("send_configuration_error", error=str(e))
            raise HTTPException(500, str(e))
        return result.model_dump(mode="json")

    @app.post("/messages/process-due")
    async def process_due(limit: int = Query(default=0, ge=0)):
        try:
            summary = await service.processor.process_due(limit=limit or None)
        except ConfigurationError as e:
            raise HTTPException(500, str(e))
        return summary.to_dict()

    # ══════════════════════════════════════════════════════════
    #  EVENTS
    # ══════════════════════════════════════════════════════════

    @app.post("/events/{event_type}")
    async def emit_event(event_type: str, req: EventRequest):
        outcomes = await service.dispatcher.emit_event(
            event_type,
            session_id=req.session_id,
            message_id=req.message_id,
            payload=req.payload,
        )
        return {"event_type": event_type, "automations": [asdict(o) for o in outcomes]}

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS: WhatsApp
    # ══════════════════════════════════════════════════════════

    @app.get("/webhooks/whatsapp")
    async def whatsapp_verify(request: Request):
        challenge = _client().verify_webhook(dict(request.query_params))
        if challenge:
            return PlainTextResponse(challenge)
        raise HTTPException(403, "Verification failed")

    @app.post("/webhooks/whatsapp")
    async def whatsapp_webhook(request: Request):
        client = _client()
        body_bytes = await request.body()

        signature = request.headers.get("X-Hub-Signature-256", "")
        if not client.verify_webhook_signature(body_bytes, signature):
            logger.warning("whatsapp_webhook_signature_invalid")
            raise HTTPException(403, "Invalid signature")

        try:
            body = json.loads(body_bytes or b"{}")
        except ValueError:
            raise HTTPException(400, "Invalid JSON body")

        counts = await service.webhooks.handle(body)
        return {"status": "ok", **counts}

    # ══════════════════════════════════════════════════════════
    #  TEMPLATES
    # ══════════════════════════════════════════════════════════

    @app.post("/templates/sync")
    async def sync_templates():
        try:
            synced = await service.flow_tokens.sync_templates(_client())
        except ConfigurationError as e:
            raise HTTPException(500, str(e))
        except RemoteAPIError as e:
            raise HTTPException(502, e.to_dict())
        return {"synced": synced}

    # ══════════════════════════════════════════════════════════
    #  MEDIA
    # ══════════════════════════════════════════════════════════

    @app.post("/media")
    async def upload_media(
        request: Request,
        filename: str = Query(default=""),
        kind: Optional[str] = Query(default=None, alias="type"),
    ):
        client = _client()
        content = await request.body()
        mime_type = request.headers.get("Content-Type", "").split(";")[0].strip()
        try:
            upload = await client.upload_media(content, filename=filename,
                                               mime_type=mime_type, kind=kind)
        except InvalidRequest as e:
            raise HTTPException(400, str(e))
        except ConfigurationError as e:
            raise HTTPException(500, str(e))
        except RemoteAPIError as e:
            raise HTTPException(502, e.to_dict())
        return upload.model_dump(mode="json")

    # ══════════════════════════════════════════════════════════
    #  CAMPAIGNS
    # ══════════════════════════════════════════════════════════

    async def _run_campaign(campaign_id: str) -> None:
        try:
            await service.campaigns.run(campaign_id)
        except Exception as e:
            logger.error("campaign_run_error", campaign_id=campaign_id, error=str(e))

    @app.post("/campaigns")
    async def create_campaign(campaign: Campaign):
        try:
            stored = await service.campaigns.create(campaign)
        except InvalidRequest as e:
            raise HTTPException(400, str(e))
        return stored.model_dump(mode="json")

    @app.get("/campaigns/{campaign_id}")
    async def get_campaign(campaign_id: str):
        try:
            campaign = await service.campaigns.get(campaign_id)
        except NotFound as e:
            raise HTTPException(404, str(e))
        return campaign.model_dump(mode="json")

    @app.post("/campaigns/{campaign_id}/recipients")
    async def add_recipients(campaign_id: str, req: RecipientsRequest):
        try:
            campaign = await service.campaigns.add_recipients(campaign_id, req.recipients)
        except NotFound as e:
            raise HTTPException(404, str(e))
        except InvalidRequest as e:
            raise HTTPException(400, str(e))
        return campaign.model_dump(mode="json")

    @app.get("/campaigns/{campaign_id}/recipients")
    async def list_recipients(campaign_id: str, status: Optional[RecipientStatus] = None):
        try:
            await service.campaigns.get(campaign_id)
        except NotFound as e:
            raise HTTPException(404, str(e))
        recipients = await service.store.list_campaign_recipients(
            campaign_id, statuses=[status] if status else None,
        )
        return {"recipients": [r.model_dump(mode="json") for r in recipients]}

    @app.post("/campaigns/{campaign_id}/send")
    async def send_campaign(campaign_id: str, background_tasks: BackgroundTasks):
        try:
            campaign = await service.campaigns.start(campaign_id)
        except NotFound as e:
            raise HTTPException(404, str(e))
        except InvalidRequest as e:
            raise HTTPException(400, str(e))
        background_tasks.add_task(_run_campaign, campaign_id)
        return campaign.model_dump(mode="json")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
