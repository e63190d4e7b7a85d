"""
Campaign Sender — one approved template to a list of recipients.

A Campaign moves draft → sending → completed. Recipients are sent one at a
time through Dispatcher.send, so every campaign message gets the normal
session, persistence and analytics bookkeeping.

Per recipient failure:
  - permanent provider codes (opt-out, unsupported number) end the recipient
  - other failures are retried on the next run, up to `max_retries`
A run that leaves recipients in `retry`, or stops outside the send window,
parks the Campaign in `scheduled`; `start` picks it up again.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime
from typing import Any, Optional

from channels.base import ConfigurationError, InvalidRequest, NotFound
from core.analytics import AnalyticsRecorder
from core.dispatcher import Dispatcher
from database.store_base import BaseMessagingStore
from models.schemas import (
    Campaign, CampaignRecipient, CampaignStatus, EventType, RecipientStatus,
    SendRequest, SendResult, TemplateContent, utcnow,
)
from utils.phone import digits_only, normalize_e164

logger = structlog.get_logger()

# Graph error codes that will not succeed on a later attempt
PERMANENT_ERROR_CODES = {"100", "131047", "131049", "131050"}
OPT_OUT_ERROR_CODE = "131050"

_EDITABLE = (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED)
_STARTABLE = (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED, CampaignStatus.FAILED)
_SENDABLE = [RecipientStatus.PENDING, RecipientStatus.RETRY]


def in_send_window(campaign: Campaign, now: datetime) -> bool:
    """Hours are UTC; a window with start > end wraps past midnight."""
    start, end = campaign.send_window_start, campaign.send_window_end
    if start is None or end is None or start == end:
        return True
    if start < end:
        return start <= now.hour < end
    return now.hour >= start or now.hour < end


def template_body_params(variables: dict[str, Any]) -> list[str]:
    """Numeric keys ("1", "2", ...) in order; named keys are not positional."""
    numbered = sorted((k for k in variables if str(k).isdigit()), key=lambda k: int(k))
    return [str(variables[k]) for k in numbered]


class CampaignSender:
    def __init__(
        self,
        store: BaseMessagingStore,
        dispatcher: Dispatcher,
        analytics: AnalyticsRecorder,
        max_retries: int = 3,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.analytics = analytics
        self.max_retries = max_retries

    # ══════════════════════════════════════════════════════════
    #  SETUP
    # ══════════════════════════════════════════════════════════

    async def create(self, campaign: Campaign) -> Campaign:
        if not campaign.template_name:
            raise InvalidRequest("Campaign template_name is required")
        stored = await self.store.create_campaign(campaign)
        logger.info("campaign_created", campaign_id=stored.id, template=stored.template_name)
        return stored

    async def get(self, campaign_id: str) -> Campaign:
        campaign = await self.store.get_campaign(campaign_id)
        if campaign is None:
            raise NotFound(f"Campaign {campaign_id} not found")
        return campaign

    async def add_recipients(
        self, campaign_id: str, recipients: list[CampaignRecipient],
    ) -> Campaign:
        """Normalize numbers and attach; numbers already on the list are skipped."""
        campaign = await self.get(campaign_id)
        if campaign.status not in _EDITABLE:
            raise InvalidRequest(
                f"Recipients cannot be added to a {campaign.status.value} campaign"
            )

        valid: list[CampaignRecipient] = []
        for recipient in recipients:
            phone = normalize_e164(recipient.phone_number or "")
            if not digits_only(phone):
                logger.warning("campaign_recipient_invalid",
                               campaign_id=campaign_id, phone=recipient.phone_number)
                continue
            valid.append(recipient.model_copy(update={"phone_number": phone}))
        if not valid:
            raise InvalidRequest("No valid recipients")

        total = await self.store.add_campaign_recipients(campaign_id, valid)
        return await self.store.update_campaign(campaign_id, total_recipients=total)

    # ══════════════════════════════════════════════════════════
    #  SENDING
    # ══════════════════════════════════════════════════════════

    async def start(self, campaign_id: str) -> Campaign:
        campaign = await self.get(campaign_id)
        if campaign.status not in _STARTABLE:
            raise InvalidRequest(f"Campaign is already {campaign.status.value}")
        pending = await self.store.list_campaign_recipients(campaign_id, statuses=_SENDABLE, limit=1)
        if not pending:
            raise InvalidRequest("Campaign has no pending recipients")

        campaign = await self.store.update_campaign(
            campaign_id,
            status=CampaignStatus.SENDING,
            started_at=campaign.started_at or utcnow(),
        )
        await self.analytics.record(
            EventType.CAMPAIGN_STARTED,
            payload={"campaign_id": campaign_id, "total_recipients": campaign.total_recipients},
        )
        logger.info("campaign_started", campaign_id=campaign_id)
        return campaign

    async def run(self, campaign_id: str, now: Optional[datetime] = None) -> Campaign:
        """Send to every pending or retry recipient of a `sending` Campaign."""
        campaign = await self.get(campaign_id)
        if campaign.status != CampaignStatus.SENDING:
            logger.info("campaign_not_sending", campaign_id=campaign_id, status=campaign.status.value)
            return campaign

        sent, failed = campaign.sent_count, campaign.failed_count
        recipients = await self.store.list_campaign_recipients(campaign_id, statuses=_SENDABLE)
        for i, recipient in enumerate(recipients):
            if not in_send_window(campaign, now or utcnow()):
                logger.info("campaign_outside_send_window", campaign_id=campaign_id,
                            remaining=len(recipients) - i)
                return await self.store.update_campaign(
                    campaign_id, status=CampaignStatus.SCHEDULED,
                    sent_count=sent, failed_count=failed,
                )

            if i and campaign.rate_limit > 0:
                await asyncio.sleep(60.0 / campaign.rate_limit)

            await self.store.update_campaign_recipient(recipient.id, status=RecipientStatus.SENDING)
            try:
                result = await self._send_one(campaign, recipient)
            except ConfigurationError as e:
                await self.store.update_campaign_recipient(recipient.id, status=recipient.status)
                await self.store.update_campaign(
                    campaign_id, status=CampaignStatus.FAILED,
                    sent_count=sent, failed_count=failed,
                )
                logger.error("campaign_misconfigured", campaign_id=campaign_id, error=str(e))
                raise

            if result.success:
                sent += 1
                await self.store.update_campaign_recipient(
                    recipient.id,
                    status=RecipientStatus.SENT,
                    provider_message_id=result.message_id,
                    message_id=result.db_record.id if result.db_record else None,
                    sent_at=utcnow(),
                )
            elif self._final_failure(recipient, result):
                failed += 1
                status = (RecipientStatus.OPTED_OUT if result.error_code == OPT_OUT_ERROR_CODE
                          else RecipientStatus.FAILED)
                await self.store.update_campaign_recipient(
                    recipient.id, status=status,
                    error_code=result.error_code, error_message=result.error,
                    failed_at=utcnow(),
                )
            else:
                await self.store.update_campaign_recipient(
                    recipient.id, status=RecipientStatus.RETRY,
                    error_code=result.error_code, error_message=result.error,
                    retry_count=recipient.retry_count + 1,
                )

        return await self._finish(campaign_id, sent, failed)

    async def _send_one(self, campaign: Campaign, recipient: CampaignRecipient) -> SendResult:
        variables = {**campaign.template_variables, **recipient.variables}
        request = SendRequest(
            to=recipient.phone_number,
            template=TemplateContent(
                name=campaign.template_name,
                language=campaign.template_language,
                body_params=template_body_params(variables),
            ),
            context={"name": recipient.name} if recipient.name else {},
            metadata={"campaign_id": campaign.id, "recipient_id": recipient.id},
        )
        try:
            return await self.dispatcher.send(request)
        except InvalidRequest as e:
            return SendResult(success=False, error=str(e), error_code="invalid_request")

    def _final_failure(self, recipient: CampaignRecipient, result: SendResult) -> bool:
        if result.error_code in PERMANENT_ERROR_CODES or result.error_code == "invalid_request":
            return True
        return recipient.retry_count >= self.max_retries

    async def _finish(self, campaign_id: str, sent: int, failed: int) -> Campaign:
        retrying = await self.store.list_campaign_recipients(
            campaign_id, statuses=[RecipientStatus.RETRY], limit=1,
        )
        if retrying:
            logger.info("campaign_retry_pending", campaign_id=campaign_id, sent=sent, failed=failed)
            return await self.store.update_campaign(
                campaign_id, status=CampaignStatus.SCHEDULED,
                sent_count=sent, failed_count=failed,
            )

        campaign = await self.store.update_campaign(
            campaign_id, status=CampaignStatus.COMPLETED,
            sent_count=sent, failed_count=failed, completed_at=utcnow(),
        )
        await self.analytics.record(
            EventType.CAMPAIGN_COMPLETED,
            payload={"campaign_id": campaign_id, "sent": sent, "failed": failed},
        )
        logger.info("campaign_completed", campaign_id=campaign_id, sent=sent, failed=failed)
        return campaign
