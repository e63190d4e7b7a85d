"""
Automation Engine — runs stored automations when a messaging event fires.

Automations are pure event → action mappings:
  template  send a template through the Dispatcher
  webhook   HTTP request to a configured URL (httpx)
  tag       union tags into the session context

Loop prevention:
  Every event carries a causation chain, the ids of the automations whose
  actions led to it. An automation is skipped when it already appears in the
  chain, when it produced the triggering message itself, or when the chain
  reached `max_depth`. Sends made by an automation extend the chain by the
  automation's own id.

One failing automation never blocks the others; failures are recorded as
`automation.failed` analytics events.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx

from channels.base import AutomationError
from context.sessions import SessionManager
from core.analytics import AnalyticsRecorder
from database.store_base import BaseMessagingStore
from models.schemas import (
    ActionType, Automation, EventType, Message, MessageDirection,
    SendRequest, SendResult, Session, TemplateContent,
)
from utils.conditions import evaluate_conditions, event_data
from utils.side_effects import non_fatal

logger = structlog.get_logger()

SendCallable = Callable[[SendRequest], Awaitable[SendResult]]


@dataclass
class AutomationContext:
    session: Optional[Session] = None
    message: Optional[Message] = None
    payload: dict[str, Any] = field(default_factory=dict)
    causation: list[str] = field(default_factory=list)
    skip_automation_id: Optional[str] = None

    def to_data(self, event_type: str) -> dict[str, Any]:
        """Event data as seen by conditions and webhook bodies."""
        return event_data(event_type, self.session, self.message, self.payload)


@dataclass
class AutomationOutcome:
    automation_id: str
    name: str
    status: str                       # executed | skipped | failed
    reason: Optional[str] = None
    result: dict[str, Any] = field(default_factory=dict)


class AutomationEngine:
    def __init__(
        self,
        store: BaseMessagingStore,
        sessions: SessionManager,
        analytics: AnalyticsRecorder,
        send: Optional[SendCallable] = None,
        batch_size: int = 50,
        max_depth: int = 3,
        webhook_timeout: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.store = store
        self.sessions = sessions
        self.analytics = analytics
        self.send = send
        self.batch_size = batch_size
        self.max_depth = max_depth
        self.webhook_timeout = webhook_timeout
        self._client = http_client

    def attach_sender(self, send: SendCallable) -> None:
        self.send = send

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.webhook_timeout)
        return self._client

    # ── Run ───────────────────────────────────────────────────

    async def run_automations(
        self, event_type: str, context: Optional[AutomationContext] = None,
    ) -> list[AutomationOutcome]:
        context = context or AutomationContext()
        automations: list[Automation] = []
        async with non_fatal("load_automations", event_type=event_type):
            automations = await self.store.list_active_automations(
                event_type, limit=self.batch_size,
            )
        if not automations:
            return []

        data = context.to_data(event_type)
        outcomes: list[AutomationOutcome] = []

        for automation in automations:
            reason = self._skip_reason(automation, context)
            if reason:
                logger.info("automation_skipped",
                            automation_id=automation.id, event_type=event_type, reason=reason)
                outcomes.append(AutomationOutcome(automation.id, automation.name, "skipped", reason))
                continue

            if not evaluate_conditions(automation.conditions, data):
                outcomes.append(AutomationOutcome(
                    automation.id, automation.name, "skipped", "conditions_not_met",
                ))
                continue

            outcomes.append(await self._execute(automation, event_type, context, data))

        return outcomes

    def _skip_reason(self, automation: Automation, context: AutomationContext) -> Optional[str]:
        if context.skip_automation_id and automation.id == context.skip_automation_id:
            return "triggered_by_own_message"
        if automation.id in context.causation:
            return "already_in_causation_chain"
        if len(context.causation) >= self.max_depth:
            return "max_depth_reached"
        return None

    async def _execute(
        self,
        automation: Automation,
        event_type: str,
        context: AutomationContext,
        data: dict[str, Any],
    ) -> AutomationOutcome:
        session_id = context.session.id if context.session else None
        message_id = context.message.id if context.message else None

        await self.analytics.record(
            EventType.AUTOMATION_TRIGGERED,
            session_id=session_id, message_id=message_id, automation_id=automation.id,
            payload={"trigger": event_type, "action_type": ActionType(automation.action_type).value},
        )

        handlers = {
            ActionType.TEMPLATE: self._run_template,
            ActionType.WEBHOOK: self._run_webhook,
            ActionType.TAG: self._run_tag,
        }
        try:
            handler = handlers[ActionType(automation.action_type)]
            result = await handler(automation, event_type, context, data)
        except Exception as e:
            logger.error("automation_failed",
                         automation_id=automation.id, event_type=event_type, error=str(e))
            await self.analytics.record(
                EventType.AUTOMATION_FAILED,
                session_id=session_id, message_id=message_id, automation_id=automation.id,
                payload={"trigger": event_type, "error": str(e)},
            )
            return AutomationOutcome(automation.id, automation.name, "failed", str(e))

        logger.info("automation_executed",
                    automation_id=automation.id, event_type=event_type,
                    action_type=ActionType(automation.action_type).value)
        return AutomationOutcome(automation.id, automation.name, "executed", result=result)

    # ── Actions ───────────────────────────────────────────────

    async def _run_template(
        self, automation: Automation, event_type: str,
        context: AutomationContext, data: dict[str, Any],
    ) -> dict[str, Any]:
        config = automation.action_config
        name = config.get("template_name") or config.get("name")
        if not name:
            raise AutomationError("template action needs template_name")
        to = config.get("to") or self._target_phone(context)
        if not to:
            raise AutomationError("template action could not resolve a recipient")
        if self.send is None:
            raise AutomationError("no dispatcher attached for template actions")

        request = SendRequest(
            to=to,
            template=TemplateContent(
                name=name,
                language=config.get("language") or config.get("language_code") or "en_US",
                header_params=config.get("header_params") or [],
                body_params=config.get("body_params") or [],
                button_params=config.get("button_params") or [],
            ),
            contact_id=context.session.contact_id if context.session else None,
            metadata={"automation_id": automation.id, "trigger_event": event_type},
            automation_id=automation.id,
            causation=[*context.causation, automation.id],
        )
        result = await self.send(request)
        if not result.success:
            raise AutomationError(result.error or "template send failed")
        return {"message_id": result.message_id}

    @staticmethod
    def _target_phone(context: AutomationContext) -> Optional[str]:
        if context.session and context.session.phone_number:
            return context.session.phone_number
        message = context.message
        if message is None:
            return None
        if message.direction == MessageDirection.INBOUND:
            return message.from_address or None
        return message.to or None

    async def _run_webhook(
        self, automation: Automation, event_type: str,
        context: AutomationContext, data: dict[str, Any],
    ) -> dict[str, Any]:
        config = automation.action_config
        url = config.get("url")
        if not url:
            raise AutomationError("webhook action needs url")
        method = str(config.get("method") or "POST").upper()
        headers = {"Content-Type": "application/json", **(config.get("headers") or {})}
        body = {
            "automation": {"id": automation.id, "name": automation.name},
            "event_type": event_type,
            "session": data["session"],
            "message": data["message"],
            "payload": data["payload"],
        }
        client = await self._get_client()
        response = await client.request(method, url, json=body, headers=headers)
        response.raise_for_status()
        return {"status_code": response.status_code}

    async def _run_tag(
        self, automation: Automation, event_type: str,
        context: AutomationContext, data: dict[str, Any],
    ) -> dict[str, Any]:
        tags = automation.action_config.get("tags") or []
        if isinstance(tags, str):
            tags = [tags]
        tags = [t.strip() for t in tags if isinstance(t, str) and t.strip()]
        if not tags:
            raise AutomationError("tag action needs at least one tag")
        if context.session is None:
            raise AutomationError("tag action needs a session")
        session = await self.sessions.add_tags(context.session, tags)
        context.session = session
        return {"tags": session.context.tags if session else tags}

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
