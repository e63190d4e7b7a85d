"""
Core data models for the messaging engine.
These are the universal types shared across all modules: persisted records
(Message, Session, Automation, AnalyticsEvent, Template, Campaign) and the send-request
types consumed by the Payload Builder and the Dispatcher.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MessageStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class ActionType(str, Enum):
    TEMPLATE = "template"
    WEBHOOK = "webhook"
    TAG = "tag"


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    STICKER = "sticker"


class InteractiveKind(str, Enum):
    BUTTON = "button"
    LIST = "list"
    PRODUCT = "product"
    PRODUCT_LIST = "product_list"


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    COMPLETED = "completed"
    FAILED = "failed"


class RecipientStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    RETRY = "retry"
    FAILED = "failed"
    OPTED_OUT = "opted_out"


class EventType:
    MESSAGE_SCHEDULED = "message.scheduled"
    MESSAGE_SENT = "message.sent"
    MESSAGE_FAILED = "message.failed"
    MESSAGE_STATUS = "message.status"
    MESSAGE_DELIVERED = "message.delivered"
    MESSAGE_READ = "message.read"
    MESSAGE_RECEIVED = "message.received"
    AUTOMATION_TRIGGERED = "automation.triggered"
    AUTOMATION_FAILED = "automation.failed"
    CAMPAIGN_STARTED = "campaign.started"
    CAMPAIGN_COMPLETED = "campaign.completed"


# ──────────────────────────────────────────────────────────────
#  Status transitions
# ──────────────────────────────────────────────────────────────

_STATUS_RANK = {
    MessageStatus.SCHEDULED: 0,
    MessageStatus.IN_PROGRESS: 1,
    MessageStatus.SENT: 2,
    MessageStatus.DELIVERED: 3,
    MessageStatus.READ: 4,
}


def can_transition(current: MessageStatus, new: MessageStatus) -> bool:
    """
    Forward-only status moves. `failed` is terminal and reachable from every
    other status; a scheduled message must be sent before it can be delivered.
    """
    current, new = MessageStatus(current), MessageStatus(new)
    if current == MessageStatus.FAILED:
        return False
    if new == MessageStatus.FAILED:
        return True
    if current in (MessageStatus.SCHEDULED, MessageStatus.IN_PROGRESS) and new in (
        MessageStatus.DELIVERED, MessageStatus.READ,
    ):
        return False
    return _STATUS_RANK[new] > _STATUS_RANK[current]


# ──────────────────────────────────────────────────────────────
#  Message: one outbound or inbound communication
# ──────────────────────────────────────────────────────────────

class Message(BaseModel):
    id: str = Field(default_factory=new_id)
    to: str
    from_address: str = ""
    preview: str = ""                         # rendered human-readable text
    status: MessageStatus = MessageStatus.SENT
    direction: MessageDirection = MessageDirection.OUTBOUND
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    metadata: dict[str, Any] = {}
    payload: dict[str, Any] = {}              # raw wire envelope
    session_id: Optional[str] = None
    automation_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Session: a standing conversation with one contact
# ──────────────────────────────────────────────────────────────

def _clean_tags(tags: Any) -> list[str]:
    if isinstance(tags, str):
        tags = [tags]
    out: list[str] = []
    for tag in tags or []:
        if not isinstance(tag, str):
            continue
        tag = tag.strip()
        if tag and tag not in out:
            out.append(tag)
    return out


class SessionContext(BaseModel):
    """
    Typed conversation state accumulated across turns.
    Every field has its own merge rule; see `merge`.
    """
    tags: list[str] = []
    flow_tokens: list[str] = []
    last_flow_token: Optional[str] = None
    last_screen: Optional[str] = None
    last_action: Optional[str] = None
    last_message_id: Optional[str] = None
    extra: dict[str, Any] = {}

    def merge(self, patch: Union[SessionContext, dict[str, Any], None]) -> SessionContext:
        """Return a new context with `patch` merged in."""
        if patch is None:
            return self.model_copy(deep=True)
        if isinstance(patch, SessionContext):
            patch = patch.model_dump(exclude_defaults=True)
        patch = dict(patch)

        known = set(SessionContext.model_fields)
        extra_patch = dict(patch.pop("extra", None) or {})
        # unknown top-level keys land in `extra`
        for key in [k for k in patch if k not in known]:
            extra_patch[key] = patch.pop(key)

        tags = list(self.tags)
        for tag in _clean_tags(patch.get("tags")):
            if tag not in tags:
                tags.append(tag)

        flow_tokens = list(self.flow_tokens)
        for token in patch.get("flow_tokens") or []:
            if token and token not in flow_tokens:
                flow_tokens.append(token)

        merged = SessionContext(
            tags=tags,
            flow_tokens=flow_tokens,
            last_flow_token=patch.get("last_flow_token") or self.last_flow_token,
            last_screen=patch.get("last_screen") or self.last_screen,
            last_action=patch.get("last_action") or self.last_action,
            last_message_id=patch.get("last_message_id") or self.last_message_id,
            extra={**self.extra, **extra_patch},
        )
        if merged.last_flow_token and merged.last_flow_token not in merged.flow_tokens:
            merged.flow_tokens.append(merged.last_flow_token)
        return merged


class Session(BaseModel):
    id: str = Field(default_factory=new_id)
    phone_number: Optional[str] = None
    contact_id: Optional[str] = None          # provider wa_id / external contact id
    flow_token: Optional[str] = None
    context: SessionContext = Field(default_factory=SessionContext)
    last_interaction: datetime = Field(default_factory=utcnow)
    archived: bool = False
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Automation: trigger event → action
# ──────────────────────────────────────────────────────────────

class AutomationCondition(BaseModel):
    field: str                                # dot notation, e.g. "message.status"
    operator: str = "eq"                      # see utils.conditions.OPERATORS
    value: Any = None


class Automation(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = ""
    trigger_type: str
    action_type: ActionType
    action_config: dict[str, Any] = {}
    conditions: list[AutomationCondition] = []
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class AnalyticsEvent(BaseModel):
    id: str = Field(default_factory=new_id)
    event_type: str
    session_id: Optional[str] = None
    message_id: Optional[str] = None
    automation_id: Optional[str] = None
    payload: dict[str, Any] = {}
    observed_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Campaign: one template sent to a list of recipients
# ──────────────────────────────────────────────────────────────

class Campaign(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = ""
    template_name: str
    template_language: str = "en_US"
    template_variables: dict[str, Any] = {}   # numeric keys map to body params
    status: CampaignStatus = CampaignStatus.DRAFT
    rate_limit: int = 10                      # messages per minute, 0 = no pause
    send_window_start: Optional[int] = None   # hour of day, UTC
    send_window_end: Optional[int] = None
    total_recipients: int = 0
    sent_count: int = 0
    failed_count: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CampaignRecipient(BaseModel):
    id: str = Field(default_factory=new_id)
    campaign_id: str = ""
    phone_number: str
    name: Optional[str] = None
    variables: dict[str, Any] = {}
    status: RecipientStatus = RecipientStatus.PENDING
    provider_message_id: Optional[str] = None
    message_id: Optional[str] = None          # stored Message id
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    sent_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Template cache
# ──────────────────────────────────────────────────────────────

class FlowButtonDefault(BaseModel):
    """Action parameters previously observed for one FLOW button."""
    index: int
    text: Optional[str] = None
    action: dict[str, Any] = {}


class Template(BaseModel):
    name: str
    language: str = "en_US"
    category: str = ""
    status: str = ""
    body: str = ""
    components: list[dict[str, Any]] = []
    variables: list[str] = []
    flow_defaults: list[FlowButtonDefault] = []
    updated_at: datetime = Field(default_factory=utcnow)


class FlowTokenUsage(BaseModel):
    index: int
    text: Optional[str] = None
    token: str
    assigned_at: str


# ──────────────────────────────────────────────────────────────
#  Send request: exactly one content kind
# ──────────────────────────────────────────────────────────────

class MediaContent(BaseModel):
    kind: MediaKind = MediaKind.IMAGE
    link: Optional[str] = None
    id: Optional[str] = None                  # previously uploaded provider media id
    caption: Optional[str] = None
    filename: Optional[str] = None


class ReplyButton(BaseModel):
    id: str
    title: str


class ListRow(BaseModel):
    id: str
    title: str
    description: Optional[str] = None


class ListSection(BaseModel):
    title: Optional[str] = None
    rows: list[ListRow] = []


class ProductSection(BaseModel):
    title: Optional[str] = None
    product_retailer_ids: list[str] = []


class InteractiveContent(BaseModel):
    kind: InteractiveKind
    body: Optional[str] = None
    header: Optional[str] = None
    footer: Optional[str] = None
    buttons: list[ReplyButton] = []                  # button
    button_text: Optional[str] = None                # list
    sections: list[ListSection] = []                 # list
    catalog_id: Optional[str] = None                 # product, product_list
    product_retailer_id: Optional[str] = None        # product
    product_sections: list[ProductSection] = []      # product_list


class ReactionContent(BaseModel):
    message_id: str = ""
    emoji: str = ""


class TemplateContent(BaseModel):
    name: str = ""
    language: str = "en_US"
    header_params: list[Any] = []
    body_params: list[Any] = []
    button_params: list[dict[str, Any]] = []         # shaped button components


class SendRequest(BaseModel):
    to: str
    message: Optional[str] = None
    preview_url: bool = False
    media: Optional[MediaContent] = None
    interactive: Optional[InteractiveContent] = None
    reaction: Optional[ReactionContent] = None
    template: Optional[TemplateContent] = None

    schedule_for: Optional[datetime] = None
    save_to_db: bool = True

    # session hints
    contact_id: Optional[str] = None
    flow_token: Optional[str] = None
    context: dict[str, Any] = {}
    metadata: dict[str, Any] = {}

    # automation lineage: the automation that produced this send and the
    # chain of automation ids that led to it
    automation_id: Optional[str] = None
    causation: list[str] = []

    @property
    def content_kinds(self) -> list[str]:
        kinds = []
        if self.message is not None:
            kinds.append("text")
        for name in ("media", "interactive", "reaction", "template"):
            if getattr(self, name) is not None:
                kinds.append(name)
        return kinds


class SendResult(BaseModel):
    success: bool
    message_id: Optional[str] = None          # provider message id
    error: Optional[str] = None
    error_code: Optional[str] = None          # provider error code, e.g. "131050"
    db_record: Optional[Message] = None
    scheduled: bool = False


# ──────────────────────────────────────────────────────────────
#  Provider webhook entries
# ──────────────────────────────────────────────────────────────

class WebhookStatus(BaseModel):
    """One delivery receipt from a provider status webhook."""
    provider_message_id: str
    status: str
    recipient_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    error: Optional[str] = None


class InboundMessage(BaseModel):
    """One message a contact sent to the business number."""
    provider_message_id: str
    from_number: str
    contact_name: str = ""
    type: str = "text"
    text: str = ""
    flow_token: Optional[str] = None
    flow_response: dict[str, Any] = {}
    metadata: dict[str, Any] = {}
    timestamp: Optional[datetime] = None


class ParsedWebhook(BaseModel):
    statuses: list[WebhookStatus] = []
    messages: list[InboundMessage] = []


class MediaUpload(BaseModel):
    """A file stored with the provider, referenced later by `MediaContent.id`."""
    media_id: str
    kind: MediaKind
    mime_type: str
    filename: str
    size: int
