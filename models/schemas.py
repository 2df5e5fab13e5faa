"""
Core data models for the FlowRunner system.
These are the universal types shared across all modules.

Flow graphs arrive as editor JSON (camelCase keys, extra canvas attributes
such as ``position``). Node ``data`` is parsed into one typed model per
node type; the union is discriminated on ``type`` so a graph either parses
into fully typed nodes or is rejected as a whole.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    WHATSAPP = "whatsapp"
    INSTAGRAM = "instagram"
    FACEBOOK = "facebook"
    TELEGRAM = "telegram"
    TWITTER = "twitter"
    WEB = "web"
    EMAIL = "email"


class NodeType(str, Enum):
    START = "start"
    MESSAGE = "message"
    QUICK_REPLY = "quickReply"
    CONDITION = "condition"
    API_CALL = "apiCall"
    DELAY = "delay"
    AB_TEST = "abTest"
    HANDOFF = "handoff"
    APPOINTMENT = "appointment"
    WEBHOOK_TRIGGER = "webhookTrigger"
    EMAIL = "email"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    DROPPED = "dropped"
    HANDED_OFF = "handed_off"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.ACTIVE


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


class DelayUnit(str, Enum):
    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


class AssignTo(str, Enum):
    AVAILABLE = "available"
    SPECIFIC = "specific"
    QUEUE = "queue"


class CalendarType(str, Enum):
    GOOGLE = "google"
    OUTLOOK = "outlook"
    CUSTOM = "custom"


class SuspendKind(str, Enum):
    DELAY = "delay"
    REPLY = "reply"
    WEBHOOK = "webhook"


# Handles with a fixed meaning across node types
HANDLE_TRUE = "true"
HANDLE_FALSE = "false"
HANDLE_BOOKED = "booked"
HANDLE_CANCELLED = "cancelled"
HANDLE_ERROR = "error"


# ──────────────────────────────────────────────────────────────
#  Node data — one model per node type
# ──────────────────────────────────────────────────────────────

class NodeData(BaseModel):
    """Attributes shared by every node type."""
    model_config = ConfigDict(populate_by_name=True)

    label: str = ""


class StartData(NodeData):
    pass


class MessageData(NodeData):
    message: str = ""


class QuickReplyButton(BaseModel):
    id: str = ""
    title: str = ""


def _default_buttons() -> list[QuickReplyButton]:
    return [
        QuickReplyButton(id="btn-1", title="Option 1"),
        QuickReplyButton(id="btn-2", title="Option 2"),
    ]


class QuickReplyData(NodeData):
    body: str = "Select an option:"
    buttons: list[QuickReplyButton] = Field(default_factory=_default_buttons)
    save_as: Optional[str] = Field(default=None, alias="saveAs")

    @field_validator("buttons")
    @classmethod
    def _fill_button_ids(cls, buttons: list[QuickReplyButton]) -> list[QuickReplyButton]:
        if len(buttons) > 3:
            raise ValueError("quickReply supports at most 3 buttons")
        # Editor falls back to positional handles for buttons without ids
        return [
            b if b.id else QuickReplyButton(id=f"btn-{idx}", title=b.title)
            for idx, b in enumerate(buttons)
        ]


class ConditionData(NodeData):
    variable: str = "user_input"
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Any = ""


class ApiCallData(NodeData):
    method: str = "GET"
    url: str = ""
    save_as: Optional[str] = Field(default=None, alias="saveAs")
    headers: dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None


class DelayData(NodeData):
    duration: float = 5
    unit: DelayUnit = DelayUnit.MINUTES

    @property
    def seconds(self) -> float:
        factor = {
            DelayUnit.SECONDS: 1,
            DelayUnit.MINUTES: 60,
            DelayUnit.HOURS: 3600,
            DelayUnit.DAYS: 86400,
        }[self.unit]
        return max(self.duration, 0) * factor


class AbVariant(BaseModel):
    name: str
    percentage: float = 0

    @property
    def handle(self) -> str:
        return f"variant-{self.name.lower()}"


def _default_variants() -> list[AbVariant]:
    return [AbVariant(name="A", percentage=50), AbVariant(name="B", percentage=50)]


class AbTestData(NodeData):
    variants: list[AbVariant] = Field(default_factory=_default_variants)


class HandoffData(NodeData):
    assign_to: AssignTo = Field(default=AssignTo.AVAILABLE, alias="assignTo")
    agent_id: Optional[str] = Field(default=None, alias="agentId")
    queue_name: Optional[str] = Field(default=None, alias="queueName")
    message: str = ""


class AppointmentData(NodeData):
    calendar_type: CalendarType = Field(default=CalendarType.CUSTOM, alias="calendarType")
    duration: int = 30                  # minutes
    buffer: int = 0                     # minutes between bookings
    confirmation_message: str = Field(default="", alias="confirmationMessage")


class WebhookTriggerData(NodeData):
    webhook_url: str = Field(default="", alias="webhookUrl")
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    wait_for_response: bool = Field(default=False, alias="waitForResponse")
    timeout_seconds: Optional[int] = Field(default=None, alias="timeoutSeconds")
    save_as: str = Field(default="webhook_response", alias="saveAs")


class EmailData(NodeData):
    to: str = "{{contact.email}}"
    subject: str = ""
    body: str = ""
    template: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Nodes & edges
# ──────────────────────────────────────────────────────────────

class _BaseNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str

    @property
    def label(self) -> str:
        return self.data.label  # type: ignore[attr-defined]


class StartNode(_BaseNode):
    type: Literal["start"] = "start"
    data: StartData = Field(default_factory=StartData)


class MessageNode(_BaseNode):
    type: Literal["message"] = "message"
    data: MessageData = Field(default_factory=MessageData)


class QuickReplyNode(_BaseNode):
    type: Literal["quickReply"] = "quickReply"
    data: QuickReplyData = Field(default_factory=QuickReplyData)


class ConditionNode(_BaseNode):
    type: Literal["condition"] = "condition"
    data: ConditionData = Field(default_factory=ConditionData)


class ApiCallNode(_BaseNode):
    type: Literal["apiCall"] = "apiCall"
    data: ApiCallData = Field(default_factory=ApiCallData)


class DelayNode(_BaseNode):
    type: Literal["delay"] = "delay"
    data: DelayData = Field(default_factory=DelayData)


class AbTestNode(_BaseNode):
    type: Literal["abTest"] = "abTest"
    data: AbTestData = Field(default_factory=AbTestData)


class HandoffNode(_BaseNode):
    type: Literal["handoff"] = "handoff"
    data: HandoffData = Field(default_factory=HandoffData)


class AppointmentNode(_BaseNode):
    type: Literal["appointment"] = "appointment"
    data: AppointmentData = Field(default_factory=AppointmentData)


class WebhookTriggerNode(_BaseNode):
    type: Literal["webhookTrigger"] = "webhookTrigger"
    data: WebhookTriggerData = Field(default_factory=WebhookTriggerData)


class EmailNode(_BaseNode):
    type: Literal["email"] = "email"
    data: EmailData = Field(default_factory=EmailData)


FlowNode = Annotated[
    Union[
        StartNode, MessageNode, QuickReplyNode, ConditionNode, ApiCallNode,
        DelayNode, AbTestNode, HandoffNode, AppointmentNode,
        WebhookTriggerNode, EmailNode,
    ],
    Field(discriminator="type"),
]


class FlowEdge(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: Optional[str] = None
    source: str
    target: str
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle")

    @field_validator("source_handle", mode="before")
    @classmethod
    def _empty_handle_is_none(cls, v: Any) -> Any:
        return v or None


# ──────────────────────────────────────────────────────────────
#  Bot
# ──────────────────────────────────────────────────────────────

class Bot(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str = ""
    is_active: bool = True
    trigger_keywords: list[str] = Field(default_factory=list)
    flow_data: dict[str, Any] = Field(default_factory=lambda: {"nodes": [], "edges": []})
    channel: ChannelType = ChannelType.WHATSAPP
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def matches(self, text: str) -> Optional[str]:
        """
        Return the trigger keyword matched by ``text``.

        Keywords are matched as case-insensitive substrings. A bot with no
        keywords matches every message and reports an empty keyword.
        """
        if not self.trigger_keywords:
            return ""
        lowered = (text or "").lower()
        for kw in self.trigger_keywords:
            if kw and kw.lower() in lowered:
                return kw
        return None


# ──────────────────────────────────────────────────────────────
#  Session — one end-user's live run through a flow graph
# ──────────────────────────────────────────────────────────────

class PendingResume(BaseModel):
    """Wake condition persisted on a suspended session."""
    kind: SuspendKind
    node_id: str
    wake_at: Optional[datetime] = None          # delay
    deadline: Optional[datetime] = None         # webhook response window
    correlation_id: Optional[str] = None        # webhook
    reprompts: int = 0                          # quickReply misses so far

    def due_at(self) -> Optional[datetime]:
        return self.wake_at or self.deadline


class Session(BaseModel):
    id: str = Field(default_factory=_new_id)
    bot_id: str
    user_id: str
    conversation_id: str = ""
    channel: ChannelType = ChannelType.WHATSAPP
    status: SessionStatus = SessionStatus.ACTIVE
    current_node_id: Optional[str] = None
    variables: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    trigger_keyword: Optional[str] = None

    # Engine bookkeeping
    flow_snapshot: dict[str, Any] = Field(default_factory=dict)
    bot_version: int = 1
    pending: Optional[PendingResume] = None
    ab_draws: dict[str, float] = Field(default_factory=dict)
    ab_epoch: int = 0                           # bumped when A/B buckets are reset
    seen_events: list[str] = Field(default_factory=list)
    last_activity_at: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE


# ──────────────────────────────────────────────────────────────
#  Interaction ledger
# ──────────────────────────────────────────────────────────────

class InteractionRecord(BaseModel):
    """Immutable log entry for one node visited by one session."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    session_id: str
    bot_id: str = ""
    seq: int = 0
    node_id: str
    node_type: str
    node_label: str = ""
    user_response: Optional[str] = None
    is_drop_off: bool = False
    interacted_at: datetime = Field(default_factory=utcnow)


class InteractionDraft(BaseModel):
    """An interaction produced by the engine, not yet written to the ledger."""
    node_id: str
    node_type: str
    node_label: str = ""
    user_response: Optional[str] = None
    is_drop_off: bool = False
    interacted_at: datetime
    step: int = 0                               # position within the advance that produced it


# ──────────────────────────────────────────────────────────────
#  Inbound / outbound events
# ──────────────────────────────────────────────────────────────

class InboundEvent(BaseModel):
    """Message or button press delivered by a channel adapter."""
    model_config = ConfigDict(populate_by_name=True)

    bot_id: Optional[str] = Field(default=None, alias="botCandidateId")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    user_id: str = Field(alias="userId")
    text: str = ""
    button_payload: Optional[str] = Field(default=None, alias="buttonPayload")
    timestamp: datetime = Field(default_factory=utcnow)
    channel: ChannelType = ChannelType.WHATSAPP
    message_id: Optional[str] = Field(default=None, alias="messageId")

    @property
    def dedup_key(self) -> str:
        if self.message_id:
            return f"msg:{self.message_id}"
        return f"evt:{self.timestamp.isoformat()}:{self.button_payload or ''}:{self.text}"


class WebhookReply(BaseModel):
    """Answer to a webhookTrigger node waiting for a response."""
    correlation_id: str
    payload: Any = None
    timestamp: datetime = Field(default_factory=utcnow)


class TimerTick(BaseModel):
    """Wake signal fired by the scheduler for a suspended session."""
    timestamp: datetime = Field(default_factory=utcnow)


class OutboundMessage(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    channel: ChannelType
    rendered_text: str
    buttons: list[QuickReplyButton] = Field(default_factory=list)
    session_id: str = ""
    node_id: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        """Payload shape expected by the channel send collaborator."""
        payload: dict[str, Any] = {
            "userId": self.user_id,
            "channel": self.channel.value,
            "renderedText": self.rendered_text,
        }
        if self.buttons:
            payload["buttons"] = [b.model_dump() for b in self.buttons]
        return payload


class HandoffRequest(BaseModel):
    """Assignment details passed to the human-agent subsystem."""
    session_id: str
    node_id: str
    assign_to: AssignTo
    agent_id: Optional[str] = None
    queue_name: Optional[str] = None
