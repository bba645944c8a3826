"""
Core data models for the flow engine.
These are the universal types shared across all modules.

Flow documents are authored by the visual editor in camelCase
(sourceNodeId, variableName, ...). Every model accepts both the
camelCase alias and the snake_case field name.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    ALL = "all"
    VOICE = "voice"
    ASTERISK = "asterisk"
    WHATSAPP = "whatsapp"
    WEBCHAT = "webchat"
    SMS = "sms"
    TELEGRAM = "telegram"
    API = "api"

    @property
    def voice_capable(self) -> bool:
        return self in (ChannelType.VOICE, ChannelType.ASTERISK)


class NodeType(str, Enum):
    # Common to chat and telephony
    MESSAGE = "message"
    INPUT = "input"
    CONDITION = "condition"
    API_REQUEST = "api_request"
    MENU = "menu"
    WAIT = "wait"
    GOTO = "goto"
    MEDIA = "media"
    END = "end"

    # Telephony
    ANSWER = "answer"
    HANGUP = "hangup"
    DIAL = "dial"
    PLAYBACK = "playback"
    RECORD = "record"
    QUEUE = "queue"
    VOICEMAIL = "voicemail"
    TTS = "tts"
    GOTOIF = "gotoif"

    # Chatbot
    WEBHOOK = "webhook"
    TYPING = "typing"
    LOCATION = "location"
    FILE = "file"
    CONTACT = "contact"


# Node kinds that only make sense on a live call
VOICE_ONLY_NODES = frozenset({
    NodeType.DIAL, NodeType.QUEUE, NodeType.VOICEMAIL,
    NodeType.ANSWER, NodeType.HANGUP, NodeType.RECORD,
})


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"
    FAILED = "failed"


class WaitingFor(str, Enum):
    NONE = "none"
    INPUT = "input"
    API = "api"
    TIMER = "timer"


class MessageDirection(str, Enum):
    INBOUND = "in"
    OUTBOUND = "out"


class VariableTier(str, Enum):
    GLOBAL = "global"
    FLOW = "flow"
    SESSION = "session"


class EventKind(str, Enum):
    MESSAGE = "message"
    DTMF = "dtmf"
    CALL_START = "call_start"
    HANGUP = "hangup"
    CLOSE = "close"
    TIMER = "timer"
    IDLE_TIMEOUT = "idle_timeout"

    @property
    def is_terminal(self) -> bool:
        return self in (EventKind.HANGUP, EventKind.CLOSE)


class ActionKind(str, Enum):
    TEXT = "text"
    MEDIA = "media"
    DTMF_PROMPT = "dtmf_prompt"
    DIAL = "dial"
    HANGUP = "hangup"
    ANSWER = "answer"
    PLAYBACK = "playback"
    TTS = "tts"
    QUEUE = "queue"
    VOICEMAIL = "voicemail"
    RECORD = "record"
    TYPING = "typing"
    LOCATION = "location"
    CONTACT = "contact"


# ──────────────────────────────────────────────────────────────
#  Flow definition: nodes, edges, triggers, variables
# ──────────────────────────────────────────────────────────────

class Node(_Model):
    id: str
    type: NodeType = Field(alias="nodeType")
    name: str = ""
    data: dict[str, Any] = {}
    supported_channels: Optional[list[ChannelType]] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> str:
        return str(v)

    def supports(self, channel: ChannelType) -> bool:
        if not self.supported_channels or ChannelType.ALL in self.supported_channels:
            return True
        if channel in self.supported_channels:
            return True
        # "voice" in the editor covers every telephony channel
        return channel.voice_capable and ChannelType.VOICE in self.supported_channels


EdgeCondition = Union[str, dict[str, Any], None]


class Edge(_Model):
    id: str = ""
    source: str = Field(alias="sourceNodeId")
    target: str = Field(alias="targetNodeId")
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    label: Optional[str] = None
    condition: EdgeCondition = None

    @field_validator("id", "source", "target", mode="before")
    @classmethod
    def _coerce_ids(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @property
    def is_default(self) -> bool:
        """An edge with no condition is unconditional."""
        c = self.condition
        if c is None:
            return True
        if isinstance(c, str):
            return not c.strip()
        return not c

    @property
    def handle(self) -> str:
        """Routing handle: sourceHandle, falling back to the label."""
        return (self.source_handle or self.label or "").strip().lower()


class Trigger(_Model):
    id: str = ""
    flow_id: str = ""
    trigger_type: str = "inbound_message"
    channel_type: ChannelType = ChannelType.ALL
    configuration: dict[str, Any] = {}
    active: bool = True

    @field_validator("id", "flow_id", mode="before")
    @classmethod
    def _coerce_ids(cls, v: Any) -> str:
        return "" if v is None else str(v)


class Variable(_Model):
    name: str
    default_value: Any = ""
    description: str = ""
    scope: VariableTier = VariableTier.GLOBAL


class Flow(_Model):
    """
    A flow document as produced by the editor.

    Immutable once activated: FlowRepository wraps it in a FlowGraph and
    assigns the version; later edits become a new version.
    """
    id: str
    name: str = ""
    description: str = ""
    flow_type: str = "standard"                   # standard | ivr | chatbot
    active: bool = True
    version: int = 0
    entry_node_id: Optional[str] = None
    nodes: list[Node] = []
    edges: list[Edge] = []
    triggers: list[Trigger] = []
    variables: list[Variable] = []
    metadata: dict[str, Any] = {}

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> str:
        return str(v)

    @field_validator("entry_node_id", mode="before")
    @classmethod
    def _coerce_entry(cls, v: Any) -> Optional[str]:
        return None if v in (None, "") else str(v)


# ──────────────────────────────────────────────────────────────
#  Runtime: conversations, messages, events, actions
# ──────────────────────────────────────────────────────────────

class Conversation(_Model):
    """One running instance of a flow for one external user on one channel."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    flow_id: str
    flow_version: int = 0
    channel_id: str = ""
    channel_type: ChannelType = ChannelType.WEBCHAT
    external_user_id: str
    current_node_id: Optional[str] = None
    status: ConversationStatus = ConversationStatus.ACTIVE
    waiting_for: WaitingFor = WaitingFor.NONE
    user_data: dict[str, Any] = {}                # session-tier variables
    node_state: dict[str, dict[str, Any]] = {}    # node_id -> retry counters etc.
    processed_event_ids: list[str] = []
    end_reason: str = ""
    wake_at: Optional[datetime] = None
    started_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    ended_at: Optional[datetime] = None
    metadata: dict[str, Any] = {}

    @property
    def is_active(self) -> bool:
        return self.status == ConversationStatus.ACTIVE


class Message(_Model):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    conversation_id: str
    node_id: Optional[str] = None
    direction: MessageDirection
    content: str = ""
    media_url: Optional[str] = None
    metadata: dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=_utcnow)


class InboundEvent(_Model):
    """Normalised inbound event produced by a channel adapter or the scheduler."""
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    channel_type: ChannelType
    channel_id: str = ""
    external_user_id: str = ""
    kind: EventKind = EventKind.MESSAGE
    text: str = ""
    media_url: Optional[str] = None
    trigger_type: str = "inbound_message"
    attributes: dict[str, Any] = {}               # matched against trigger configuration
    payload: dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=_utcnow)


class MenuOption(_Model):
    text: str = ""
    value: str = ""

    @field_validator("value", "text", mode="before")
    @classmethod
    def _coerce(cls, v: Any) -> str:
        return "" if v is None else str(v)


class OutboundAction(_Model):
    kind: ActionKind = ActionKind.TEXT
    text: str = ""
    media_url: Optional[str] = None
    media_type: str = ""
    options: list[MenuOption] = []
    params: dict[str, Any] = {}


class ScheduledTimer(_Model):
    """Durable timer record owned by the Scheduler."""
    id: str
    conversation_id: str
    kind: str = "timer"                           # timer | idle
    node_id: Optional[str] = None
    due_at: datetime
