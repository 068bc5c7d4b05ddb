"""
Core data models for the flow engine.
These are the universal types shared across all modules.

Workflows arrive from the graph editor as loosely shaped JSON records. Every
node payload is parsed here, once, through a fixed per-type schema table so
the interpreter never sees an open-ended dict.
"""
from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import (
    AliasChoices, BaseModel, ConfigDict, Field, ValidationError,
    field_validator, model_validator,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def split_keywords(raw: Any) -> list[str]:
    """Normalize a keyword list: split on commas, trim, lowercase, drop empties."""
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = [raw]
    keywords: list[str] = []
    for item in raw:
        for part in str(item).split(","):
            part = part.strip().lower()
            if part and part not in keywords:
                keywords.append(part)
    return keywords


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class NodeType(str, Enum):
    TRIGGER = "trigger"
    MESSAGE = "message"
    INPUT = "input"
    BUTTON = "button"
    MENU = "menu"
    CONDITION = "condition"
    LOOP = "loop"
    DELAY = "delay"


# Nodes that suspend the session until an external event arrives
WAITING_NODE_TYPES = frozenset({NodeType.INPUT, NodeType.BUTTON, NodeType.MENU, NodeType.DELAY})
CHOICE_NODE_TYPES = frozenset({NodeType.BUTTON, NodeType.MENU})


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    GT = "gt"
    LT = "lt"


class DelayUnit(str, Enum):
    SEC = "sec"
    MIN = "min"
    HOUR = "hour"

    @property
    def seconds(self) -> int:
        return {"sec": 1, "min": 60, "hour": 3600}[self.value]


class AwaitingKind(str, Enum):
    NONE = "none"
    INPUT = "input"
    CHOICE = "choice"
    TIMER = "timer"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    TERMINATED = "terminated"
    STALLED = "stalled"


class TimerKind(str, Enum):
    DELAY = "delay"
    INACTIVITY = "inactivity"


class TimerStatus(str, Enum):
    PENDING = "pending"
    FIRING = "firing"
    FIRED = "fired"
    CANCELLED = "cancelled"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


# ──────────────────────────────────────────────────────────────
#  Node payloads — one closed schema per node type
# ──────────────────────────────────────────────────────────────

class _NodeData(BaseModel):
    # Editor records carry UI-only keys (colors, callbacks); they are dropped here
    model_config = ConfigDict(extra="ignore", frozen=True)


class TriggerData(_NodeData):
    keywords: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("keywords", "triggerKeyword", "trigger_keyword"),
    )

    @field_validator("keywords", mode="before")
    @classmethod
    def _split(cls, v: Any) -> list[str]:
        return split_keywords(v)


class MessageData(_NodeData):
    text: str = Field("", validation_alias=AliasChoices("text", "label"))


class InputData(_NodeData):
    question: str
    variable_name: str = Field(
        validation_alias=AliasChoices("variable_name", "variableName", "variable"),
    )

    @field_validator("variable_name")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("variable_name must not be empty")
        return v


class ButtonData(_NodeData):
    label: str = ""
    options: list[str] = Field(min_length=1)


class MenuData(_NodeData):
    label: str = ""
    header: str = ""
    body: str = ""
    footer: str = ""
    button_label: str = Field(
        "View Options",
        validation_alias=AliasChoices("button_label", "buttonLabel", "button"),
    )
    options: list[str] = Field(min_length=1, max_length=10)


class ConditionData(_NodeData):
    variable: str
    operator: ConditionOperator
    value: str = ""

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> str:
        return "" if v is None else str(v)


class LoopData(_NodeData):
    count: int = Field(3, ge=1, le=50)


MAX_DELAY_SECONDS = 366 * 24 * 3600


class DelayData(_NodeData):
    duration: float = Field(
        5, ge=0, allow_inf_nan=False,
        validation_alias=AliasChoices("duration", "delayTime", "delay_time"),
    )
    unit: DelayUnit = DelayUnit.SEC

    @model_validator(mode="after")
    def _bounded(self) -> "DelayData":
        if self.seconds > MAX_DELAY_SECONDS:
            raise ValueError(f"delay of {self.duration:g} {self.unit.value} exceeds {MAX_DELAY_SECONDS // 86400} days")
        return self

    @property
    def seconds(self) -> float:
        return self.duration * self.unit.seconds


NodeData = Union[
    TriggerData, MessageData, InputData, ButtonData,
    MenuData, ConditionData, LoopData, DelayData,
]

NODE_DATA_SCHEMAS: dict[NodeType, type[_NodeData]] = {
    NodeType.TRIGGER: TriggerData,
    NodeType.MESSAGE: MessageData,
    NodeType.INPUT: InputData,
    NodeType.BUTTON: ButtonData,
    NodeType.MENU: MenuData,
    NodeType.CONDITION: ConditionData,
    NodeType.LOOP: LoopData,
    NodeType.DELAY: DelayData,
}


def _format_errors(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'data'}: {err['msg']}"
        for err in exc.errors()
    )


# ──────────────────────────────────────────────────────────────
#  Graph — nodes and edges
# ──────────────────────────────────────────────────────────────

class Node(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    type: NodeType
    data: NodeData

    @model_validator(mode="before")
    @classmethod
    def _parse_data(cls, values: Any) -> Any:
        """Route the raw payload through the schema registered for the node type."""
        if not isinstance(values, dict):
            return values
        try:
            node_type = NodeType(values.get("type"))
        except ValueError:
            return values  # field validation reports the bad type
        raw = values.get("data")
        if raw is None:
            raw = {}
        schema = NODE_DATA_SCHEMAS[node_type]
        if isinstance(raw, schema):
            return values
        if not isinstance(raw, dict):
            raise ValueError(f"{node_type.value} node data must be an object")
        try:
            parsed = schema.model_validate(raw)
        except ValidationError as e:
            raise ValueError(f"invalid {node_type.value} data: {_format_errors(e)}") from None
        return {**values, "data": parsed}


class Edge(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=_new_id)
    source_node_id: str = Field(validation_alias=AliasChoices("source_node_id", "sourceNodeId", "source"))
    source_handle: Optional[str] = Field(
        None, validation_alias=AliasChoices("source_handle", "sourceHandle"),
    )
    target_node_id: str = Field(validation_alias=AliasChoices("target_node_id", "targetNodeId", "target"))

    @field_validator("source_handle", mode="before")
    @classmethod
    def _blank_handle(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class WorkflowSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    session_timeout_minutes: int = Field(
        5, ge=0,
        validation_alias=AliasChoices("session_timeout_minutes", "sessionTimeoutMinutes", "sessionTimeout"),
    )
    reset_on_inactivity: bool = Field(
        True, validation_alias=AliasChoices("reset_on_inactivity", "resetOnInactivity"),
    )


class WorkflowDefinition(BaseModel):
    """
    A published chatbot flow: a directed graph of typed nodes.

    Immutable once activated — changes go through a re-publish, which creates
    a new version and re-runs validation.
    """
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=_new_id)
    name: str = "Untitled Agent"
    version: int = 1
    nodes: list[Node] = []
    edges: list[Edge] = []
    trigger_keywords: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("trigger_keywords", "triggerKeywords", "triggerKeyword"),
    )
    is_active: bool = Field(False, validation_alias=AliasChoices("is_active", "isActive"))
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    created_at: datetime = Field(
        default_factory=_utcnow, validation_alias=AliasChoices("created_at", "createdAt"),
    )
    activated_at: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("activated_at", "activatedAt"),
    )

    @field_validator("nodes", "edges", mode="before")
    @classmethod
    def _decode_json(cls, v: Any) -> Any:
        # The editor persists nodes/edges as JSON-encoded strings
        if isinstance(v, str):
            return json.loads(v) if v.strip() else []
        return v

    @field_validator("trigger_keywords", mode="before")
    @classmethod
    def _split(cls, v: Any) -> list[str]:
        return split_keywords(v)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> WorkflowDefinition:
        """Build a definition from a persisted editor record."""
        return cls.model_validate(record)

    def get_node(self, node_id: str) -> Optional[Node]:
        return next((n for n in self.nodes if n.id == node_id), None)

    @property
    def trigger_nodes(self) -> list[Node]:
        return [n for n in self.nodes if n.type == NodeType.TRIGGER]

    def outgoing(self, node_id: str) -> list[Edge]:
        """Outgoing edges in declaration order."""
        return [e for e in self.edges if e.source_node_id == node_id]

    def keyword_set(self) -> set[str]:
        """All trigger keywords: workflow-level plus the trigger node's own."""
        keywords = set(self.trigger_keywords)
        for node in self.trigger_nodes:
            keywords.update(node.data.keywords)
        return keywords


# ──────────────────────────────────────────────────────────────
#  Session — one contact's walk through one workflow
# ──────────────────────────────────────────────────────────────

class AwaitingState(BaseModel):
    """Why a session is suspended, and at which node."""
    kind: AwaitingKind = AwaitingKind.NONE
    node_id: Optional[str] = None
    variable_name: Optional[str] = None
    handles: list[str] = []
    timer_id: Optional[str] = None

    @classmethod
    def idle(cls) -> AwaitingState:
        return cls()

    @classmethod
    def for_input(cls, node_id: str, variable_name: str) -> AwaitingState:
        return cls(kind=AwaitingKind.INPUT, node_id=node_id, variable_name=variable_name)

    @classmethod
    def for_choice(cls, node_id: str, handles: list[str]) -> AwaitingState:
        return cls(kind=AwaitingKind.CHOICE, node_id=node_id, handles=list(handles))

    @classmethod
    def for_timer(cls, node_id: str, timer_id: str) -> AwaitingState:
        return cls(kind=AwaitingKind.TIMER, node_id=node_id, timer_id=timer_id)

    @property
    def is_waiting(self) -> bool:
        return self.kind != AwaitingKind.NONE


class Session(BaseModel):
    id: str = Field(default_factory=_new_id)
    contact_id: str
    workflow_id: str
    workflow_version: int = 1
    current_node_id: str
    context: dict[str, str] = {}
    awaiting: AwaitingState = Field(default_factory=AwaitingState)
    loop_counters: dict[str, int] = {}
    choice_retries: int = 0
    status: SessionStatus = SessionStatus.ACTIVE
    termination_reason: str = ""
    revision: int = 0                         # bumped on every applied step
    recent_message_ids: list[str] = []        # inbound de-duplication window
    last_activity_at: datetime = Field(default_factory=_utcnow)
    created_at: datetime = Field(default_factory=_utcnow)
    ended_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def has_seen_message(self, message_id: Optional[str]) -> bool:
        return bool(message_id) and message_id in self.recent_message_ids

    def remember_message(self, message_id: Optional[str], limit: int = 20) -> None:
        """Keep only the newest `limit` ids; a redelivery older than that is not recognised."""
        if not message_id:
            return
        self.recent_message_ids.append(message_id)
        del self.recent_message_ids[:-limit]


# ──────────────────────────────────────────────────────────────
#  Events — interpreter input
# ──────────────────────────────────────────────────────────────

class SessionStart(BaseModel):
    model_config = ConfigDict(frozen=True)


class UserReply(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    node_id: Optional[str] = None             # node the reply answers, when known
    message_id: Optional[str] = None


class ChoiceSelected(BaseModel):
    model_config = ConfigDict(frozen=True)

    selection: Union[int, str]                # option index or handle id ("option-1")
    node_id: Optional[str] = None
    message_id: Optional[str] = None


class TimerFired(BaseModel):
    model_config = ConfigDict(frozen=True)

    timer_id: str


FlowEvent = Union[SessionStart, UserReply, ChoiceSelected, TimerFired]


# ──────────────────────────────────────────────────────────────
#  Outbound actions and timers — interpreter output
# ──────────────────────────────────────────────────────────────

class MessageContent(BaseModel):
    """Payload handed to the messaging gateway."""
    text: str
    options: Optional[list[str]] = None
    header: str = ""
    footer: str = ""
    button_label: str = ""
    action_id: str = ""


class OutboundAction(BaseModel):
    id: str = Field(default_factory=_new_id)
    contact_id: str
    session_id: str = ""
    node_id: str = ""
    rendered_text: str
    options: Optional[list[str]] = None
    header: str = ""
    footer: str = ""
    button_label: str = ""
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    delivery_error: str = ""
    channel_message_id: str = ""
    created_at: datetime = Field(default_factory=_utcnow)

    def to_content(self) -> MessageContent:
        return MessageContent(
            text=self.rendered_text,
            options=self.options,
            header=self.header,
            footer=self.footer,
            button_label=self.button_label,
            action_id=self.id,
        )


class TimerRequest(BaseModel):
    """A delay the interpreter wants armed before the session can resume."""
    timer_id: str
    node_id: str
    delay_seconds: float


class TimerRecord(BaseModel):
    id: str
    kind: TimerKind
    session_id: str
    contact_id: str
    node_id: Optional[str] = None
    due_at: datetime
    status: TimerStatus = TimerStatus.PENDING
    lease_until: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)

    def is_claimable(self, now: datetime) -> bool:
        if self.due_at > now:
            return False
        if self.status == TimerStatus.PENDING:
            return True
        # a firing timer whose lease lapsed was abandoned mid-delivery
        return self.status == TimerStatus.FIRING and self.lease_until is not None and self.lease_until <= now


# ──────────────────────────────────────────────────────────────
#  Gateway-facing models
# ──────────────────────────────────────────────────────────────

class InboundMessage(BaseModel):
    """An inbound event from the messaging gateway: free text or a choice."""
    contact_id: str
    text: Optional[str] = None
    selection: Optional[Union[int, str]] = None
    message_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)

    @property
    def is_selection(self) -> bool:
        return self.selection is not None


class DeliveryResult(BaseModel):
    status: DeliveryStatus
    channel_message_id: str = ""
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status != DeliveryStatus.FAILED
