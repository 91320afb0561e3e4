"""
Core data models for the flow engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

WINDOW_DURATION = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    STICKER = "sticker"
    REACTION = "reaction"
    LOCATION = "location"
    CONTACTS = "contacts"
    BUTTON_REPLY = "button_reply"
    LIST_REPLY = "list_reply"
    FORM_REPLY = "form_reply"
    INTERACTIVE = "interactive"
    TEMPLATE = "template"
    UNKNOWN = "unknown"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class ExecutionStatus(str, Enum):
    RUNNING = "running"              # transient, never persisted
    WAITING_INPUT = "waiting_input"
    COMPLETED = "completed"
    ERROR = "error"


class CompletionReason(str, Enum):
    FLOW_COMPLETED = "flow_completed"
    USER_STOPPED = "user_stopped"
    USER_ENDED = "user-ended"
    FORCED = "forced"
    EXPIRED = "expired"


# ──────────────────────────────────────────────────────────────
#  Identities & conversations
# ──────────────────────────────────────────────────────────────

class Identity(BaseModel):
    """A channel participant: a customer phone or the business account."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    phone: str
    name: str = ""
    is_business: bool = False
    created_at: datetime = Field(default_factory=_utcnow)


class Conversation(BaseModel):
    """Pair of participants plus the 24-hour window bookkeeping."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    customer_id: str
    business_id: str
    last_message: str = ""
    last_message_at: Optional[datetime] = None
    last_customer_message_at: Optional[datetime] = None
    is_window_open: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def window_open_at(self, now: Optional[datetime] = None) -> bool:
        if self.last_customer_message_at is None:
            return False
        now = now or _utcnow()
        return now - self.last_customer_message_at < WINDOW_DURATION

    def refresh_window(self, now: Optional[datetime] = None) -> bool:
        self.is_window_open = self.window_open_at(now)
        return self.is_window_open


class StoredMessage(BaseModel):
    """Generic message log row; provider_message_id is the idempotency key."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    conversation_id: str
    provider_message_id: Optional[str] = None
    direction: MessageDirection
    sender_id: str = ""
    type: MessageType = MessageType.TEXT
    content: dict[str, Any] = Field(default_factory=dict)
    status: MessageStatus = MessageStatus.PENDING
    error: Optional[dict[str, Any]] = None
    reply_to: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Ingestion - normalized provider events
# ──────────────────────────────────────────────────────────────

class InboundMessage(BaseModel):
    provider_message_id: str
    sender_phone: str
    sender_name: str = ""
    recipient_phone: str = ""
    type: MessageType = MessageType.TEXT
    content: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)
    reply_to: Optional[str] = None

    def to_user_input(self) -> "UserInput":
        c = self.content
        if self.type == MessageType.BUTTON_REPLY:
            return UserInput(text=c.get("title", ""), button_id=c.get("button_id"))
        if self.type == MessageType.LIST_REPLY:
            return UserInput(text=c.get("title", ""), list_row_id=c.get("list_id"))
        if self.type == MessageType.FORM_REPLY:
            return UserInput(form_response=c.get("response_data") or {},
                             flow_token=c.get("flow_token"))
        return UserInput(text=c.get("text") or c.get("caption") or "")


class StatusUpdate(BaseModel):
    provider_message_id: str
    status: str
    recipient_phone: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)
    error: Optional[dict[str, Any]] = None


# ──────────────────────────────────────────────────────────────
#  Engine I/O
# ──────────────────────────────────────────────────────────────

class UserInput(BaseModel):
    """Reply fields extracted from an inbound event (or typed into the harness)."""
    text: str = ""
    button_id: Optional[str] = None
    list_row_id: Optional[str] = None
    form_response: Optional[dict[str, Any]] = None
    flow_token: Optional[str] = None

    @property
    def selection_id(self) -> Optional[str]:
        return self.button_id or self.list_row_id


class OutboundMessage(BaseModel):
    """A send side effect produced by an executor."""
    type: str = "text"                 # text | buttons | list | form | template
    text: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    node_id: str = ""
    provider_message_id: Optional[str] = None


class ExecutionState(BaseModel):
    """Where one conversation (or test session) is in a flow."""
    conversation_id: str
    flow_id: str
    current_node_id: Optional[str] = None
    variables: dict[str, Any] = Field(default_factory=dict)
    status: ExecutionStatus = ExecutionStatus.RUNNING
    executed_node_ids: list[str] = Field(default_factory=list)
    node_outputs: dict[str, str] = Field(default_factory=dict)   # node_id → output variable name
    is_test_session: bool = False
    test_metadata: Optional[dict[str, Any]] = None
    completion_reason: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None                          # waiting_input deadline

    @model_validator(mode="after")
    def _test_metadata_requires_test_session(self) -> "ExecutionState":
        if self.test_metadata is not None and not self.is_test_session:
            raise ValueError("test_metadata is only allowed on test sessions")
        return self

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.status != ExecutionStatus.WAITING_INPUT or self.expires_at is None:
            return False
        return (now or _utcnow()) >= self.expires_at
