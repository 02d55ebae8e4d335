# /chatflow/models/events.py

import uuid
from enum import Enum
from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field

from chatflow.models.flow import utcnow

# Messages exchanged with collaborators: inbound chat events, outbound send
# requests, activity events and the deferred work items that re-enter the engine.


class InboundEvent(BaseModel):
    """A chat event normalized by a channel adapter."""
    chat_id: str
    user_id: str
    text: Optional[str] = None
    selection: Optional[str] = Field(default=None, description="Id or value of a pressed button")
    attachments: List[Dict[str, Any]] = Field(default_factory=list)
    message_id: Optional[str] = None
    channel_id: Optional[str] = None
    received_at: datetime = Field(default_factory=utcnow)

    @property
    def input_value(self) -> Optional[str]:
        return self.selection if self.selection is not None else self.text


class KeyboardButton(BaseModel):
    text: str
    value: Optional[str] = None


class OutboundMessage(BaseModel):
    """A send request handed to the channel adapter."""
    chat_id: Optional[str] = Field(default=None, description="None means the current conversation: the session chat, or every participant in a group run")
    text: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    keyboard: List[KeyboardButton] = Field(default_factory=list)
    inline: bool = True
    idempotency_key: Optional[str] = None


class ActivityLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class ActivityEvent(BaseModel):
    kind: str
    level: ActivityLevel = ActivityLevel.INFO
    message: str
    owner_id: Optional[str] = None
    flow_id: Optional[str] = None
    session_key: Optional[str] = None
    group_session_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class DeferredStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class DeferredWorkItem(BaseModel):
    """
    A scheduled continuation consumed by the engine's resume path.

    Exactly one of `target_session_key` / `target_group_session_id` is set.
    `idempotency_key` is unique: enqueueing the same key twice is a no-op and
    outbound sends derived from the item are de-duplicated with it.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    target_session_key: Optional[str] = None
    target_group_session_id: Optional[str] = None
    due_at: datetime = Field(default_factory=utcnow)
    idempotency_key: str
    kind: str = "resume"
    payload: Dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    status: DeferredStatus = DeferredStatus.PENDING
    lease_until: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
