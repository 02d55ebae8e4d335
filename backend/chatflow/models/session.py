# /chatflow/models/session.py

import uuid
from enum import Enum
from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field

from chatflow.models.flow import utcnow


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"


class GroupSessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class AwaitState(str, Enum):
    """What a session is waiting for before its current node runs again."""
    INPUT = "input"
    SCHEDULE = "schedule"


class SessionError(BaseModel):
    code: str
    message: str
    node_id: Optional[str] = None
    at: datetime = Field(default_factory=utcnow)


def make_session_key(flow_id: str, chat_id: str) -> str:
    return f"{flow_id}:{chat_id}"


class Session(BaseModel):
    """Execution cursor and variable bag for one individual conversation."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    session_key: str
    flow_id: str
    chat_id: str
    user_id: str
    current_node_id: Optional[str] = None
    awaiting: Optional[AwaitState] = None
    resume_at: Optional[datetime] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    group_session_id: Optional[str] = None
    status: SessionStatus = SessionStatus.ACTIVE
    error: Optional[SessionError] = None
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    @property
    def is_errored(self) -> bool:
        return self.is_active and self.error is not None


class GroupSession(BaseModel):
    """Shared cursor, shared variables and participant set for a multi-party conversation."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    flow_id: str
    owner_id: str = ""
    current_node_id: Optional[str] = None
    awaiting: Optional[AwaitState] = None
    shared_variables: Dict[str, Any] = Field(default_factory=dict)
    participant_ids: List[str] = Field(default_factory=list)
    participant_chats: Dict[str, str] = Field(default_factory=dict)  # user_id -> chat_id
    metadata: Dict[str, Any] = Field(default_factory=dict)
    max_size: int = 10000
    status: GroupSessionStatus = GroupSessionStatus.ACTIVE
    version: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == GroupSessionStatus.ACTIVE

    @property
    def participant_count(self) -> int:
        return len(self.participant_ids)

    @property
    def is_full(self) -> bool:
        return self.participant_count >= self.max_size

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participant_ids
