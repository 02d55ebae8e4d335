# /chatflow/engine/context.py

import random
from collections import ChainMap
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import httpx

from chatflow.config.settings import Settings
from chatflow.engine import templating
from chatflow.models.events import InboundEvent
from chatflow.models.flow import FlowDefinition, FlowNode
from chatflow.models.session import GroupSession, Session


@dataclass(frozen=True)
class Trigger:
    """
    What caused the current node to run.

    `event` is the inbound chat event that reached a node waiting for input,
    `resume` is a due deferred work item, and `continue` is an auto-continue
    step from the previous node.
    """
    kind: str
    event: Optional[InboundEvent] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    idempotency_key: Optional[str] = None

    @classmethod
    def from_event(cls, event: InboundEvent) -> "Trigger":
        return cls(kind="event", event=event)

    @classmethod
    def resume(cls, payload: Dict[str, Any], idempotency_key: str) -> "Trigger":
        return cls(kind="resume", payload=payload, idempotency_key=idempotency_key)

    @classmethod
    def auto(cls) -> "Trigger":
        return cls(kind="continue")

    @property
    def is_event(self) -> bool:
        return self.kind == "event"

    @property
    def is_resume(self) -> bool:
        return self.kind == "resume"

    @property
    def input_value(self) -> Optional[str]:
        return self.event.input_value if self.event else None


@dataclass
class EngineServices:
    """Collaborators handlers may call while executing."""
    settings: Settings
    sessions: Any
    groups: Any
    records: Any
    http_client: httpx.AsyncClient
    rng: random.Random
    clock: Callable[[], datetime]


@dataclass
class ExecutionContext:
    """
    Everything a handler may read for one node execution. Passed explicitly,
    never stored globally.

    `session` is None when the engine runs on behalf of a whole group
    (group broadcasts and group `advance` branches).
    """
    flow: FlowDefinition
    node: FlowNode
    session: Optional[Session]
    group: Optional[GroupSession]
    session_vars: Dict[str, Any]
    group_vars: Dict[str, Any]
    user_vars: Dict[str, Any]
    global_vars: Dict[str, Any]
    services: EngineServices
    loop_iterations: Dict[str, int] = field(default_factory=dict)
    run_version: int = 0
    step: int = 0

    @property
    def variables(self) -> ChainMap:
        """Merged lookup view, highest precedence first."""
        return ChainMap(self.session_vars, self.group_vars, self.user_vars, self.global_vars)

    @property
    def settings(self) -> Settings:
        return self.services.settings

    @property
    def owner_id(self) -> str:
        return self.flow.owner_id

    @property
    def chat_id(self) -> Optional[str]:
        return self.session.chat_id if self.session else None

    @property
    def user_id(self) -> Optional[str]:
        return self.session.user_id if self.session else None

    @property
    def cursor_id(self) -> str:
        """Identifier of the cursor this run advances: the session or the group."""
        if self.session:
            return self.session.id
        return self.group.id if self.group else ""

    def now(self) -> datetime:
        return self.services.clock()

    def step_key(self, suffix: str = "") -> str:
        """A key unique to this node visit, stable if the same step is replayed."""
        key = f"{self.cursor_id}:{self.node.id}:{self.run_version}.{self.step}"
        return f"{key}:{suffix}" if suffix else key

    def get(self, name: str, default: Any = None) -> Any:
        return templating.lookup(self.variables, name, default)

    def render(self, value: Any) -> Any:
        return templating.render_value(value, self.variables)

    def render_text(self, value: Any) -> str:
        return templating.render_text(value, self.variables)
