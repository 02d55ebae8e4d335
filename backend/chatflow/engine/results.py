# /chatflow/engine/results.py

"""
Value types returned by node handlers.

A handler never touches a store for session state directly: it describes what
should happen through a `NodeResult` and the executor applies it. The only
exceptions are group membership changes, which need atomic store operations
and are performed by the group handlers themselves.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any, Union

from chatflow.models.events import OutboundMessage
from chatflow.models.session import AwaitState


@dataclass(frozen=True)
class Goto:
    node_id: Optional[str]


@dataclass(frozen=True)
class Branch:
    """A boolean decision already evaluated by the handler."""
    outcome: bool
    true_node_id: Optional[str]
    false_node_id: Optional[str]

    @property
    def node_id(self) -> Optional[str]:
        return self.true_node_id if self.outcome else self.false_node_id


@dataclass(frozen=True)
class Pause:
    """Stop on the current node until input arrives or a deferred resume fires."""
    resume: AwaitState
    resume_at: Optional[datetime] = None


@dataclass(frozen=True)
class Terminal:
    pass


Transition = Union[Goto, Branch, Pause, Terminal]


@dataclass
class DeferredRequest:
    """Deferred work a handler wants enqueued once the step is persisted."""
    due_at: datetime
    idempotency_key: str
    kind: str = "resume"
    payload: Dict[str, Any] = field(default_factory=dict)
    group_session_id: Optional[str] = None


@dataclass
class NodeResult:
    transition: Transition
    session_vars: Dict[str, Any] = field(default_factory=dict)
    user_vars: Dict[str, Any] = field(default_factory=dict)
    global_vars: Dict[str, Any] = field(default_factory=dict)
    group_vars: Dict[str, Any] = field(default_factory=dict)
    outbound: List[OutboundMessage] = field(default_factory=list)
    deferred: List[DeferredRequest] = field(default_factory=list)
    # Set by group handlers after they changed membership; the executor reloads
    # the group and re-binds the session. An empty string detaches it.
    group_binding: Optional[str] = None
    # With a Terminal transition: also complete the group the session belongs to.
    complete_group: bool = False

    @classmethod
    def goto(cls, node_id: Optional[str], **kwargs) -> "NodeResult":
        return cls(transition=Goto(node_id), **kwargs)

    @classmethod
    def terminal(cls, **kwargs) -> "NodeResult":
        return cls(transition=Terminal(), **kwargs)

    @classmethod
    def wait_for_input(cls, **kwargs) -> "NodeResult":
        return cls(transition=Pause(AwaitState.INPUT), **kwargs)

    @classmethod
    def wait_until(cls, resume_at: datetime, **kwargs) -> "NodeResult":
        return cls(transition=Pause(AwaitState.SCHEDULE, resume_at), **kwargs)
