# /chatflow/engine/executor.py

"""
The flow engine: advances a session (or a group session) through a flow
graph, one inbound event or deferred resume at a time.

A run holds the lock for its cursor, executes nodes until one pauses or
terminates, then persists in a fixed order: deferred work first, then the
version-checked session write, then user/global/group variables, and only
then the outbound sends (each claimed once through the effect ledger).
"""

import random
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import structlog

from chatflow.config.settings import Settings
from chatflow.engine.context import EngineServices, ExecutionContext, Trigger
from chatflow.engine.errors import (
    NON_ROUTABLE_ERRORS, DeliveryError, FlowError, FlowInactiveError, NodeExecutionError, NodeNotFoundError,
    StepLimitExceededError,
)
from chatflow.engine.registry import HandlerRegistry
from chatflow.engine.results import Branch, Goto, NodeResult, Pause, Terminal
from chatflow.models.events import (
    ActivityEvent, ActivityLevel, DeferredWorkItem, InboundEvent, KeyboardButton, OutboundMessage,
)
from chatflow.models.flow import FlowDefinition, FlowNode, utcnow
from chatflow.models.session import (
    AwaitState, GroupSession, Session, SessionError, SessionStatus, make_session_key,
)
from chatflow.services.group_store import set_path
from chatflow.services.variable_store import GLOBAL_SCOPE, USER_SCOPE
from chatflow.utils.metrics import (
    active_runs_gauge, engine_step_histogram, inbound_events_counter, node_executions_counter,
    outbound_messages_counter, session_transitions_counter,
)

log = structlog.get_logger(__name__)


class StopReason:
    PAUSED_INPUT = "paused_input"
    PAUSED_SCHEDULE = "paused_schedule"
    COMPLETED = "completed"
    ERRORED = "errored"
    IGNORED = "ignored"
    STALE = "stale"
    DELIVERED = "delivered"


@dataclass
class ExecutionOutcome:
    stopped_reason: str
    session_key: Optional[str] = None
    session_id: Optional[str] = None
    group_session_id: Optional[str] = None
    current_node_id: Optional[str] = None
    steps: int = 0
    sent: int = 0
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stopped_reason": self.stopped_reason,
            "session_key": self.session_key,
            "session_id": self.session_id,
            "group_session_id": self.group_session_id,
            "current_node_id": self.current_node_id,
            "steps": self.steps,
            "sent": self.sent,
            "error_code": self.error_code,
        }


class _Run:
    """Working state of one engine run. Either a session run or a group run (session is None)."""

    def __init__(self, flow: FlowDefinition, session: Optional[Session], group: Optional[GroupSession],
                 user_vars: Dict[str, Any], global_vars: Dict[str, Any]):
        self.flow = flow
        self.session = session
        self.group = group
        self.group_vars: Dict[str, Any] = dict(group.shared_variables) if group else {}
        self.user_vars = user_vars
        self.global_vars = global_vars
        self.user_patch: Dict[str, Any] = {}
        self.global_patch: Dict[str, Any] = {}
        self.group_patches: Dict[str, Dict[str, Any]] = {}
        self.outbound: List[OutboundMessage] = []
        self.deferred: List[DeferredWorkItem] = []
        self.loop_iterations: Dict[str, int] = {}
        self.loop_marks: Dict[str, int] = {}
        self.steps = 0
        self.guarded_steps = 0
        self.version = session.version if session else (group.version if group else 0)
        self.complete_group = False
        self.trigger_key: Optional[str] = None

    @property
    def is_group_run(self) -> bool:
        return self.session is None

    @property
    def session_vars(self) -> Dict[str, Any]:
        # Session-scope writes in a group run land in the group's shared variables.
        return self.session.variables if self.session else self.group_vars

    @property
    def cursor(self) -> Optional[str]:
        if self.session:
            return self.session.current_node_id
        return self.group.current_node_id if self.group else None

    @cursor.setter
    def cursor(self, node_id: str):
        if self.session:
            self.session.current_node_id = node_id
        elif self.group:
            self.group.current_node_id = node_id

    def set_awaiting(self, awaiting: Optional[AwaitState], resume_at: Optional[datetime] = None):
        if self.session:
            self.session.awaiting = awaiting
            self.session.resume_at = resume_at
        elif self.group:
            self.group.awaiting = awaiting

    def apply_session_vars(self, patch: Dict[str, Any]):
        if not patch:
            return
        if self.session:
            self.session.variables.update(patch)
        else:
            self.apply_group_vars(patch)

    def apply_group_vars(self, patch: Dict[str, Any]):
        if not patch:
            return
        if self.group is None:
            log.warning("Dropping group variable writes: run is not bound to a group", keys=list(patch))
            return
        pending = self.group_patches.setdefault(self.group.id, {})
        for key, value in patch.items():
            set_path(self.group_vars, key, value)
            pending[key] = value

    def apply_user_vars(self, patch: Dict[str, Any]):
        if not patch:
            return
        if self.session is None:
            log.warning("Dropping user variable writes in a group run", keys=list(patch))
            return
        self.user_vars.update(patch)
        self.user_patch.update(patch)

    def apply_global_vars(self, patch: Dict[str, Any]):
        self.global_vars.update(patch)
        self.global_patch.update(patch)

    def bind_group(self, group: Optional[GroupSession]):
        self.group = group
        self.group_vars = dict(group.shared_variables) if group else {}
        if group:
            for key, value in self.group_patches.get(group.id, {}).items():
                set_path(self.group_vars, key, value)
        if self.session:
            self.session.group_session_id = group.id if group else None


class FlowEngine:
    def __init__(self, *, settings: Settings, registry: HandlerRegistry, flows, sessions, groups, variables,
                 records, deferred, activity, cache, channel, locks, http_client: httpx.AsyncClient,
                 rng: Optional[random.Random] = None, clock: Callable[[], datetime] = utcnow):
        self.settings = settings
        self.registry = registry
        self.flows = flows
        self.sessions = sessions
        self.groups = groups
        self.variables = variables
        self.deferred = deferred
        self.activity = activity
        self.cache = cache
        self.channel = channel
        self.locks = locks
        self.clock = clock
        self.services = EngineServices(
            settings=settings, sessions=sessions, groups=groups, records=records,
            http_client=http_client, rng=rng or random.Random(), clock=clock,
        )

    # --- Entry points ---

    async def handle_event(self, flow_id: str, event: InboundEvent) -> ExecutionOutcome:
        """Applies one inbound chat event to the conversation it belongs to."""
        session_key = make_session_key(flow_id, event.chat_id)
        async with self.locks.hold(session_key):
            active_runs_gauge.inc()
            try:
                outcome = await self._handle_event_locked(flow_id, session_key, event)
            finally:
                active_runs_gauge.dec()
        inbound_events_counter.labels(channel=event.channel_id or "default", status=outcome.stopped_reason).inc()
        return outcome

    async def resume(self, item: DeferredWorkItem) -> ExecutionOutcome:
        """Executes one due deferred work item. Stale items are discarded."""
        if item.target_session_key:
            async with self.locks.hold(item.target_session_key):
                return await self._resume_session(item)
        async with self.locks.hold(f"group:{item.target_group_session_id}"):
            return await self._resume_group(item)

    # --- Event handling ---

    async def _handle_event_locked(self, flow_id: str, session_key: str, event: InboundEvent) -> ExecutionOutcome:
        flow = await self.flows.get(flow_id)
        session = await self.sessions.get_active(session_key)

        if session is None:
            return await self._start_session(flow, session_key, event)

        if not flow.active:
            error = FlowInactiveError(f"Flow {flow.id} is inactive", node_id=session.current_node_id)
            return await self._fail_closed(flow, session, error)

        if session.is_errored:
            if not self._matches_entry(flow, event):
                log.info("Ignoring event for errored session", session_key=session_key, code=session.error.code)
                return ExecutionOutcome(StopReason.ERRORED, session_key, session.id,
                                        current_node_id=session.current_node_id, error_code=session.error.code)
            await self._close(session, SessionStatus.EXPIRED)
            return await self._start_session(flow, session_key, event)

        if session.awaiting == AwaitState.SCHEDULE:
            session.variables["last_input"] = event.input_value
            session.last_activity_at = self.clock()
            await self.sessions.save(session)
            log.info("Event arrived while session waits on a schedule; stored as last_input",
                     session_key=session_key, node_id=session.current_node_id)
            return ExecutionOutcome(StopReason.IGNORED, session_key, session.id, current_node_id=session.current_node_id)

        run = await self._open_run(flow, session=session)
        return await self._execute(run, session.current_node_id, Trigger.from_event(event))

    async def _start_session(self, flow: FlowDefinition, session_key: str, event: InboundEvent) -> ExecutionOutcome:
        if not flow.active:
            log.info("Ignoring event for inactive flow", flow_id=flow.id, session_key=session_key)
            return ExecutionOutcome(StopReason.IGNORED, session_key)

        start = flow.start_node()
        if start is None:
            await self._record(flow, "flow_misconfigured", ActivityLevel.ERROR,
                               "Flow has no single start node", session_key=session_key)
            return ExecutionOutcome(StopReason.IGNORED, session_key, error_code="NO_START_NODE")

        if not self._matches_entry(flow, event):
            log.debug("Event does not match any start trigger", flow_id=flow.id, session_key=session_key)
            return ExecutionOutcome(StopReason.IGNORED, session_key)

        now = self.clock()
        session = Session(
            session_key=session_key, flow_id=flow.id, chat_id=event.chat_id, user_id=event.user_id,
            current_node_id=start.id, created_at=now, last_activity_at=now,
        )
        await self.sessions.create(session)
        session_transitions_counter.labels(status="started").inc()
        await self._record(flow, "session_started", ActivityLevel.INFO, "Session started",
                           session_key=session_key, metadata={"session_id": session.id})

        run = await self._open_run(flow, session=session)
        return await self._execute(run, start.id, Trigger.from_event(event))

    def _matches_entry(self, flow: FlowDefinition, event: InboundEvent) -> bool:
        start = flow.start_node()
        if start is None:
            return False
        try:
            config = self.registry.parse(start)
        except FlowError as e:
            log.error("Start node configuration is invalid", flow_id=flow.id, error=e.message)
            return False
        return config.matches(event)

    async def _close(self, session: Session, status: SessionStatus):
        session.status = status
        session.awaiting = None
        session.resume_at = None
        session.completed_at = self.clock()
        await self.sessions.save(session)
        session_transitions_counter.labels(status=status.value).inc()

    async def _fail_closed(self, flow: FlowDefinition, session: Session, error: FlowError) -> ExecutionOutcome:
        run = await self._open_run(flow, session=session)
        return await self._finish(run, None, error)

    # --- Resume handling ---

    async def _resume_session(self, item: DeferredWorkItem) -> ExecutionOutcome:
        session = await self.sessions.get_active(item.target_session_key)
        payload = item.payload
        if (session is None or session.id != payload.get("session_id")
                or session.current_node_id != payload.get("node_id") or session.awaiting != AwaitState.SCHEDULE):
            log.info("Discarding stale deferred resume", key=item.idempotency_key, session_key=item.target_session_key)
            return ExecutionOutcome(StopReason.STALE, item.target_session_key)

        flow = await self.flows.get(session.flow_id)
        if not flow.active:
            error = FlowInactiveError(f"Flow {flow.id} is inactive", node_id=session.current_node_id)
            return await self._fail_closed(flow, session, error)

        session.awaiting = None
        session.resume_at = None
        run = await self._open_run(flow, session=session)
        return await self._execute(run, session.current_node_id, Trigger.resume(payload, item.idempotency_key))

    async def _resume_group(self, item: DeferredWorkItem) -> ExecutionOutcome:
        group = await self.groups.get(item.target_group_session_id)
        if group is None or not group.is_active:
            log.info("Discarding deferred work for a closed group", key=item.idempotency_key,
                     group_session_id=item.target_group_session_id)
            return ExecutionOutcome(StopReason.STALE, group_session_id=item.target_group_session_id)

        if item.kind == "broadcast":
            sent = await self._broadcast(group, item)
            return ExecutionOutcome(StopReason.DELIVERED, group_session_id=group.id, sent=sent)

        payload = item.payload
        flow = await self.flows.get(group.flow_id)
        if not flow.active:
            await self._record(flow, "group_run_skipped", ActivityLevel.ERROR, "Flow is inactive",
                               group_session_id=group.id, metadata={"code": FlowInactiveError.code})
            return ExecutionOutcome(StopReason.ERRORED, group_session_id=group.id, error_code=FlowInactiveError.code)

        node_id = payload.get("node_id")
        if item.kind == "advance":
            trigger = Trigger(kind="continue", idempotency_key=item.idempotency_key)
        else:
            if group.current_node_id != node_id or group.awaiting != AwaitState.SCHEDULE:
                log.info("Discarding stale group resume", key=item.idempotency_key, group_session_id=group.id)
                return ExecutionOutcome(StopReason.STALE, group_session_id=group.id)
            group.awaiting = None
            trigger = Trigger.resume(payload, item.idempotency_key)

        run = await self._open_run(flow, group=group)
        return await self._execute(run, node_id, trigger)

    async def _broadcast(self, group: GroupSession, item: DeferredWorkItem) -> int:
        payload = item.payload
        exclude = payload.get("exclude_user_id")
        buttons = [KeyboardButton(**b) for b in payload.get("buttons", [])]
        messages = [
            OutboundMessage(
                chat_id=chat_id, text=payload.get("text"), media_url=payload.get("media_url"),
                media_type=payload.get("media_type"), keyboard=buttons,
                idempotency_key=f"{item.idempotency_key}:{user_id}",
            )
            for user_id, chat_id in group.participant_chats.items()
            if user_id != exclude
        ]
        sent, failures = await self._send_all(messages, item.idempotency_key)
        if failures:
            # Delivered recipients keep their claims; the retry only reaches the rest.
            raise DeliveryError(
                f"Broadcast reached {sent} of {len(messages)} participants",
                details={"group_session_id": group.id, "failures": failures},
            )
        return sent

    # --- The run loop ---

    async def _open_run(self, flow: FlowDefinition, session: Optional[Session] = None,
                        group: Optional[GroupSession] = None) -> _Run:
        if session and session.group_session_id and group is None:
            group = await self.groups.get(session.group_session_id)
            if group is not None and not group.is_active:
                group = None
        user_vars = await self.variables.get(flow.owner_id, USER_SCOPE, session.user_id) if session else {}
        global_vars = await self.variables.get(flow.owner_id, GLOBAL_SCOPE, "")
        return _Run(flow, session, group, user_vars, global_vars)

    async def _execute(self, run: _Run, node_id: Optional[str], trigger: Trigger) -> ExecutionOutcome:
        run.trigger_key = trigger.idempotency_key
        if run.session and trigger.is_event:
            run.session.variables["last_input"] = trigger.input_value

        max_steps = self.settings.max_steps_per_event
        while True:
            if run.guarded_steps >= max_steps:
                error = StepLimitExceededError(f"Run exceeded {max_steps} steps without pausing", node_id=node_id)
                return await self._finish(run, None, error)

            node = run.flow.get_node(node_id) if node_id else None
            if node is None:
                return await self._finish(run, None, NodeNotFoundError(f"Node {node_id} does not exist", node_id=node_id))

            run.steps += 1
            run.guarded_steps += 1
            run.cursor = node.id
            log.debug("Executing node", node_id=node.id, kind=node.kind, step=run.steps,
                      session_key=run.session.session_key if run.session else None,
                      group_session_id=run.group.id if run.group else None)

            iterations_before = run.loop_iterations.get(node.id, 0)
            try:
                result = await self._execute_node(run, node, trigger)
            except Exception as exc:
                error = self._as_flow_error(exc, node)
                node_executions_counter.labels(kind=node.kind, outcome="error").inc()
                run.apply_session_vars(error.variables)
                error_node_id = None if isinstance(error, NON_ROUTABLE_ERRORS) else (
                    node.configuration.get("errorNodeId") or node.configuration.get("error_node_id"))
                if not error_node_id:
                    return await self._finish(run, None, error)
                run.apply_session_vars({
                    "last_error_code": error.code, "last_error_node": node.id, "last_error_message": error.message,
                })
                await self._record(run.flow, "error_edge_taken", ActivityLevel.WARNING,
                                   f"Node {node.id} failed, continuing at {error_node_id}", run=run, metadata=error.to_dict())
                node_id, trigger = error_node_id, Trigger.auto()
                continue

            node_executions_counter.labels(kind=node.kind, outcome="success").inc()
            if self.registry.iterates(node.kind) and run.loop_iterations.get(node.id, 0) > iterations_before:
                # Passes through a loop body are bounded by the loop's iteration
                # cap, so each new pass starts from the step count of the first.
                run.guarded_steps = run.loop_marks.setdefault(node.id, run.guarded_steps)
            await self._apply(run, result)

            transition = result.transition
            if isinstance(transition, (Goto, Branch)):
                if transition.node_id is None:
                    log.warning("Node has no outgoing edge; completing", node_id=node.id, flow_id=run.flow.id)
                    return await self._finish(run, StopReason.COMPLETED)
                node_id, trigger = transition.node_id, Trigger.auto()
                continue
            if isinstance(transition, Pause):
                run.set_awaiting(transition.resume, transition.resume_at)
                reason = StopReason.PAUSED_INPUT if transition.resume == AwaitState.INPUT else StopReason.PAUSED_SCHEDULE
                return await self._finish(run, reason)
            if isinstance(transition, Terminal):
                run.complete_group = run.complete_group or result.complete_group or run.is_group_run
                return await self._finish(run, StopReason.COMPLETED)
            raise TypeError(f"Unknown transition {transition!r}")

    async def _execute_node(self, run: _Run, node: FlowNode, trigger: Trigger) -> NodeResult:
        handler = self.registry.get(node.kind)
        config = self.registry.parse(node)
        ctx = ExecutionContext(
            flow=run.flow, node=node, session=run.session, group=run.group,
            session_vars=run.session_vars, group_vars=run.group_vars,
            user_vars=run.user_vars, global_vars=run.global_vars, services=self.services,
            loop_iterations=run.loop_iterations, run_version=run.version, step=run.steps,
        )
        with engine_step_histogram.labels(kind=node.kind).time():
            return await handler.execute(ctx, config, trigger)

    @staticmethod
    def _as_flow_error(exc: Exception, node: FlowNode) -> FlowError:
        if isinstance(exc, FlowError):
            if exc.node_id is None:
                exc.node_id = node.id
            return exc
        log.error("Unhandled exception in node handler", node_id=node.id, kind=node.kind, exc_info=True)
        return NodeExecutionError(f"{type(exc).__name__}: {exc}", node_id=node.id)

    async def _apply(self, run: _Run, result: NodeResult):
        run.apply_session_vars(result.session_vars)
        run.apply_user_vars(result.user_vars)
        run.apply_global_vars(result.global_vars)

        if result.group_binding is not None and run.session:
            group = await self.groups.get(result.group_binding) if result.group_binding else None
            run.bind_group(group)
        run.apply_group_vars(result.group_vars)

        run.outbound.extend(result.outbound)
        for request in result.deferred:
            run.deferred.append(self._to_work_item(run, request))

    def _to_work_item(self, run: _Run, request) -> DeferredWorkItem:
        payload = dict(request.payload)
        if request.group_session_id or run.is_group_run:
            return DeferredWorkItem(
                target_group_session_id=request.group_session_id or run.group.id,
                due_at=request.due_at, idempotency_key=request.idempotency_key,
                kind=request.kind, payload=payload,
            )
        payload.setdefault("session_id", run.session.id)
        return DeferredWorkItem(
            target_session_key=run.session.session_key, due_at=request.due_at,
            idempotency_key=request.idempotency_key, kind=request.kind, payload=payload,
        )

    # --- Persistence and side effects ---

    async def _finish(self, run: _Run, reason: Optional[str], error: Optional[FlowError] = None) -> ExecutionOutcome:
        now = self.clock()
        session, group = run.session, run.group

        if error is not None:
            reason = StopReason.ERRORED
            run.set_awaiting(None)
            if session:
                session.error = SessionError(code=error.code, message=error.message, node_id=error.node_id, at=now)
                run.outbound.append(OutboundMessage(chat_id=session.chat_id, text=self.settings.error_reply_text))
        elif reason == StopReason.COMPLETED:
            run.set_awaiting(None)
            if session:
                session.status = SessionStatus.COMPLETED
                session.completed_at = now

        for item in run.deferred:
            await self.deferred.enqueue(item)

        if session:
            session.last_activity_at = now
            await self.sessions.save(session)
        for group_id, patch in run.group_patches.items():
            await self.groups.set_shared_variables(group_id, patch)
        if run.user_patch:
            await self.variables.merge(run.flow.owner_id, USER_SCOPE, session.user_id, run.user_patch)
        if run.global_patch:
            await self.variables.merge(run.flow.owner_id, GLOBAL_SCOPE, "", run.global_patch)
        if run.is_group_run and group:
            await self.groups.set_cursor(group.id, group.current_node_id, group.awaiting)
        if run.complete_group and group:
            await self.groups.complete(group.id)
            log.info("Group session completed", group_session_id=group.id)

        base_key = run.trigger_key or f"{session.id if session else group.id}:{run.version}"
        sent, failures = await self._send_all(self._address(run), base_key)
        if failures:
            await self._record(run.flow, "send_failed", ActivityLevel.ERROR,
                               f"{len(failures)} outbound message(s) could not be delivered",
                               run=run, metadata={"code": DeliveryError.code, "failures": failures})

        if error is not None:
            session_transitions_counter.labels(status="errored").inc()
            await self._record(run.flow, "session_errored", ActivityLevel.ERROR,
                               f"Execution stopped: {error.message}", run=run, metadata=error.to_dict())
        elif reason == StopReason.COMPLETED and session:
            session_transitions_counter.labels(status="completed").inc()
            await self._record(run.flow, "session_completed", ActivityLevel.SUCCESS, "Session completed", run=run)

        return ExecutionOutcome(
            stopped_reason=reason,
            session_key=session.session_key if session else None,
            session_id=session.id if session else None,
            group_session_id=group.id if group else None,
            current_node_id=run.cursor,
            steps=run.steps,
            sent=sent,
            error_code=error.code if error else None,
        )

    def _address(self, run: _Run) -> List[OutboundMessage]:
        """Resolves messages without a chat id to the current conversation."""
        messages = []
        for message in run.outbound:
            if message.chat_id is not None:
                messages.append(message)
            elif run.session:
                messages.append(message.model_copy(update={"chat_id": run.session.chat_id}))
            elif run.group:
                for user_id, chat_id in run.group.participant_chats.items():
                    key = f"{message.idempotency_key}:{user_id}" if message.idempotency_key else None
                    messages.append(message.model_copy(update={"chat_id": chat_id, "idempotency_key": key}))
        return messages

    async def _send_all(self, messages: List[OutboundMessage], base_key: str) -> Tuple[int, List[Dict[str, Any]]]:
        """
        Sends each message at most once per ledger key. A failed send gives its
        claim back, so a retry of the same work delivers it. Returns the number
        sent and the failures.
        """
        sent, failures = 0, []
        for index, message in enumerate(messages):
            key = message.idempotency_key or f"{base_key}:{index}"
            ledger_key = f"chatflow:effect:{key}"
            if not await self.cache.set_once(ledger_key, self.settings.effect_ledger_ttl_seconds):
                outbound_messages_counter.labels(status="duplicate").inc()
                log.info("Skipping outbound message already sent", key=key, chat_id=message.chat_id)
                continue
            try:
                await self.channel.send(message)
                sent += 1
            except Exception as e:
                await self.cache.release(ledger_key)
                outbound_messages_counter.labels(status="failed").inc()
                log.error("Outbound send failed", chat_id=message.chat_id, key=key, error=str(e))
                failures.append({"chat_id": message.chat_id, "key": key, "error": f"{type(e).__name__}: {e}"})
        return sent, failures

    async def _record(self, flow: FlowDefinition, kind: str, level: ActivityLevel, message: str,
                      run: Optional[_Run] = None, session_key: Optional[str] = None,
                      group_session_id: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None):
        if run is not None:
            session_key = run.session.session_key if run.session else None
            group_session_id = run.group.id if run.group else None
        await self.activity.record(ActivityEvent(
            kind=kind, level=level, message=message, owner_id=flow.owner_id, flow_id=flow.id,
            session_key=session_key, group_session_id=group_session_id, metadata=metadata or {},
        ))
