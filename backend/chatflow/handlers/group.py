# /chatflow/handlers/group.py

import logging
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from chatflow.engine.context import ExecutionContext, Trigger
from chatflow.engine.errors import GroupSessionError, NodeExecutionError
from chatflow.engine.registry import NodeConfig, registry
from chatflow.engine.results import Branch, DeferredRequest, NodeResult
from chatflow.handlers.logic import Operator, evaluate_condition
from chatflow.handlers.messaging import Button
from chatflow.models.events import OutboundMessage
from chatflow.models.session import GroupSession

# Group handlers change membership through atomic store operations and report
# the new binding in `NodeResult.group_binding`; shared variable writes go
# through `group_vars` like any other variable patch.

logger = logging.getLogger(__name__)


def require_session(ctx: ExecutionContext):
    if ctx.session is None:
        raise NodeExecutionError(f"{ctx.node.kind} needs an individual session", node_id=ctx.node.id)
    return ctx.session


def require_group(ctx: ExecutionContext) -> GroupSession:
    if ctx.group is None or not ctx.group.is_active:
        raise GroupSessionError("Session is not part of an active group", node_id=ctx.node.id, reason="not_in_group")
    return ctx.group


async def leave_current_group(ctx: ExecutionContext, except_group_id: Optional[str] = None) -> Optional[GroupSession]:
    session = ctx.session
    if not session or not session.group_session_id or session.group_session_id == except_group_id:
        return None
    group, removed = await ctx.services.groups.remove_participant(session.group_session_id, session.user_id)
    if removed:
        logger.info(f"User {session.user_id} left group {session.group_session_id}")
    return group


class GroupCreateConfig(NodeConfig):
    max_size: Optional[int] = Field(default=None, ge=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    shared_variables: Dict[str, Any] = Field(default_factory=dict)
    join_creator: bool = True
    variable: str = "group_id"


@registry.register("group_create")
class GroupCreateHandler:
    config_model = GroupCreateConfig
    config_version = 1

    async def execute(self, ctx: ExecutionContext, config: GroupCreateConfig, trigger: Trigger) -> NodeResult:
        session = require_session(ctx)
        groups = ctx.services.groups
        group = await groups.create(GroupSession(
            flow_id=ctx.flow.id,
            owner_id=ctx.owner_id,
            current_node_id=config.next_node_id,
            shared_variables=ctx.render(config.shared_variables),
            metadata=ctx.render(config.metadata),
            max_size=min(config.max_size or ctx.settings.max_group_participants, ctx.settings.max_group_participants),
        ))
        logger.info(f"Group {group.id} created by {session.user_id} in flow {ctx.flow.id}")

        if not config.join_creator:
            return NodeResult.goto(config.next_node_id, session_vars={config.variable: group.id})

        await leave_current_group(ctx)
        group, _ = await groups.add_participant(group.id, session.user_id, session.chat_id)
        return NodeResult.goto(
            config.next_node_id,
            session_vars={config.variable: group.id, "group_participant_count": group.participant_count},
            group_binding=group.id,
        )


class GroupJoinConfig(NodeConfig):
    group_id: Optional[str] = None
    on_full_action: Literal["reject", "create_new"] = "reject"
    full_node_id: Optional[str] = None
    variable: str = "group_id"

    def successors(self) -> List[str]:
        return super().successors() + ([self.full_node_id] if self.full_node_id else [])


@registry.register("group_join")
class GroupJoinHandler:
    """
    Joins the group named by `groupId` (templated), or the oldest open group of
    the flow when none is named. Re-joining a group is a no-op.
    """
    config_model = GroupJoinConfig
    config_version = 1

    async def execute(self, ctx: ExecutionContext, config: GroupJoinConfig, trigger: Trigger) -> NodeResult:
        session = require_session(ctx)
        groups = ctx.services.groups

        target_id = ctx.render_text(config.group_id) if config.group_id else None
        if target_id:
            group = await groups.get(target_id)
            if group is None or not group.is_active:
                raise GroupSessionError(f"Group '{target_id}' not found or inactive", node_id=ctx.node.id, reason="not_found")
        else:
            group = await groups.find_open(ctx.flow.id)
            if group is None:
                group = await self._create_like(ctx, None)

        if group.has_participant(session.user_id):
            logger.debug(f"User {session.user_id} already in group {group.id}, join is a no-op")
            return self._joined(config, group)

        try:
            if group.is_full:
                raise GroupSessionError(f"Group '{group.id}' is full", node_id=ctx.node.id, reason="full")
            await leave_current_group(ctx, except_group_id=group.id)
            group, _ = await groups.add_participant(group.id, session.user_id, session.chat_id)
        except GroupSessionError as e:
            if e.reason != "full":
                raise
            if config.on_full_action == "create_new":
                await leave_current_group(ctx)
                group = await self._create_like(ctx, group)
                group, _ = await groups.add_participant(group.id, session.user_id, session.chat_id)
            elif config.full_node_id:
                return NodeResult.goto(config.full_node_id, session_vars={"group_join_rejected": True})
            else:
                raise

        logger.info(f"User {session.user_id} joined group {group.id} ({group.participant_count}/{group.max_size})")
        return self._joined(config, group)

    @staticmethod
    def _joined(config: GroupJoinConfig, group: GroupSession) -> NodeResult:
        return NodeResult.goto(
            config.next_node_id,
            session_vars={config.variable: group.id, "group_participant_count": group.participant_count,
                          "group_join_rejected": False},
            group_binding=group.id,
        )

    @staticmethod
    async def _create_like(ctx: ExecutionContext, template: Optional[GroupSession]) -> GroupSession:
        return await ctx.services.groups.create(GroupSession(
            flow_id=ctx.flow.id,
            owner_id=ctx.owner_id,
            current_node_id=ctx.node.id,
            metadata=dict(template.metadata) if template else {},
            max_size=template.max_size if template else ctx.settings.max_group_participants,
        ))


class GroupLeaveConfig(NodeConfig):
    notify: bool = False
    notify_text: str = "A participant has left the group."
    variable: str = "group_id"


@registry.register("group_leave")
class GroupLeaveHandler:
    config_model = GroupLeaveConfig
    config_version = 1

    async def execute(self, ctx: ExecutionContext, config: GroupLeaveConfig, trigger: Trigger) -> NodeResult:
        session = require_session(ctx)
        if not session.group_session_id:
            return NodeResult.goto(config.next_node_id)

        group = await leave_current_group(ctx)
        outbound = []
        if config.notify and group is not None and group.participant_count:
            text = ctx.render_text(config.notify_text)
            outbound = [
                OutboundMessage(chat_id=chat_id, text=text)
                for user_id, chat_id in group.participant_chats.items()
                if user_id in group.participant_ids
            ]
        return NodeResult.goto(
            config.next_node_id, outbound=outbound, session_vars={config.variable: None}, group_binding=""
        )


ACTION_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class BroadcastAction(BaseModel):
    model_config = ACTION_CONFIG
    message: str
    buttons: List[Button] = Field(default_factory=list)
    exclude_self: bool = False


class CollectAction(BaseModel):
    model_config = ACTION_CONFIG
    variable_name: str
    aggregate_as: str
    wait_for_all: bool = True


class AggregateAction(BaseModel):
    model_config = ACTION_CONFIG
    operation: Literal["sum", "avg", "min", "max", "count", "list"]
    source_variable: str
    target_variable: str
    scope: Literal["group", "participants"] = "participants"


class GroupConditionAction(BaseModel):
    model_config = ACTION_CONFIG
    field: str
    operator: Operator = "equals"
    value: Any = None


class AdvanceAction(BaseModel):
    model_config = ACTION_CONFIG
    node_id: str


class GroupActionConfig(NodeConfig):
    action_type: Literal["broadcast", "collect", "aggregate", "condition", "advance"]
    broadcast: Optional[BroadcastAction] = None
    collect: Optional[CollectAction] = None
    aggregate: Optional[AggregateAction] = None
    condition: Optional[GroupConditionAction] = None
    advance: Optional[AdvanceAction] = None
    true_node_id: Optional[str] = None
    false_node_id: Optional[str] = None

    @model_validator(mode="after")
    def action_settings_present(self):
        if getattr(self, self.action_type) is None:
            raise ValueError(f"'{self.action_type}' settings are required for action type '{self.action_type}'")
        return self

    def successors(self) -> List[str]:
        extra = [n for n in (self.true_node_id, self.false_node_id) if n]
        if self.advance:
            extra.append(self.advance.node_id)
        return super().successors() + extra


def aggregate_values(operation: str, values: List[Any]) -> Any:
    if operation == "list":
        return list(values)
    if operation == "count":
        return len(values)
    numbers = []
    for value in values:
        try:
            numbers.append(float(value))
        except (TypeError, ValueError):
            numbers.append(0.0)
    if operation == "sum":
        return sum(numbers)
    if operation == "avg":
        return sum(numbers) / len(numbers) if numbers else 0
    if not numbers:
        return None
    return min(numbers) if operation == "min" else max(numbers)


@registry.register("group_action")
class GroupActionHandler:
    config_model = GroupActionConfig
    config_version = 1

    async def execute(self, ctx: ExecutionContext, config: GroupActionConfig, trigger: Trigger) -> NodeResult:
        group = require_group(ctx)
        action = getattr(self, f"_{config.action_type}")
        return await action(ctx, config, group)

    async def _broadcast(self, ctx: ExecutionContext, config: GroupActionConfig, group: GroupSession) -> NodeResult:
        action = config.broadcast
        request = DeferredRequest(
            due_at=ctx.now(),
            idempotency_key=ctx.step_key("broadcast"),
            kind="broadcast",
            group_session_id=group.id,
            payload={
                "text": ctx.render_text(action.message),
                "buttons": [{"text": ctx.render_text(b.text), "value": b.value or b.text} for b in action.buttons],
                "exclude_user_id": ctx.user_id if action.exclude_self else None,
            },
        )
        logger.info(f"Broadcast queued for group {group.id} ({group.participant_count} participants)")
        return NodeResult.goto(config.next_node_id, deferred=[request])

    async def _advance(self, ctx: ExecutionContext, config: GroupActionConfig, group: GroupSession) -> NodeResult:
        request = DeferredRequest(
            due_at=ctx.now(),
            idempotency_key=ctx.step_key("advance"),
            kind="advance",
            group_session_id=group.id,
            payload={"node_id": config.advance.node_id},
        )
        return NodeResult.goto(config.next_node_id, deferred=[request])

    async def _collect(self, ctx: ExecutionContext, config: GroupActionConfig, group: GroupSession) -> NodeResult:
        session = require_session(ctx)
        action = config.collect
        responses_key = f"collect_{ctx.node.id}"
        patch = {}

        value = ctx.session_vars.get(action.variable_name)
        if value is not None:
            # Written straight away so participants answering concurrently see each other.
            patch[f"{responses_key}.{session.user_id}"] = value
            await ctx.services.groups.set_shared_variables(group.id, patch)
            group = await ctx.services.groups.get(group.id) or group
        responses = dict(group.shared_variables.get(responses_key) or {})
        if value is not None:
            responses[session.user_id] = value

        answered = [user_id for user_id in group.participant_ids if user_id in responses]
        if action.wait_for_all and len(answered) < group.participant_count:
            logger.debug(f"Collect {ctx.node.id}: {len(answered)}/{group.participant_count} answered, waiting")
            return NodeResult.wait_for_input(group_vars=patch)

        patch[action.aggregate_as] = [responses[user_id] for user_id in answered]
        patch[f"{action.aggregate_as}_late_users"] = [u for u in group.participant_ids if u not in responses]
        return NodeResult.goto(config.next_node_id, group_vars=patch)

    async def _aggregate(self, ctx: ExecutionContext, config: GroupActionConfig, group: GroupSession) -> NodeResult:
        action = config.aggregate
        if action.scope == "group":
            source = ctx.group_vars.get(action.source_variable)
        else:
            sessions = await ctx.services.sessions.list_by_group(group.id)
            values = {s.id: s.variables[action.source_variable] for s in sessions if action.source_variable in s.variables}
            # The current participant's latest value is not persisted yet.
            if ctx.session and action.source_variable in ctx.session_vars:
                values[ctx.session.id] = ctx.session_vars[action.source_variable]
            source = list(values.values())
        if not isinstance(source, list):
            raise NodeExecutionError(f"Aggregate source '{action.source_variable}' is not a list", node_id=ctx.node.id)

        result = aggregate_values(action.operation, source)
        if action.scope == "group" or ctx.session is None:
            return NodeResult.goto(config.next_node_id, group_vars={action.target_variable: result})
        return NodeResult.goto(config.next_node_id, session_vars={action.target_variable: result})

    async def _condition(self, ctx: ExecutionContext, config: GroupActionConfig, group: GroupSession) -> NodeResult:
        action = config.condition
        if action.field == "participantCount":
            actual = group.participant_count
        elif action.field.startswith("sharedVariables."):
            actual = ctx.group_vars.get(action.field[len("sharedVariables."):])
        else:
            actual = getattr(group, action.field, None)
            if isinstance(actual, Enum):
                actual = actual.value
        outcome = evaluate_condition(action.operator, actual, ctx.render(action.value))
        return NodeResult(
            transition=Branch(outcome, config.true_node_id or config.next_node_id,
                              config.false_node_id or config.next_node_id)
        )
