# /chatflow/handlers/timing.py

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger
from pydantic import field_validator, model_validator

from chatflow.engine.context import ExecutionContext, Trigger
from chatflow.engine.errors import NodeExecutionError
from chatflow.engine.registry import NodeConfig, registry
from chatflow.engine.results import DeferredRequest, NodeResult

# Delay and timer nodes pause the cursor on themselves and enqueue a resume.
# When the resume fires for the same node, they simply continue.

logger = logging.getLogger(__name__)

UNIT_SECONDS = {"seconds": 1, "minutes": 60, "hours": 3600, "days": 86400}


def is_own_resume(ctx: ExecutionContext, trigger: Trigger) -> bool:
    return trigger.is_resume and trigger.payload.get("node_id") == ctx.node.id


def schedule_resume(ctx: ExecutionContext, due_at: datetime, kind: str) -> NodeResult:
    request = DeferredRequest(
        due_at=due_at,
        idempotency_key=ctx.step_key(kind),
        payload={"node_id": ctx.node.id},
    )
    return NodeResult.wait_until(due_at, deferred=[request])


class DelayConfig(NodeConfig):
    value: Any = 1
    unit: Literal["seconds", "minutes", "hours", "days"] = "seconds"


@registry.register("delay")
class DelayHandler:
    config_model = DelayConfig
    config_version = 1

    async def execute(self, ctx: ExecutionContext, config: DelayConfig, trigger: Trigger) -> NodeResult:
        if is_own_resume(ctx, trigger):
            return NodeResult.goto(config.next_node_id)

        raw = ctx.render(config.value)
        try:
            amount = float(raw)
        except (TypeError, ValueError):
            raise NodeExecutionError(f"Delay value '{raw}' is not a number", node_id=ctx.node.id)
        if amount < 0:
            raise NodeExecutionError("Delay value must not be negative", node_id=ctx.node.id)

        due_at = ctx.now() + timedelta(seconds=amount * UNIT_SECONDS[config.unit])
        logger.debug(f"Delay node {ctx.node.id} pausing until {due_at.isoformat()}")
        return schedule_resume(ctx, due_at, "delay")


class TimerConfig(NodeConfig):
    at: Optional[str] = None
    cron: Optional[str] = None
    timezone: str = "UTC"

    @field_validator("timezone")
    @classmethod
    def timezone_must_exist(cls, v):
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone '{v}'")
        return v

    @model_validator(mode="after")
    def exactly_one_schedule(self):
        if bool(self.at) == bool(self.cron):
            raise ValueError("exactly one of 'at' or 'cron' is required")
        if self.cron:
            try:
                CronTrigger.from_crontab(self.cron, timezone=self.timezone)
            except ValueError as e:
                raise ValueError(f"invalid cron expression: {e}")
        return self


@registry.register("timer")
class TimerHandler:
    config_model = TimerConfig
    config_version = 1

    async def execute(self, ctx: ExecutionContext, config: TimerConfig, trigger: Trigger) -> NodeResult:
        if is_own_resume(ctx, trigger):
            return NodeResult.goto(config.next_node_id)

        now = ctx.now()
        zone = ZoneInfo(config.timezone)
        if config.cron:
            cron = CronTrigger.from_crontab(config.cron, timezone=zone)
            due_at = cron.get_next_fire_time(None, now.astimezone(zone))
            if due_at is None:
                raise NodeExecutionError(f"Cron '{config.cron}' has no future fire time", node_id=ctx.node.id)
        else:
            raw = ctx.render_text(config.at)
            try:
                due_at = datetime.fromisoformat(raw)
            except ValueError:
                raise NodeExecutionError(f"Timer time '{raw}' is not an ISO timestamp", node_id=ctx.node.id)
            if due_at.tzinfo is None:
                due_at = due_at.replace(tzinfo=zone)

        due_at = due_at.astimezone(timezone.utc)
        if due_at <= now:
            return NodeResult.goto(config.next_node_id)
        return schedule_resume(ctx, due_at, "timer")
