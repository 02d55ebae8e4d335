# backend/tests/integration/test_deferred.py
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from chatflow.config.settings import settings
from chatflow.engine.executor import StopReason
from chatflow.models.events import DeferredStatus, DeferredWorkItem
from chatflow.models.session import AwaitState, SessionStatus
from chatflow.services.channel_service import MemoryChannel
from chatflow.services.runtime import build_runtime
from chatflow.utils.alerting import AlertingService

DELAY_FLOW = [
    {"id": "start", "kind": "start", "config": {"nextNodeId": "wait"}},
    {"id": "wait", "kind": "delay", "config": {"value": 10, "unit": "minutes", "nextNodeId": "back"}},
    {"id": "back", "kind": "end", "config": {"text": "Back! You said {last_input}"}},
]


@pytest.mark.asyncio
async def test_delay_resumes_after_a_restart(runtime, engine, clock, install_flow, make_event):
    await install_flow(DELAY_FLOW)
    paused = await engine.handle_event("test-flow", make_event("go"))
    assert paused.stopped_reason == StopReason.PAUSED_SCHEDULE

    [item] = await runtime.stores.deferred.list()
    assert item.due_at == clock() + timedelta(minutes=10)
    assert item.payload == {"node_id": "wait", "session_id": paused.session_id}

    # A fresh process sharing only the durable stores picks the work up.
    restarted = build_runtime(
        settings, stores=runtime.stores, channel=MemoryChannel(),
        http_client=httpx.AsyncClient(), alerting=AlertingService(None), clock=clock,
    )
    assert await restarted.deferred_worker.drain() == []

    clock.advance(minutes=10)
    [outcome] = await restarted.deferred_worker.drain()

    assert outcome.stopped_reason == StopReason.COMPLETED
    assert restarted.channel.texts_for("chat-1") == ["Back! You said go"]
    assert (await runtime.stores.deferred.get_by_key(item.idempotency_key)).status == DeferredStatus.DONE
    assert await restarted.deferred_worker.drain() == []


@pytest.mark.asyncio
async def test_event_during_a_delay_is_stored_but_does_not_advance(runtime, engine, channel, clock, install_flow, make_event):
    await install_flow(DELAY_FLOW)
    await engine.handle_event("test-flow", make_event("go"))

    during = await engine.handle_event("test-flow", make_event("are you there?"))
    assert during.stopped_reason == StopReason.IGNORED
    assert during.current_node_id == "wait"
    assert channel.sent == []

    clock.advance(minutes=10)
    await runtime.deferred_worker.drain()
    assert channel.texts_for("chat-1") == ["Back! You said are you there?"]


@pytest.mark.asyncio
async def test_resume_for_a_moved_cursor_is_discarded(runtime, engine, channel, clock, install_flow, make_event):
    await install_flow(DELAY_FLOW)
    paused = await engine.handle_event("test-flow", make_event("go"))
    await runtime.stores.deferred.enqueue(DeferredWorkItem(
        target_session_key="test-flow:chat-1", idempotency_key="old-resume", due_at=clock(),
        payload={"node_id": "start", "session_id": paused.session_id},
    ))

    [stale] = await runtime.deferred_worker.drain()

    assert stale.stopped_reason == StopReason.STALE
    session = await runtime.stores.sessions.get(paused.session_id)
    assert session.current_node_id == "wait"
    assert session.awaiting == AwaitState.SCHEDULE
    assert channel.sent == []


@pytest.mark.asyncio
async def test_resume_for_an_expired_session_is_discarded(runtime, engine, channel, clock, install_flow, make_event):
    await install_flow(DELAY_FLOW)
    await engine.handle_event("test-flow", make_event("go"))
    clock.advance(minutes=10)
    await runtime.stores.sessions.expire_idle(clock() + timedelta(minutes=1))

    [stale] = await runtime.deferred_worker.drain()

    assert stale.stopped_reason == StopReason.STALE
    assert channel.sent == []


@pytest.mark.asyncio
async def test_idle_sweep_keeps_a_session_waiting_on_a_long_delay(runtime, engine, channel, clock, install_flow, make_event):
    await install_flow([
        {"id": "start", "kind": "start", "config": {"nextNodeId": "wait"}},
        {"id": "wait", "kind": "delay", "config": {"value": 3, "unit": "days", "nextNodeId": "back"}},
        {"id": "back", "kind": "end", "config": {"text": "Three days later"}},
    ])
    paused = await engine.handle_event("test-flow", make_event("go"))

    clock.advance(days=2)
    assert await runtime.stores.sessions.expire_idle(clock() - timedelta(days=1)) == 0

    clock.advance(days=1)
    await runtime.deferred_worker.drain()
    assert channel.texts_for("chat-1") == ["Three days later"]
    assert (await runtime.stores.sessions.get(paused.session_id)).status == SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_timer_waits_for_the_next_cron_fire_time(runtime, engine, channel, clock, install_flow, make_event):
    await install_flow([
        {"id": "start", "kind": "start", "config": {"nextNodeId": "at_ten"}},
        {"id": "at_ten", "kind": "timer", "config": {"cron": "0 10 * * *", "timezone": "UTC", "nextNodeId": "bye"}},
        {"id": "bye", "kind": "end", "config": {"text": "It's ten"}},
    ])

    paused = await engine.handle_event("test-flow", make_event("go"))

    assert paused.stopped_reason == StopReason.PAUSED_SCHEDULE
    [item] = await runtime.stores.deferred.list()
    assert item.due_at == datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)

    clock.advance(hours=1)
    await runtime.deferred_worker.drain()
    assert channel.texts_for("chat-1") == ["It's ten"]


@pytest.mark.asyncio
async def test_timer_in_the_past_continues_immediately(engine, channel, install_flow, make_event):
    await install_flow([
        {"id": "start", "kind": "start", "config": {"nextNodeId": "launch"}},
        {"id": "launch", "kind": "timer", "config": {"at": "2025-12-31T23:59:00+00:00", "nextNodeId": "bye"}},
        {"id": "bye", "kind": "end", "config": {"text": "Launched"}},
    ])

    outcome = await engine.handle_event("test-flow", make_event("go"))

    assert outcome.stopped_reason == StopReason.COMPLETED
    assert channel.texts_for("chat-1") == ["Launched"]


@pytest.mark.asyncio
async def test_failing_item_is_retried_then_reported(runtime, engine, clock, install_flow, make_event, mocker):
    await install_flow(DELAY_FLOW)
    await engine.handle_event("test-flow", make_event("go"))
    clock.advance(minutes=10)

    mocker.patch.object(runtime.engine, "resume", side_effect=RuntimeError("store unavailable"))
    alert = mocker.patch.object(runtime.alerting, "send_critical_alert", new_callable=AsyncMock)

    for attempt in range(1, settings.deferred_max_attempts + 1):
        [outcome] = await runtime.deferred_worker.drain()
        assert outcome.stopped_reason == "failed"
        clock.advance(seconds=settings.deferred_retry_backoff_seconds * 2 ** (attempt - 1))

    [item] = await runtime.stores.deferred.list()
    assert item.status == DeferredStatus.FAILED
    assert item.attempts == settings.deferred_max_attempts
    assert "store unavailable" in item.last_error
    assert await runtime.deferred_worker.drain() == []

    alert.assert_awaited_once()
    [failure] = await runtime.activity.list("owner-1", level="error")
    assert failure.kind == "deferred_failed"
    assert failure.flow_id == "test-flow"
