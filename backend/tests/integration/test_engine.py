# backend/tests/integration/test_engine.py
import asyncio

import pytest

from chatflow.config.settings import settings
from chatflow.engine.executor import StopReason
from chatflow.models.events import OutboundMessage
from chatflow.models.session import SessionStatus

GREETING_FLOW = [
    {"id": "start", "kind": "start", "config": {"triggers": ["hi"], "nextNodeId": "hello"}},
    {"id": "hello", "kind": "message", "config": {"text": "Hello!", "nextNodeId": "ask_name"}},
    {"id": "ask_name", "kind": "input", "config": {"variable": "name", "prompt": "What's your name?", "nextNodeId": "bye"}},
    {"id": "bye", "kind": "end", "config": {"text": "Thanks {name}"}},
]


async def activity_kinds(runtime, owner_id="owner-1"):
    return [event.kind for event in await runtime.activity.list(owner_id, limit=500)]


# --- Happy paths ---

@pytest.mark.asyncio
async def test_linear_flow_runs_until_input_then_completes(runtime, engine, channel, install_flow, make_event):
    await install_flow(GREETING_FLOW)

    first = await engine.handle_event("test-flow", make_event("hi"))
    assert first.stopped_reason == StopReason.PAUSED_INPUT
    assert first.current_node_id == "ask_name"
    assert channel.texts_for("chat-1") == ["Hello!", "What's your name?"]

    second = await engine.handle_event("test-flow", make_event("Ada"))
    assert second.stopped_reason == StopReason.COMPLETED
    assert channel.texts_for("chat-1")[-1] == "Thanks Ada"

    session = await runtime.stores.sessions.get(first.session_id)
    assert session.status == SessionStatus.COMPLETED
    assert session.variables["name"] == "Ada"
    assert {"session_started", "session_completed"} <= set(await activity_kinds(runtime))


@pytest.mark.asyncio
async def test_event_after_completion_starts_a_new_session(runtime, engine, install_flow, make_event):
    await install_flow(GREETING_FLOW)
    first = await engine.handle_event("test-flow", make_event("hi"))
    await engine.handle_event("test-flow", make_event("Ada"))

    again = await engine.handle_event("test-flow", make_event("hi"))

    assert again.stopped_reason == StopReason.PAUSED_INPUT
    assert again.session_id != first.session_id
    assert (await runtime.stores.sessions.get_active("test-flow:chat-1")).id == again.session_id


@pytest.mark.asyncio
async def test_event_not_matching_a_start_trigger_is_ignored(runtime, engine, channel, install_flow, make_event):
    await install_flow(GREETING_FLOW)

    outcome = await engine.handle_event("test-flow", make_event("hello"))

    assert outcome.stopped_reason == StopReason.IGNORED
    assert channel.sent == []
    assert await runtime.stores.sessions.get_active("test-flow:chat-1") is None


@pytest.mark.asyncio
async def test_trigger_matches_as_first_word_case_insensitively(engine, install_flow, make_event):
    await install_flow(GREETING_FLOW)
    outcome = await engine.handle_event("test-flow", make_event("HI there"))
    assert outcome.stopped_reason == StopReason.PAUSED_INPUT


@pytest.mark.asyncio
async def test_keyboard_routes_on_the_selected_button(runtime, engine, channel, install_flow, make_event):
    await install_flow([
        {"id": "start", "kind": "start", "config": {"nextNodeId": "menu"}},
        {"id": "menu", "kind": "keyboard", "config": {
            "text": "Subscribe to updates?",
            "variable": "choice",
            "buttons": [
                {"text": "Yes", "value": "yes", "nextNodeId": "yes_end"},
                {"text": "No", "value": "no", "nextNodeId": "no_end"},
            ],
        }},
        {"id": "yes_end", "kind": "end", "config": {"text": "Subscribed"}},
        {"id": "no_end", "kind": "end", "config": {"text": "Maybe later"}},
    ])

    await engine.handle_event("test-flow", make_event("menu"))
    assert [b.value for b in channel.sent[0].keyboard] == ["yes", "no"]

    unmatched = await engine.handle_event("test-flow", make_event(selection="perhaps"))
    assert unmatched.stopped_reason == StopReason.PAUSED_INPUT
    assert channel.texts_for("chat-1") == ["Subscribe to updates?", "Subscribe to updates?"]

    chosen = await engine.handle_event("test-flow", make_event(text="No", selection="no"))
    assert chosen.stopped_reason == StopReason.COMPLETED
    assert channel.texts_for("chat-1")[-1] == "Maybe later"
    session = await runtime.stores.sessions.get(chosen.session_id)
    assert session.variables["choice"] == "no"


@pytest.mark.asyncio
async def test_condition_branches_on_input(engine, channel, install_flow, make_event):
    await install_flow([
        {"id": "start", "kind": "start", "config": {"nextNodeId": "ask"}},
        {"id": "ask", "kind": "input", "config": {"variable": "age", "prompt": "Age?", "nextNodeId": "check"}},
        {"id": "check", "kind": "condition", "config": {
            "variable": "age", "operator": "greater_than", "value": 17,
            "trueNodeId": "adult", "falseNodeId": "minor",
        }},
        {"id": "adult", "kind": "end", "config": {"text": "Welcome"}},
        {"id": "minor", "kind": "end", "config": {"text": "Sorry, adults only"}},
    ])

    await engine.handle_event("test-flow", make_event("start", chat_id="chat-a"))
    await engine.handle_event("test-flow", make_event("34", chat_id="chat-a"))
    await engine.handle_event("test-flow", make_event("start", chat_id="chat-b"))
    await engine.handle_event("test-flow", make_event("12", chat_id="chat-b"))

    assert channel.texts_for("chat-a")[-1] == "Welcome"
    assert channel.texts_for("chat-b")[-1] == "Sorry, adults only"


@pytest.mark.asyncio
async def test_count_loop_runs_its_body_the_configured_times(runtime, engine, channel, install_flow, make_event):
    await install_flow([
        {"id": "start", "kind": "start", "config": {"nextNodeId": "repeat"}},
        {"id": "repeat", "kind": "loop", "config": {"mode": "count", "count": 3, "bodyNodeId": "tick", "exitNodeId": "done"}},
        {"id": "tick", "kind": "message", "config": {"text": "tick {loop_repeat_iteration}", "nextNodeId": "repeat"}},
        {"id": "done", "kind": "end", "config": {"text": "done"}},
    ])

    outcome = await engine.handle_event("test-flow", make_event("go"))

    assert outcome.stopped_reason == StopReason.COMPLETED
    assert channel.texts_for("chat-1") == ["tick 1", "tick 2", "tick 3", "done"]
    session = await runtime.stores.sessions.get(outcome.session_id)
    assert session.variables["loop_repeat_index"] == 0


@pytest.mark.asyncio
async def test_long_loop_is_bounded_by_its_iteration_cap_not_the_step_guard(runtime, engine, channel, install_flow, make_event):
    assert 40 * 2 > settings.max_steps_per_event
    await install_flow([
        {"id": "start", "kind": "start", "config": {"nextNodeId": "repeat"}},
        {"id": "repeat", "kind": "loop", "config": {"mode": "count", "count": 40, "bodyNodeId": "add", "exitNodeId": "done"}},
        {"id": "add", "kind": "variable", "config": {"name": "total", "operation": "increment", "value": 2, "nextNodeId": "repeat"}},
        {"id": "done", "kind": "end", "config": {"text": "total {total}"}},
    ])

    outcome = await engine.handle_event("test-flow", make_event("go"))

    assert outcome.stopped_reason == StopReason.COMPLETED
    assert outcome.steps == 1 + 40 * 2 + 2
    assert channel.texts_for("chat-1") == ["total 80"]


@pytest.mark.asyncio
async def test_loop_beyond_its_iteration_cap_errors(engine, install_flow, make_event):
    await install_flow([
        {"id": "start", "kind": "start", "config": {"nextNodeId": "repeat"}},
        {"id": "repeat", "kind": "loop", "config": {
            "mode": "count", "count": 40, "maxIterations": 30, "bodyNodeId": "add", "exitNodeId": "done",
        }},
        {"id": "add", "kind": "variable", "config": {"name": "total", "operation": "increment", "nextNodeId": "repeat"}},
        {"id": "done", "kind": "end"},
    ])

    outcome = await engine.handle_event("test-flow", make_event("go"))

    assert outcome.stopped_reason == StopReason.ERRORED
    assert outcome.error_code == "LOOP_LIMIT_EXCEEDED"


@pytest.mark.asyncio
async def test_cycle_through_a_loop_exit_still_hits_the_step_limit(engine, install_flow, make_event):
    await install_flow([
        {"id": "start", "kind": "start", "config": {"nextNodeId": "repeat"}},
        {"id": "repeat", "kind": "loop", "config": {"mode": "count", "count": 0, "bodyNodeId": "again", "exitNodeId": "again"}},
        {"id": "again", "kind": "message", "config": {"text": "again", "nextNodeId": "repeat"}},
    ])

    outcome = await engine.handle_event("test-flow", make_event("go"))

    assert outcome.error_code == "STEP_LIMIT_EXCEEDED"


@pytest.mark.asyncio
async def test_node_without_outgoing_edge_completes_the_session(engine, channel, install_flow, make_event):
    await install_flow([
        {"id": "start", "kind": "start", "config": {"nextNodeId": "only"}},
        {"id": "only", "kind": "message", "config": {"text": "That's all"}},
    ])

    outcome = await engine.handle_event("test-flow", make_event("hey"))

    assert outcome.stopped_reason == StopReason.COMPLETED
    assert channel.texts_for("chat-1") == ["That's all"]


@pytest.mark.asyncio
async def test_concurrent_events_for_one_chat_are_applied_in_order(runtime, engine, channel, install_flow, make_event):
    await install_flow([
        {"id": "start", "kind": "start", "config": {"nextNodeId": "ask_name"}},
        {"id": "ask_name", "kind": "input", "config": {"variable": "name", "prompt": "Name?", "nextNodeId": "ask_city"}},
        {"id": "ask_city", "kind": "input", "config": {"variable": "city", "prompt": "City?", "nextNodeId": "bye"}},
        {"id": "bye", "kind": "end", "config": {"text": "{name} from {city}"}},
    ])
    first = await engine.handle_event("test-flow", make_event("hi"))

    outcomes = await asyncio.gather(
        engine.handle_event("test-flow", make_event("Ada")),
        engine.handle_event("test-flow", make_event("Paris")),
    )

    assert [o.stopped_reason for o in outcomes] == [StopReason.PAUSED_INPUT, StopReason.COMPLETED]
    session = await runtime.stores.sessions.get(first.session_id)
    assert session.variables["name"] == "Ada"
    assert session.variables["city"] == "Paris"
    assert session.status == SessionStatus.COMPLETED
    assert channel.texts_for("chat-1")[-1] == "Ada from Paris"


# --- Variables beyond the session ---

@pytest.mark.asyncio
async def test_user_and_global_variables_outlive_sessions(runtime, engine, channel, install_flow, make_event):
    await install_flow([
        {"id": "start", "kind": "start", "config": {"nextNodeId": "points"}},
        {"id": "points", "kind": "variable", "config": {"name": "points", "operation": "increment", "value": 5, "scope": "user", "nextNodeId": "visits"}},
        {"id": "visits", "kind": "variable", "config": {"name": "visits", "operation": "increment", "scope": "global", "nextNodeId": "bye"}},
        {"id": "bye", "kind": "end", "config": {"text": "You have {points} points, visit #{visits}"}},
    ])

    await engine.handle_event("test-flow", make_event("hi", chat_id="alice"))
    await engine.handle_event("test-flow", make_event("hi", chat_id="alice"))
    await engine.handle_event("test-flow", make_event("hi", chat_id="bob"))

    assert channel.texts_for("alice") == ["You have 5 points, visit #1", "You have 10 points, visit #2"]
    assert channel.texts_for("bob") == ["You have 5 points, visit #3"]
    assert await runtime.stores.variables.get("owner-1", "user", "alice") == {"points": 10}
    assert await runtime.stores.variables.get("owner-1", "global") == {"visits": 3}


# --- Failures ---

@pytest.mark.asyncio
async def test_cycle_without_pause_hits_the_step_limit(runtime, engine, channel, install_flow, make_event):
    await install_flow([
        {"id": "start", "kind": "start", "config": {"nextNodeId": "ping"}},
        {"id": "ping", "kind": "message", "config": {"text": "ping", "nextNodeId": "pong"}},
        {"id": "pong", "kind": "message", "config": {"text": "pong", "nextNodeId": "ping"}},
    ])

    outcome = await engine.handle_event("test-flow", make_event("go"))

    assert outcome.stopped_reason == StopReason.ERRORED
    assert outcome.error_code == "STEP_LIMIT_EXCEEDED"
    assert outcome.steps == settings.max_steps_per_event
    assert channel.texts_for("chat-1")[-1] == settings.error_reply_text

    session = await runtime.stores.sessions.get(outcome.session_id)
    assert session.error.code == "STEP_LIMIT_EXCEEDED"
    assert session.status == SessionStatus.ACTIVE
    assert "session_errored" in await activity_kinds(runtime)


@pytest.mark.asyncio
async def test_failed_send_is_recorded_and_can_be_retried(runtime, engine, channel, install_flow, make_event):
    await install_flow(GREETING_FLOW)
    channel.unreachable.add("chat-1")

    outcome = await engine.handle_event("test-flow", make_event("hi"))

    assert outcome.stopped_reason == StopReason.PAUSED_INPUT
    assert outcome.sent == 0
    [failure] = await runtime.activity.list("owner-1", level="error")
    assert failure.kind == "send_failed"
    assert failure.metadata["code"] == "DELIVERY_FAILED"
    assert len(failure.metadata["failures"]) == 2

    # The ledger claims were given back, so a retry of the same sends goes out.
    channel.unreachable.clear()
    base_key = failure.metadata["failures"][0]["key"].rsplit(":", 1)[0]
    retry = [OutboundMessage(chat_id="chat-1", text="Hello!"), OutboundMessage(chat_id="chat-1", text="What's your name?")]
    sent, failures = await engine._send_all(retry, base_key)
    assert (sent, failures) == (2, [])
    assert channel.texts_for("chat-1") == ["Hello!", "What's your name?"]


@pytest.mark.asyncio
async def test_unsupported_node_never_takes_the_error_edge(runtime, engine, channel, install_flow, make_event):
    await install_flow([
        {"id": "start", "kind": "start", "config": {"nextNodeId": "mystery"}},
        {"id": "mystery", "kind": "teleport", "config": {"errorNodeId": "recover"}},
        {"id": "recover", "kind": "end", "config": {"text": "recovered"}},
    ])

    outcome = await engine.handle_event("test-flow", make_event("go"))

    assert outcome.error_code == "UNSUPPORTED_NODE"
    assert "recovered" not in channel.texts_for("chat-1")
    session = await runtime.stores.sessions.get(outcome.session_id)
    assert session.error.node_id == "mystery"


@pytest.mark.asyncio
async def test_invalid_configuration_stops_the_session(engine, channel, install_flow, make_event):
    await install_flow([
        {"id": "start", "kind": "start", "config": {"nextNodeId": "check"}},
        {"id": "check", "kind": "condition", "config": {"operator": "equals", "errorNodeId": "recover"}},
        {"id": "recover", "kind": "end", "config": {"text": "recovered"}},
    ])

    outcome = await engine.handle_event("test-flow", make_event("go"))

    assert outcome.stopped_reason == StopReason.ERRORED
    assert outcome.error_code == "INVALID_CONFIGURATION"
    assert channel.texts_for("chat-1") == [settings.error_reply_text]


@pytest.mark.asyncio
async def test_runtime_failure_takes_the_error_edge(runtime, engine, channel, install_flow, make_event):
    await install_flow([
        {"id": "start", "kind": "start", "config": {"nextNodeId": "check"}},
        {"id": "check", "kind": "condition", "config": {
            "source": "input", "operator": "regex", "value": "([", "trueNodeId": "ok", "errorNodeId": "recover",
        }},
        {"id": "ok", "kind": "end", "config": {"text": "ok"}},
        {"id": "recover", "kind": "end", "config": {"text": "Problem at {last_error_node}: {last_error_code}"}},
    ])

    outcome = await engine.handle_event("test-flow", make_event("go"))

    assert outcome.stopped_reason == StopReason.COMPLETED
    assert channel.texts_for("chat-1") == ["Problem at check: NODE_EXECUTION_FAILED"]
    assert "error_edge_taken" in await activity_kinds(runtime)


@pytest.mark.asyncio
async def test_deactivated_flow_fails_closed_for_live_sessions(runtime, engine, channel, install_flow, make_event):
    await install_flow(GREETING_FLOW)
    await engine.handle_event("test-flow", make_event("hi"))
    await runtime.stores.flows.set_active("test-flow", False)

    live = await engine.handle_event("test-flow", make_event("Ada"))
    assert live.stopped_reason == StopReason.ERRORED
    assert live.error_code == "FLOW_INACTIVE"
    assert channel.texts_for("chat-1")[-1] == settings.error_reply_text

    newcomer = await engine.handle_event("test-flow", make_event("hi", chat_id="chat-2"))
    assert newcomer.stopped_reason == StopReason.IGNORED
    assert channel.texts_for("chat-2") == []


@pytest.mark.asyncio
async def test_errored_session_restarts_only_on_an_entry_trigger(runtime, engine, channel, install_flow, make_event):
    await install_flow([
        {"id": "start", "kind": "start", "config": {"triggers": ["start"], "nextNodeId": "ask"}},
        {"id": "ask", "kind": "input", "config": {"variable": "answer", "prompt": "Pick", "nextNodeId": "check"}},
        {"id": "check", "kind": "condition", "config": {
            "variable": "answer", "operator": "equals", "value": "boom", "trueNodeId": "broken", "falseNodeId": "fine",
        }},
        {"id": "broken", "kind": "teleport"},
        {"id": "fine", "kind": "end", "config": {"text": "ok"}},
    ])
    await engine.handle_event("test-flow", make_event("start"))
    failed = await engine.handle_event("test-flow", make_event("boom"))
    assert failed.error_code == "UNSUPPORTED_NODE"

    ignored = await engine.handle_event("test-flow", make_event("hello?"))
    assert ignored.stopped_reason == StopReason.ERRORED
    assert ignored.session_id == failed.session_id

    restarted = await engine.handle_event("test-flow", make_event("start"))
    assert restarted.stopped_reason == StopReason.PAUSED_INPUT
    assert restarted.session_id != failed.session_id
    assert (await runtime.stores.sessions.get(failed.session_id)).status == SessionStatus.EXPIRED
    assert channel.texts_for("chat-1")[-1] == "Pick"


# --- Calculations, transforms and forms ---

@pytest.mark.asyncio
async def test_calculator_totals_typed_input(runtime, engine, channel, install_flow, make_event):
    await install_flow([
        {"id": "start", "kind": "start", "config": {"nextNodeId": "price"}},
        {"id": "price", "kind": "variable", "config": {"name": "price", "value": 12.5, "nextNodeId": "ask"}},
        {"id": "ask", "kind": "input", "config": {"variable": "qty", "prompt": "How many?", "nextNodeId": "calc"}},
        {"id": "calc", "kind": "calculator", "config": {
            "expression": "price * qty", "variableName": "total", "format": "currency", "currency": "$", "nextNodeId": "bye",
        }},
        {"id": "bye", "kind": "end", "config": {"text": "Total {total}"}},
    ])

    await engine.handle_event("test-flow", make_event("go"))
    outcome = await engine.handle_event("test-flow", make_event("3"))

    assert outcome.stopped_reason == StopReason.COMPLETED
    assert channel.texts_for("chat-1") == ["How many?", "Total $37.50"]


@pytest.mark.asyncio
async def test_calculator_failure_takes_the_error_edge(engine, channel, install_flow, make_event):
    await install_flow([
        {"id": "start", "kind": "start", "config": {"nextNodeId": "ask"}},
        {"id": "ask", "kind": "input", "config": {"variable": "people", "prompt": "Split between how many?", "nextNodeId": "split"}},
        {"id": "split", "kind": "calculator", "config": {
            "expression": "120 / people", "variable": "share", "nextNodeId": "bye", "errorNodeId": "oops",
        }},
        {"id": "bye", "kind": "end", "config": {"text": "{share} each"}},
        {"id": "oops", "kind": "end", "config": {"text": "Can't split that"}},
    ])

    await engine.handle_event("test-flow", make_event("go", chat_id="chat-a"))
    await engine.handle_event("test-flow", make_event("4", chat_id="chat-a"))
    await engine.handle_event("test-flow", make_event("go", chat_id="chat-b"))
    await engine.handle_event("test-flow", make_event("nobody", chat_id="chat-b"))

    assert channel.texts_for("chat-a")[-1] == "30 each"
    assert channel.texts_for("chat-b")[-1] == "Can't split that"


@pytest.mark.asyncio
async def test_transform_reshapes_structured_input(runtime, engine, channel, install_flow, make_event):
    await install_flow([
        {"id": "start", "kind": "start", "config": {"nextNodeId": "ask"}},
        {"id": "ask", "kind": "input", "config": {"variable": "profile", "prompt": "Send your address", "nextNodeId": "shape"}},
        {"id": "shape", "kind": "transform", "config": {
            "expression": "{'city': upper(input.city), 'zip': input.zip, 'chat': user.chat_id}",
            "inputVariable": "profile", "variableName": "address", "nextNodeId": "bye",
        }},
        {"id": "bye", "kind": "end", "config": {"text": "Shipping to {address.city} {address.zip}"}},
    ])

    await engine.handle_event("test-flow", make_event("go"))
    outcome = await engine.handle_event("test-flow", make_event('{"city": "Lyon", "zip": "69001"}'))

    assert channel.texts_for("chat-1")[-1] == "Shipping to LYON 69001"
    session = await runtime.stores.sessions.get(outcome.session_id)
    assert session.variables["address"] == {"city": "LYON", "zip": "69001", "chat": "chat-1"}


SIGNUP_FORM = [
    {"id": "start", "kind": "start", "config": {"nextNodeId": "signup"}},
    {"id": "signup", "kind": "form", "config": {
        "text": "Let's sign you up",
        "fields": [
            {"name": "name", "prompt": "Your name?"},
            {"name": "email", "type": "email", "prompt": "Email?", "retryMessage": "That doesn't look like an email"},
            {"name": "age", "type": "number", "required": False, "label": "Age? (or skip)"},
        ],
        "submitText": "Thanks {name}, we'll write to {email}",
        "variable": "signup",
        "nextNodeId": "done",
    }},
    {"id": "done", "kind": "end", "config": {"text": "Saved"}},
]


@pytest.mark.asyncio
async def test_form_asks_each_field_in_turn(runtime, engine, channel, install_flow, make_event):
    await install_flow(SIGNUP_FORM)

    for text in ("go", "Ada", "nope", "ada@example.com"):
        outcome = await engine.handle_event("test-flow", make_event(text))
        assert outcome.stopped_reason == StopReason.PAUSED_INPUT
    outcome = await engine.handle_event("test-flow", make_event("skip"))

    assert outcome.stopped_reason == StopReason.COMPLETED
    assert channel.texts_for("chat-1") == [
        "Let's sign you up", "Your name?", "Email?", "That doesn't look like an email", "Age? (or skip)",
        "Thanks Ada, we'll write to ada@example.com", "Saved",
    ]
    session = await runtime.stores.sessions.get(outcome.session_id)
    assert session.variables["signup"] == {"name": "Ada", "email": "ada@example.com", "age": None}
    assert session.variables["form_signup_index"] == 0


@pytest.mark.asyncio
async def test_form_number_field_stores_a_number(runtime, engine, channel, install_flow, make_event):
    await install_flow(SIGNUP_FORM)

    for text in ("go", "Grace", "grace@example.com", "forty"):
        await engine.handle_event("test-flow", make_event(text))
    assert channel.texts_for("chat-1")[-1] == "Age? (or skip)"

    outcome = await engine.handle_event("test-flow", make_event("41"))

    session = await runtime.stores.sessions.get(outcome.session_id)
    assert session.variables["age"] == 41
    assert session.variables["signup"]["age"] == 41
