# backend/tests/unit/test_stores.py
from datetime import timedelta

import pytest

from chatflow.engine.errors import ConcurrentModificationError, GroupSessionError
from chatflow.models.events import DeferredStatus, DeferredWorkItem
from chatflow.models.session import GroupSession, GroupSessionStatus, Session, SessionStatus
from chatflow.services.cache_service import MemoryCacheService
from chatflow.services.deferred_store import MemoryDeferredStore
from chatflow.services.group_store import MemoryGroupSessionStore, set_path
from chatflow.services.session_store import MemorySessionStore
from chatflow.services.variable_store import MemoryVariableStore


def new_session(chat_id="chat-1") -> Session:
    return Session(session_key=f"flow-1:{chat_id}", flow_id="flow-1", chat_id=chat_id, user_id=chat_id)


# --- Sessions ---

@pytest.mark.asyncio
async def test_stale_session_save_is_rejected(clock):
    store = MemorySessionStore(clock)
    await store.create(new_session())
    first = await store.get_active("flow-1:chat-1")
    second = await store.get_active("flow-1:chat-1")

    first.variables["name"] = "Ada"
    await store.save(first)

    second.variables["name"] = "Grace"
    with pytest.raises(ConcurrentModificationError):
        await store.save(second)
    assert (await store.get(first.id)).variables == {"name": "Ada"}


@pytest.mark.asyncio
async def test_only_one_active_session_per_key(clock):
    store = MemorySessionStore(clock)
    await store.create(new_session())
    with pytest.raises(ConcurrentModificationError):
        await store.create(new_session())


@pytest.mark.asyncio
async def test_expire_idle_only_touches_old_active_sessions(clock):
    store = MemorySessionStore(clock)
    old = await store.create(Session(session_key="flow-1:old", flow_id="flow-1", chat_id="old", user_id="old",
                                     last_activity_at=clock()))
    clock.advance(hours=2)
    fresh = Session(session_key="flow-1:fresh", flow_id="flow-1", chat_id="fresh", user_id="fresh",
                    last_activity_at=clock())
    await store.create(fresh)

    assert await store.expire_idle(clock() - timedelta(hours=1)) == 1
    assert (await store.get(old.id)).status == SessionStatus.EXPIRED
    assert (await store.get_active("flow-1:fresh")) is not None


# --- Group sessions ---

@pytest.mark.asyncio
async def test_joining_twice_keeps_one_membership(clock):
    store = MemoryGroupSessionStore(clock)
    group = await store.create(GroupSession(flow_id="flow-1", max_size=3))

    _, added = await store.add_participant(group.id, "alice", "chat-alice")
    again, added_again = await store.add_participant(group.id, "alice", "chat-alice")

    assert added is True
    assert added_again is False
    assert again.participant_ids == ["alice"]


@pytest.mark.asyncio
async def test_full_group_rejects_new_participants(clock):
    store = MemoryGroupSessionStore(clock)
    group = await store.create(GroupSession(flow_id="flow-1", max_size=1))
    await store.add_participant(group.id, "alice", "chat-alice")

    with pytest.raises(GroupSessionError) as exc_info:
        await store.add_participant(group.id, "bob", "chat-bob")
    assert exc_info.value.reason == "full"
    assert await store.find_open("flow-1") is None


@pytest.mark.asyncio
async def test_last_participant_leaving_completes_the_group(clock):
    store = MemoryGroupSessionStore(clock)
    group = await store.create(GroupSession(flow_id="flow-1"))
    await store.add_participant(group.id, "alice", "chat-alice")

    updated, removed = await store.remove_participant(group.id, "alice")
    assert removed is True
    assert updated.status == GroupSessionStatus.COMPLETED

    _, removed_again = await store.remove_participant(group.id, "alice")
    assert removed_again is False


@pytest.mark.asyncio
async def test_shared_variable_patches_use_dotted_paths(clock):
    store = MemoryGroupSessionStore(clock)
    group = await store.create(GroupSession(flow_id="flow-1", shared_variables={"votes": {"alice": "pizza"}}))

    await store.set_shared_variables(group.id, {"votes.bob": "sushi", "round": 2})

    stored = await store.get(group.id)
    assert stored.shared_variables == {"votes": {"alice": "pizza", "bob": "sushi"}, "round": 2}


def test_set_path_replaces_scalars_on_the_way():
    target = {"a": 1}
    set_path(target, "a.b.c", True)
    assert target == {"a": {"b": {"c": True}}}


# --- Deferred work ---

@pytest.mark.asyncio
async def test_enqueue_is_idempotent_by_key(clock):
    store = MemoryDeferredStore(clock)
    first = DeferredWorkItem(target_session_key="flow-1:chat-1", idempotency_key="s1:wait:0.1:delay", due_at=clock())
    second = DeferredWorkItem(target_session_key="flow-1:chat-1", idempotency_key="s1:wait:0.1:delay", due_at=clock())

    assert await store.enqueue(first) is True
    assert await store.enqueue(second) is False
    assert len(await store.list()) == 1


@pytest.mark.asyncio
async def test_claim_respects_due_time_and_lease(clock):
    store = MemoryDeferredStore(clock)
    await store.enqueue(DeferredWorkItem(
        target_session_key="flow-1:chat-1", idempotency_key="later", due_at=clock() + timedelta(minutes=5),
    ))
    assert await store.claim_due(lease_seconds=60, max_attempts=3) is None

    clock.advance(minutes=5)
    claimed = await store.claim_due(lease_seconds=60, max_attempts=3)
    assert claimed.attempts == 1
    assert claimed.status == DeferredStatus.PROCESSING
    # Leased items are invisible to other workers until the lease runs out.
    assert await store.claim_due(lease_seconds=60, max_attempts=3) is None

    clock.advance(seconds=61)
    reclaimed = await store.claim_due(lease_seconds=60, max_attempts=3)
    assert reclaimed.id == claimed.id
    assert reclaimed.attempts == 2


@pytest.mark.asyncio
async def test_abandoned_items_on_their_last_attempt_are_failed(clock):
    store = MemoryDeferredStore(clock)
    await store.enqueue(DeferredWorkItem(target_session_key="flow-1:chat-1", idempotency_key="k", due_at=clock()))
    await store.claim_due(lease_seconds=10, max_attempts=1)

    clock.advance(seconds=11)
    abandoned = await store.collect_abandoned(max_attempts=1)

    assert [item.idempotency_key for item in abandoned] == ["k"]
    assert (await store.get_by_key("k")).status == DeferredStatus.FAILED


# --- Variables and cache ---

@pytest.mark.asyncio
async def test_variable_scopes_are_isolated_per_owner():
    store = MemoryVariableStore()
    await store.merge("owner-1", "user", "alice", {"points": 3})
    await store.merge("owner-2", "user", "alice", {"points": 99})
    await store.merge("owner-1", "user", "alice", {"profile.city": "Lyon"})

    assert await store.get("owner-1", "user", "alice") == {"points": 3, "profile": {"city": "Lyon"}}
    assert await store.get("owner-1", "global") == {}


@pytest.mark.asyncio
async def test_set_once_claims_a_key_until_it_expires(clock):
    cache = MemoryCacheService(clock)
    assert await cache.set_once("chatflow:effect:abc", ttl=60) is True
    assert await cache.set_once("chatflow:effect:abc", ttl=60) is False

    clock.advance(seconds=61)
    assert await cache.set_once("chatflow:effect:abc", ttl=60) is True
