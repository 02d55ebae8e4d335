import inspect
import itertools
import random
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest
from dotenv import load_dotenv
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock

# Load the test environment FIRST, before any chatflow import builds `settings`.
load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env.test", override=True)

from chatflow.config.settings import settings  # noqa: E402
from chatflow.models.events import InboundEvent  # noqa: E402
from chatflow.models.flow import FlowDefinition, FlowNode  # noqa: E402
from chatflow.services.channel_service import MemoryChannel  # noqa: E402
from chatflow.services.runtime import build_runtime  # noqa: E402
from chatflow.utils.alerting import AlertingService  # noqa: E402


class FakeClock:
    """Controllable clock shared by the engine and the memory stores."""

    def __init__(self, start: datetime = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


class RemoteEndpoint:
    """Stands in for every HTTP service reached by webhook, api and integration nodes."""

    def __init__(self):
        self.requests = []
        self.handler = lambda request: httpx.Response(200, json={"ok": True})

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        result = self.handler(request)
        if inspect.isawaitable(result):
            result = await result
        return result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def remote():
    return RemoteEndpoint()


@pytest.fixture
def runtime(clock, remote):
    return build_runtime(
        settings,
        channel=MemoryChannel(),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(remote)),
        alerting=AlertingService(None),
        clock=clock,
        rng=random.Random(7),
    )


@pytest.fixture
def engine(runtime):
    return runtime.engine


@pytest.fixture
def channel(runtime):
    return runtime.channel


@pytest.fixture
def build_flow():
    """Builds a flow from compact node dicts: {"id", "kind", "config"}."""
    def _build(nodes, flow_id="test-flow", owner_id="owner-1", active=True) -> FlowDefinition:
        return FlowDefinition(
            id=flow_id,
            owner_id=owner_id,
            name=flow_id,
            active=active,
            nodes=[FlowNode(id=n["id"], kind=n["kind"], configuration=n.get("config", {})) for n in nodes],
        )
    return _build


@pytest.fixture
def make_event():
    message_ids = itertools.count(1)

    def _make(text=None, chat_id="chat-1", user_id=None, selection=None, attachments=None) -> InboundEvent:
        return InboundEvent(
            chat_id=chat_id,
            user_id=user_id or chat_id,
            text=text,
            selection=selection,
            attachments=attachments or [],
            message_id=f"wamid.{next(message_ids)}",
        )
    return _make


@pytest.fixture
def install_flow(runtime, build_flow):
    """Builds a flow and stores it in the runtime's flow store."""
    async def _install(nodes, **kwargs) -> FlowDefinition:
        flow = build_flow(nodes, **kwargs)
        await runtime.stores.flows.save(flow)
        return flow
    return _install


@pytest.fixture(scope="function")
def test_client(mocker):
    """
    Provides a TestClient whose lifespan builds a fresh memory-backed runtime.
    Background workers are not started in the test environment.
    """
    from chatflow.main import app

    mocker.patch("chatflow.utils.queue.InboundQueue.start_workers", new_callable=AsyncMock)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def api_headers():
    return {"X-API-KEY": settings.api_key}
