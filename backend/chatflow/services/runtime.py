# /chatflow/services/runtime.py

import random
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

import httpx

from chatflow.config.settings import Settings
from chatflow.engine.executor import FlowEngine
from chatflow.handlers.loader import load_builtin_handlers
from chatflow.models.flow import utcnow
from chatflow.services.activity_service import ActivityService, MemoryActivityLog, MongoActivityLog
from chatflow.services.cache_service import MemoryCacheService, cache_service
from chatflow.services.channel_service import MemoryChannel, WhatsAppChannel
from chatflow.services.db_service import DatabaseService
from chatflow.services.deferred_store import MemoryDeferredStore, MongoDeferredStore
from chatflow.services.flow_store import MemoryFlowStore, MongoFlowStore
from chatflow.services.group_store import MemoryGroupSessionStore, MongoGroupSessionStore
from chatflow.services.record_store import MemoryRecordStore, MongoRecordStore
from chatflow.services.session_store import MemorySessionStore, MongoSessionStore
from chatflow.services.variable_store import MemoryVariableStore, MongoVariableStore
from chatflow.utils.alerting import AlertingService, alerting_service
from chatflow.utils.locks import LocalSessionLocks, RedisSessionLocks
from chatflow.utils.queue import InboundQueue
from chatflow.workers.deferred_worker import DeferredWorker

# Wires stores, cache, channel, locks and workers into one runtime for the
# configured storage backend. The FastAPI lifespan, the scheduler process and
# the tests all build their engine through `build_runtime`.

logger = logging.getLogger(__name__)


@dataclass
class Stores:
    flows: Any
    sessions: Any
    groups: Any
    variables: Any
    records: Any
    deferred: Any
    activity_log: Any


def memory_stores(clock: Callable[[], datetime] = utcnow) -> Stores:
    return Stores(
        flows=MemoryFlowStore(),
        sessions=MemorySessionStore(clock),
        groups=MemoryGroupSessionStore(clock),
        variables=MemoryVariableStore(),
        records=MemoryRecordStore(),
        deferred=MemoryDeferredStore(clock),
        activity_log=MemoryActivityLog(),
    )


def mongo_stores(db, clock: Callable[[], datetime] = utcnow) -> Stores:
    return Stores(
        flows=MongoFlowStore(db),
        sessions=MongoSessionStore(db, clock),
        groups=MongoGroupSessionStore(db, clock),
        variables=MongoVariableStore(db),
        records=MongoRecordStore(db),
        deferred=MongoDeferredStore(db, clock),
        activity_log=MongoActivityLog(db),
    )


@dataclass
class Runtime:
    settings: Settings
    stores: Stores
    cache: Any
    channel: Any
    locks: Any
    activity: ActivityService
    engine: FlowEngine
    deferred_worker: DeferredWorker
    inbound_queue: InboundQueue
    http_client: httpx.AsyncClient
    alerting: AlertingService
    db_service: Optional[DatabaseService] = None

    async def start(self, workers: bool = True):
        if self.db_service:
            await self.db_service.create_indexes()
        if workers:
            await self.inbound_queue.start_workers()
            await self.deferred_worker.start_workers()
        logger.info(f"Runtime started with the '{self.settings.storage_backend}' backend.")

    async def stop(self):
        await self.inbound_queue.stop_workers()
        await self.deferred_worker.stop_workers()
        await self.channel.close()
        await self.http_client.aclose()
        await self.alerting.cleanup()
        if self.db_service:
            self.db_service.close()

    async def health(self) -> dict:
        database = await self.db_service.ping() if self.db_service else True
        cache = await self.cache.ping()
        return {"database": "connected" if database else "error", "cache": "connected" if cache else "error"}


def build_runtime(settings: Settings, *, stores: Optional[Stores] = None, cache=None, channel=None,
                  http_client: Optional[httpx.AsyncClient] = None, alerting: Optional[AlertingService] = None,
                  clock: Callable[[], datetime] = utcnow, rng: Optional[random.Random] = None) -> Runtime:
    registry = load_builtin_handlers()
    http_client = http_client or httpx.AsyncClient(timeout=settings.external_call_timeout_seconds)
    db_service = None

    if settings.storage_backend == "memory":
        stores = stores or memory_stores(clock)
        cache = cache or MemoryCacheService(clock)
        channel = channel or (WhatsAppChannel(settings) if settings.whatsapp_access_token else MemoryChannel())
    else:
        if stores is None:
            db_service = DatabaseService(settings)
            stores = mongo_stores(db_service.db, clock)
        cache = cache or cache_service
        channel = channel or WhatsAppChannel(settings)

    if cache.redis is not None and settings.use_redis:
        locks = RedisSessionLocks(cache.redis, settings.session_lock_timeout_seconds, settings.session_lock_wait_seconds)
    else:
        locks = LocalSessionLocks(settings.session_lock_wait_seconds)

    activity = ActivityService(stores.activity_log, cache)
    engine = FlowEngine(
        settings=settings, registry=registry, flows=stores.flows, sessions=stores.sessions,
        groups=stores.groups, variables=stores.variables, records=stores.records, deferred=stores.deferred,
        activity=activity, cache=cache, channel=channel, locks=locks, http_client=http_client,
        rng=rng, clock=clock,
    )
    alerting = alerting or alerting_service
    return Runtime(
        settings=settings, stores=stores, cache=cache, channel=channel, locks=locks, activity=activity,
        engine=engine, deferred_worker=DeferredWorker(engine, stores.deferred, activity, alerting, settings),
        inbound_queue=InboundQueue(engine, cache, settings), http_client=http_client, alerting=alerting,
        db_service=db_service,
    )
