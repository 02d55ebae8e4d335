# /chatflow/utils/queue.py

import json
import uuid
import asyncio
import logging
import redis as redis_package
from typing import Dict, List, Optional, Set

from chatflow.engine.errors import FlowError, FlowNotFoundError
from chatflow.models.events import ActivityEvent, ActivityLevel, InboundEvent

# Hands inbound chat events to the engine. With Redis available, events go
# through a Redis Stream consumed by a pool of workers, so the webhook can
# answer immediately; without Redis they run as in-process tasks.
#
# An event that loses a lock or version race is retried a few times. Once
# its attempts are used up it is acknowledged and reported to the flow owner
# as an error activity, so nothing stays stuck in the stream's pending list.

logger = logging.getLogger(__name__)


class InboundQueue:
    def __init__(self, engine, cache, settings, stream_name: str = None, max_workers: int = None):
        self.engine = engine
        self.cache = cache
        self.redis = cache.redis
        self.settings = settings
        self.stream_name = stream_name or settings.inbound_stream_name
        self.consumer_group = "chatflow_engines"
        self.max_workers = max_workers or settings.inbound_queue_workers
        self.workers: List[asyncio.Task] = []
        self.pending: Set[asyncio.Task] = set()
        self.running = False

    async def initialize(self):
        if not self.redis: return
        try:
            await self.redis.xgroup_create(self.stream_name, self.consumer_group, id="0", mkstream=True)
        except redis_package.exceptions.ResponseError as e:
            if "BUSYGROUP" not in str(e): raise

    async def start_workers(self):
        if not self.redis: return
        await self.initialize()
        self.running = True
        for i in range(self.max_workers):
            self.workers.append(asyncio.create_task(self._worker(f"engine-{i}-{uuid.uuid4().hex[:4]}")))
        self.workers.append(asyncio.create_task(self._reclaimer(f"reclaimer-{uuid.uuid4().hex[:4]}")))
        logger.info(f"Started {self.max_workers} inbound queue workers on stream '{self.stream_name}'.")

    async def stop_workers(self):
        self.running = False
        for worker in self.workers:
            worker.cancel()
        await asyncio.gather(*self.workers, return_exceptions=True)
        self.workers = []
        await self.wait_idle()

    async def _worker(self, consumer_name: str):
        while self.running:
            try:
                messages = await self.redis.xreadgroup(self.consumer_group, consumer_name, {self.stream_name: ">"}, count=1, block=1000)
                if not messages: continue

                stream_name, stream_messages = messages[0]
                for message_id, fields in stream_messages:
                    await self._consume(message_id, fields)
            except Exception as e:
                if self.running:
                    logger.error(f"Inbound worker '{consumer_name}' error: {e}")
                    await asyncio.sleep(5)

    async def _reclaimer(self, consumer_name: str):
        """Takes over messages left unacknowledged by a consumer that died mid-run."""
        idle_ms = int(self.settings.inbound_reclaim_idle_seconds * 1000)
        while self.running:
            try:
                _, claimed, *_ = await self.redis.xautoclaim(
                    self.stream_name, self.consumer_group, consumer_name, min_idle_time=idle_ms, start_id="0-0", count=10
                )
                for message_id, fields in claimed:
                    if fields:
                        logger.warning(f"Reclaimed inbound event {message_id.decode()} from an idle consumer")
                        await self._consume(message_id, fields)
                    else:
                        await self.redis.xack(self.stream_name, self.consumer_group, message_id)
            except Exception as e:
                if self.running:
                    logger.error(f"Inbound reclaimer error: {e}")
            await asyncio.sleep(self.settings.inbound_reclaim_interval_seconds)

    async def _consume(self, message_id: bytes, fields: Dict):
        try:
            data = json.loads(fields[b'data'].decode())
            await self._process_logged(data["flow_id"], InboundEvent.model_validate(data["event"]))
        except Exception as e:
            logger.error(f"Discarding unreadable inbound event {message_id.decode()}: {e}", exc_info=True)
        await self.redis.xack(self.stream_name, self.consumer_group, message_id)

    async def process(self, flow_id: str, event: InboundEvent):
        """
        Runs one event through the engine. Retryable engine errors (lock wait
        timeouts, lost version checks) are retried with a growing delay; the
        last error is raised once the attempts are used up.
        """
        attempts = self.settings.inbound_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                outcome = await self.engine.handle_event(flow_id, event)
            except FlowError as e:
                if not e.retryable or attempt == attempts:
                    raise
                delay = self.settings.inbound_retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(f"Event from {event.chat_id} on flow {flow_id} hit {e.code} (attempt {attempt}), retrying in {delay}s")
                await asyncio.sleep(delay)
                continue
            logger.info(f"Event from {event.chat_id} on flow {flow_id}: {outcome.stopped_reason} after {outcome.steps} steps")
            return outcome

    async def _process_logged(self, flow_id: str, event: InboundEvent):
        try:
            await self.process(flow_id, event)
        except Exception as e:
            logger.error(f"Failed to process event from {event.chat_id} on flow {flow_id}: {e}", exc_info=True)
            await self.report_dropped(flow_id, event, e)

    async def report_dropped(self, flow_id: str, event: InboundEvent, error: Exception):
        owner_id = await self._owner_of(flow_id)
        code = error.code if isinstance(error, FlowError) else type(error).__name__
        await self.engine.activity.record(ActivityEvent(
            kind="event_dropped", level=ActivityLevel.ERROR,
            message=f"Inbound event from {event.chat_id} could not be processed: {error}",
            owner_id=owner_id, flow_id=flow_id, session_key=f"{flow_id}:{event.chat_id}",
            metadata={"code": code, "message_id": event.message_id, "attempts": self.settings.inbound_max_attempts},
        ))

    async def _owner_of(self, flow_id: str) -> Optional[str]:
        try:
            return (await self.engine.flows.get(flow_id)).owner_id
        except FlowNotFoundError:
            return None

    async def submit(self, flow_id: str, event: InboundEvent) -> bool:
        """Queues an event for processing. Returns False for a duplicate delivery."""
        if await self.is_duplicate(event):
            logger.info(f"Duplicate delivery of message {event.message_id} from {event.chat_id} ignored")
            return False
        if self.redis and self.running:
            payload: Dict = {"flow_id": flow_id, "event": event.model_dump(mode="json")}
            await self.redis.xadd(self.stream_name, {"data": json.dumps(payload)})
        else:
            task = asyncio.create_task(self._process_logged(flow_id, event))
            self.pending.add(task)
            task.add_done_callback(self.pending.discard)
        return True

    def _dedupe_key(self, event: InboundEvent) -> str:
        return f"chatflow:processed:{event.channel_id or 'default'}:{event.chat_id}:{event.message_id}"

    async def is_duplicate(self, event: InboundEvent) -> bool:
        """Channel redeliveries carry the same message id; the first claim wins."""
        if not event.message_id:
            return False
        return not await self.cache.set_once(self._dedupe_key(event), self.settings.dedupe_ttl_seconds)

    async def release(self, event: InboundEvent):
        """Forgets a delivery claim so a redelivery of the same message is processed."""
        if event.message_id:
            await self.cache.release(self._dedupe_key(event))

    async def wait_idle(self):
        """Waits for in-process tasks submitted so far."""
        while self.pending:
            await asyncio.gather(*list(self.pending), return_exceptions=True)
