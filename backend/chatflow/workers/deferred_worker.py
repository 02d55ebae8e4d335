# /chatflow/workers/deferred_worker.py

import uuid
import asyncio
import logging
from datetime import timedelta
from typing import List, Optional

from chatflow.engine.executor import FlowEngine, ExecutionOutcome
from chatflow.models.events import ActivityEvent, ActivityLevel, DeferredWorkItem
from chatflow.utils.metrics import deferred_work_counter

# Consumes due deferred work items (delay/timer resumes, group broadcasts and
# group advances). A failing item is retried with a growing delay until its
# attempts run out, then marked failed and reported to the flow owner.

logger = logging.getLogger(__name__)


class DeferredWorker:
    def __init__(self, engine: FlowEngine, store, activity, alerting, settings, max_workers: Optional[int] = None):
        self.engine = engine
        self.store = store
        self.activity = activity
        self.alerting = alerting
        self.settings = settings
        self.max_workers = max_workers or settings.deferred_workers
        self.workers: List[asyncio.Task] = []
        self.running = False

    async def start_workers(self):
        self.running = True
        for i in range(self.max_workers):
            self.workers.append(asyncio.create_task(self._worker(f"deferred-{i}-{uuid.uuid4().hex[:4]}")))
        logger.info(f"Started {self.max_workers} deferred work consumers.")

    async def stop_workers(self):
        self.running = False
        for worker in self.workers:
            worker.cancel()
        await asyncio.gather(*self.workers, return_exceptions=True)
        self.workers = []

    async def _worker(self, consumer_name: str):
        while self.running:
            try:
                if await self.run_once() is None:
                    await asyncio.sleep(self.settings.deferred_poll_interval_seconds)
            except Exception as e:
                if self.running:
                    logger.error(f"Deferred consumer '{consumer_name}' error: {e}", exc_info=True)
                    await asyncio.sleep(5)

    async def run_once(self) -> Optional[ExecutionOutcome]:
        """Claims and executes one due item. Returns None when nothing was due."""
        item = await self.store.claim_due(self.settings.deferred_lease_seconds, self.settings.deferred_max_attempts)
        if item is None:
            return None
        try:
            outcome = await self.engine.resume(item)
        except Exception as e:
            await self._handle_failure(item, e)
            return ExecutionOutcome(stopped_reason="failed", session_key=item.target_session_key,
                                    group_session_id=item.target_group_session_id, error_code=type(e).__name__)
        await self.store.complete(item.id)
        deferred_work_counter.labels(kind=item.kind, outcome=outcome.stopped_reason).inc()
        return outcome

    async def drain(self, limit: int = 100) -> List[ExecutionOutcome]:
        """Runs every item that is due right now. Used by the scheduler and tests."""
        outcomes = []
        for _ in range(limit):
            outcome = await self.run_once()
            if outcome is None:
                break
            outcomes.append(outcome)
        return outcomes

    async def _handle_failure(self, item: DeferredWorkItem, error: Exception):
        message = f"{type(error).__name__}: {error}"
        if item.attempts < self.settings.deferred_max_attempts:
            delay = self.settings.deferred_retry_backoff_seconds * (2 ** (item.attempts - 1))
            await self.store.retry(item.id, message, self.engine.clock() + timedelta(seconds=delay))
            deferred_work_counter.labels(kind=item.kind, outcome="retry").inc()
            logger.warning(f"Deferred item {item.idempotency_key} failed (attempt {item.attempts}), retrying in {delay}s: {message}")
            return
        await self.store.fail(item.id, message)
        await self.report_failed(item, message)

    async def sweep_abandoned(self) -> int:
        """Fails items whose worker died while holding their last lease."""
        abandoned = await self.store.collect_abandoned(self.settings.deferred_max_attempts)
        for item in abandoned:
            await self.report_failed(item, item.last_error or "lease expired")
        return len(abandoned)

    async def report_failed(self, item: DeferredWorkItem, message: str):
        deferred_work_counter.labels(kind=item.kind, outcome="failed").inc()
        logger.error(f"Deferred item {item.idempotency_key} failed permanently after {item.attempts} attempts: {message}")
        owner_id, flow_id = await self._owner_of(item)
        await self.activity.record(ActivityEvent(
            kind="deferred_failed", level=ActivityLevel.ERROR,
            message=f"Scheduled {item.kind} could not be delivered: {message}",
            owner_id=owner_id, flow_id=flow_id, session_key=item.target_session_key,
            group_session_id=item.target_group_session_id,
            metadata={"idempotency_key": item.idempotency_key, "attempts": item.attempts},
        ))
        await self.alerting.send_critical_alert(
            "Deferred work failed permanently",
            {"idempotency_key": item.idempotency_key, "kind": item.kind, "error": message},
        )

    async def _owner_of(self, item: DeferredWorkItem):
        if item.target_group_session_id:
            group = await self.engine.groups.get(item.target_group_session_id)
            flow_id = group.flow_id if group else None
        else:
            flow_id = (item.target_session_key or "").split(":", 1)[0] or None
        if not flow_id:
            return None, None
        try:
            flow = await self.engine.flows.get(flow_id)
        except Exception:
            logger.warning(f"Could not resolve owner of flow {flow_id} for failed deferred item")
            return None, flow_id
        return flow.owner_id, flow_id
