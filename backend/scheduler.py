# /backend/scheduler.py

import asyncio
import logging
from datetime import timedelta
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from chatflow.config.settings import settings
from chatflow.models.flow import utcnow
from chatflow.services.runtime import Runtime, build_runtime
from chatflow.utils.logging import setup_logging

# Periodic maintenance for the engine, run as its own process next to the API:
# idle session expiry, idle group archival and a fallback deferred-work poll
# for deployments that run the API without its in-process deferred workers.

logger = logging.getLogger("SchedulerService")


async def expire_idle_sessions(runtime: Runtime):
    cutoff = utcnow() - timedelta(seconds=settings.session_idle_ttl_seconds)
    expired = await runtime.stores.sessions.expire_idle(cutoff)
    if expired:
        logger.info(f"Expired {expired} idle sessions (inactive since {cutoff.isoformat()}).")


async def archive_idle_groups(runtime: Runtime):
    cutoff = utcnow() - timedelta(days=settings.group_idle_archive_days)
    archived = await runtime.stores.groups.archive_idle(cutoff)
    if archived:
        logger.info(f"Archived {archived} idle group sessions.")


async def poll_deferred_work(runtime: Runtime):
    outcomes = await runtime.deferred_worker.drain()
    abandoned = await runtime.deferred_worker.sweep_abandoned()
    if outcomes or abandoned:
        logger.info(f"Deferred poll ran {len(outcomes)} items, failed {abandoned} abandoned items.")


def schedule_jobs(scheduler: AsyncIOScheduler, runtime: Runtime):
    scheduler.add_job(expire_idle_sessions, "interval", minutes=15, args=[runtime], id="expire_idle_sessions_job")
    logger.info("Scheduled job: expire_idle_sessions (every 15 minutes).")

    scheduler.add_job(archive_idle_groups, "cron", hour=3, minute=0, args=[runtime], id="archive_idle_groups_job")
    logger.info("Scheduled job: archive_idle_groups (daily at 3 AM).")

    scheduler.add_job(
        poll_deferred_work, "interval", seconds=30, args=[runtime],
        id="deferred_work_poll_job", max_instances=1, coalesce=True, replace_existing=True,
    )
    logger.info("Scheduled job: poll_deferred_work (every 30 seconds).")


async def main():
    setup_logging()
    runtime = build_runtime(settings)
    await runtime.start(workers=False)

    scheduler = AsyncIOScheduler(timezone="UTC")
    schedule_jobs(scheduler, runtime)
    scheduler.start()
    logger.info("Scheduler started successfully. Press Ctrl+C to exit.")

    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        scheduler.shutdown()
        await runtime.stop()


if __name__ == "__main__":
    asyncio.run(main())
