"""
Scheduled marketplace polls.

Three cron tiers run inside the FastAPI process. Each tier checks the
listings due at that tier and pulls marketplace order status changes for
its look-back window; everything it finds is queued for reconciliation.
"""

import logging
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from app.core.config import Settings
from app.core.enums import PollTier
from app.core.exceptions import BaseServiceError
from app.services.marketplace_poller import MarketplacePoller

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


async def poll_tier_task(poller: MarketplacePoller, tier: PollTier):
    """Task to run one poll tier"""
    logger.info("=== SCHEDULED %s POLL STARTING ===", tier.value.upper())
    try:
        summary = await poller.run_tier(tier)
        logger.info("Scheduled %s poll completed: %s", tier.value, summary)
    except BaseServiceError as e:
        # Marketplace outages are retried by the next run
        logger.error("Scheduled %s poll failed: %s", tier.value, e)


def job_listener(event):
    """Log the outcome of every scheduled poll run"""
    if event.code == EVENT_JOB_MISSED:
        logger.warning("Poll job %s missed its run at %s", event.job_id, event.scheduled_run_time)
    elif event.exception:
        logger.error("Poll job %s crashed: %s", event.job_id, event.exception)
    else:
        logger.debug("Poll job %s finished", event.job_id)


def create_scheduler(poller: MarketplacePoller, settings: Settings) -> AsyncIOScheduler:
    """Create and configure the scheduler"""
    global scheduler

    if scheduler is not None:
        return scheduler

    scheduler = AsyncIOScheduler()
    scheduler.add_listener(job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED)

    if not settings.SCHEDULER_ENABLED:
        logger.info("Scheduled polling is disabled. Set SCHEDULER_ENABLED=true to enable")
        return scheduler

    schedules = {
        PollTier.FREQUENT: settings.POLL_FREQUENT_CRON,
        PollTier.HOURLY: settings.POLL_HOURLY_CRON,
        PollTier.DAILY: settings.POLL_DAILY_CRON,
    }
    for tier, crontab in schedules.items():
        scheduler.add_job(
            poll_tier_task,
            CronTrigger.from_crontab(crontab),
            args=[poller, tier],
            id=f"marketplace_poll_{tier.value}",
            name=f"Marketplace Poll ({tier.value})",
            replace_existing=True,
            max_instances=1,  # Never overlap runs of the same tier
            coalesce=True,
            misfire_grace_time=600,
        )
        logger.info(f"Scheduled {tier.value} poll with schedule: {crontab}")

    return scheduler


async def start_scheduler(poller: MarketplacePoller, settings: Settings):
    """Start the scheduler"""
    global scheduler

    if scheduler is None:
        scheduler = create_scheduler(poller, settings)

    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started successfully")

        jobs = scheduler.get_jobs()
        if jobs:
            logger.info(f"Active scheduled jobs: {len(jobs)}")
            for job in jobs:
                logger.info(f"  - {job.name}: {job.trigger}")
        else:
            logger.info("No scheduled jobs configured")


async def stop_scheduler():
    """Stop the scheduler gracefully"""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped successfully")
    scheduler = None


async def get_scheduler_status():
    """Scheduler state plus the next run of each poll tier"""
    if scheduler is None:
        return {"status": "not_initialized", "jobs": []}

    jobs_info = [
        {
            "id": job.id,
            "tier": job.args[1].value if len(job.args) > 1 else None,
            "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            "trigger": str(job.trigger),
        }
        for job in scheduler.get_jobs()
    ]
    return {"status": "running" if scheduler.running else "stopped", "jobs": jobs_info}
