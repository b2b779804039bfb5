from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from datetime import datetime, timedelta
from typing import Callable
import logging

from eventpay.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

RETRY_JOB_PREFIX = "notify_retry_"


def init_scheduler():
    """Initialize the scheduler with job stores."""
    scheduler.configure(jobstores={
        'default': SQLAlchemyJobStore(url=settings.database_url)
    })
    scheduler.start()
    logger.info("Scheduler started")


def shutdown_scheduler():
    """Shutdown the scheduler."""
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler shutdown")


def pending_retry_count() -> int:
    return sum(1 for job in scheduler.get_jobs() if job.id.startswith(RETRY_JOB_PREFIX))


def schedule_retry(func: Callable, job_key: str, delay_seconds: float, args: list) -> bool:
    """
    Schedule a one-off retry job. Returns False when the scheduler is not
    running or the retry backlog is full; the caller logs and drops.
    """
    if not scheduler.running:
        logger.warning(f"Scheduler not running, cannot schedule retry {job_key}")
        return False

    if pending_retry_count() >= settings.notification_max_pending:
        logger.error(f"Retry backlog full ({settings.notification_max_pending}), dropping {job_key}")
        return False

    run_date = datetime.now() + timedelta(seconds=delay_seconds)
    scheduler.add_job(
        func,
        'date',
        run_date=run_date,
        args=args,
        id=f"{RETRY_JOB_PREFIX}{job_key}",
        replace_existing=True
    )
    logger.info(f"Scheduled retry {job_key} at {run_date}")
    return True
