"""Background job scheduler for assessment housekeeping."""

import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError

from compass.api.services.orchestrator import get_orchestrator
from compass.core.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def run_pending_assessments():
    """Launch assessments still waiting in Pending."""
    logger.debug(f"Checking for pending assessments at {datetime.utcnow()}")
    try:
        launched = await get_orchestrator().process_pending()
    except SQLAlchemyError as e:
        logger.error(f"Pending assessment check failed: {e}")
        return
    if launched:
        logger.info(f"Pending assessment check launched {launched} assessments")


async def fail_stale_assessments():
    """Fail assessments left InProgress by a process that no longer runs them."""
    try:
        failed = get_orchestrator().fail_stale_assessments()
    except SQLAlchemyError as e:
        logger.error(f"Stale assessment sweep failed: {e}")
        return
    if failed:
        logger.warning(f"Marked {failed} stale assessments as interrupted")


def init_scheduler() -> AsyncIOScheduler:
    """Initialize and configure the background scheduler."""
    global scheduler

    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        run_pending_assessments,
        trigger=IntervalTrigger(minutes=settings.pending_assessment_poll_minutes),
        id="run_pending_assessments",
        name="Run Pending Assessments",
        replace_existing=True,
    )

    scheduler.add_job(
        fail_stale_assessments,
        trigger=IntervalTrigger(minutes=settings.pending_assessment_poll_minutes),
        id="fail_stale_assessments",
        name="Fail Stale Assessments",
        replace_existing=True,
    )

    logger.info("Scheduler initialized with assessment jobs")
    return scheduler


def get_scheduler() -> AsyncIOScheduler | None:
    """Get the scheduler instance."""
    return scheduler
