"""Background job scheduler.

APScheduler-based sweep that fires durable escalation deadlines. The
deadlines live on the alert rows, so a restarted process simply picks up
where the previous one stopped.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from serenity_crisis.config import settings
from serenity_crisis.database import get_session_maker
from serenity_crisis.logging_config import get_logger
from serenity_crisis.services.escalation_scheduler import process_due_escalations

logger = get_logger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def sweep_due_escalations() -> int:
    """Escalate every alert whose response window or lease has expired.

    Runs every few seconds; ``max_instances=1`` keeps sweeps from
    overlapping within a process, and the alert version counter keeps
    sweeps from different processes from double-escalating.

    Returns:
        Number of alerts moved forward.
    """
    try:
        async with get_session_maker()() as db:
            return await process_due_escalations(db)
    except Exception as e:
        logger.error("Escalation sweep failed", error=str(e))
        return 0


def start_scheduler() -> AsyncIOScheduler:
    """Start the background job scheduler.

    Returns:
        The started scheduler instance
    """
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already running")
        return scheduler

    scheduler = AsyncIOScheduler()

    if settings.escalation_sweep_enabled:
        scheduler.add_job(
            sweep_due_escalations,
            trigger=IntervalTrigger(seconds=settings.escalation_sweep_interval_seconds),
            id="escalation_sweep",
            name="Crisis Escalation Deadline Sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(
            "Scheduled escalation sweep job",
            interval_seconds=settings.escalation_sweep_interval_seconds,
        )

    scheduler.start()
    logger.info("Background scheduler started")

    return scheduler


def stop_scheduler() -> None:
    """Stop the background job scheduler."""
    global scheduler

    if scheduler is not None:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Background scheduler stopped")


def get_scheduler() -> AsyncIOScheduler | None:
    """Get the current scheduler instance, None if not started."""
    return scheduler

