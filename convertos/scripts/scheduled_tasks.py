"""
Scheduled Tasks for ConvertOS Core

Periodic background work:
1. Secret Sweep - clear previous webhook secrets past their grace window

Verification checks the grace window itself, so the sweep is cleanup
only and missing a run never lets an expired secret through.

Uses APScheduler for in-process scheduling. Disable with
ENABLE_SCHEDULER=false when running several workers.
"""

import asyncio
from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError

from convertos.config import settings
from convertos.core.structured_logging import scheduler_log
from convertos.db import async_session_maker
from convertos.services.connection_registry import ConnectionRegistry

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


async def sweep_expired_secrets() -> int:
    """Null out previous secrets whose grace window has elapsed."""
    async with async_session_maker() as db:
        registry = ConnectionRegistry(db, grace=timedelta(hours=settings.secret_grace_hours))
        try:
            cleared = await registry.expire_previous_secrets()
        except SQLAlchemyError as e:
            await db.rollback()
            scheduler_log.error("Secret sweep failed", {"error": str(e)})
            return 0

    if cleared:
        scheduler_log.info("Expired previous secrets cleared", {"count": cleared})
    return cleared


def setup_scheduler(sweep_interval_minutes: int = 15) -> AsyncIOScheduler:
    """
    Set up the APScheduler with maintenance tasks.

    Args:
        sweep_interval_minutes: How often to clear expired previous secrets
    """
    global scheduler

    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        sweep_expired_secrets,
        trigger=IntervalTrigger(minutes=sweep_interval_minutes),
        id="secret_sweep",
        name="Previous Secret Expiry Sweep",
        replace_existing=True,
    )

    scheduler_log.info(f"Scheduler configured: secret sweep every {sweep_interval_minutes}min")
    return scheduler


def start_scheduler():
    """Start the scheduler if not already running."""
    global scheduler

    if scheduler is None:
        scheduler = setup_scheduler(settings.secret_sweep_interval_minutes)

    if not scheduler.running:
        scheduler.start()
        scheduler_log.info("Maintenance scheduler started")


def stop_scheduler():
    """Stop the scheduler if running."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        scheduler_log.info("Maintenance scheduler stopped")
    scheduler = None


if __name__ == "__main__":
    asyncio.run(sweep_expired_secrets())
