"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from patchwatch.config import Settings, settings as default_settings
from patchwatch.review.consensus import ConsensusWorkflow
from patchwatch.worker.sweep import SweepRunner

logger = logging.getLogger(__name__)


def setup_scheduler(
    runner: SweepRunner,
    consensus: ConsensusWorkflow,
    config: Settings = default_settings,
) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - The tracked title sweep runs every config.sweep_interval_minutes
    - Stale approvals are expired every config.approval_expiry_interval_minutes

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()
    sweep_interval = max(1, int(config.sweep_interval_minutes))
    expiry_interval = max(1, int(config.approval_expiry_interval_minutes))

    scheduler.add_job(
        runner.run_sweep,
        IntervalTrigger(minutes=sweep_interval),
        id="tracked_title_sweep",
        name="Check tracked titles for updates",
        max_instances=1,  # Prevent overlapping sweeps
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    scheduler.add_job(
        consensus.expire_stale,
        IntervalTrigger(minutes=expiry_interval),
        id="approval_expiry",
        name="Expire stale pending approvals",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: sweep every %d minutes, approval expiry every %d minutes",
        sweep_interval,
        expiry_interval,
    )

    return scheduler
