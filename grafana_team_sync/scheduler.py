"""
Cron scheduling of reconciliation passes.

The job runs in APScheduler's background thread. At most one instance runs at
a time and missed runs are coalesced into one.
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from grafana_team_sync.errors import SyncError

logger = logging.getLogger(__name__)

JOB_ID = 'grafana-team-sync'


def run_scheduled_sync(orchestrator) -> None:
    """Job body: run one pass and log the outcome; never lets an error kill the scheduler thread."""
    try:
        result = orchestrator.run_pass(blocking=False)
    except SyncError as e:
        logger.error(f"cron sync error: {e}")
        return
    except Exception:
        logger.exception("cron sync failed unexpectedly")
        return

    if result.ok:
        logger.info("cron sync completed")
    else:
        logger.error(f"cron sync completed with {len(result.failures)} failure(s)")
        for failure in result.failures:
            logger.error(f"  {failure}")


def start_scheduler(orchestrator, schedule: str) -> BackgroundScheduler:
    """
    Start a background scheduler running a pass on the given crontab expression.

    Args:
        orchestrator: Object exposing run_pass(blocking=...)
        schedule: Five-field crontab expression

    Returns:
        The started scheduler; call shutdown() to stop it
    """
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        run_scheduled_sync,
        CronTrigger.from_crontab(schedule),
        args=[orchestrator],
        id=JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    logger.info(f"cron job started with schedule '{schedule}'")
    return scheduler
