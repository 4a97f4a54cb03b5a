"""
APScheduler configuration and job scheduling for Sitekeeper.

Manages:
- Periodic license/config refresh
- Scheduled backups (when BACKUP_SCHEDULE_CRON is set)
"""

import logging

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from sitekeeper.backup.executor import execute_backup
from sitekeeper.license import get_config_provider

logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

LICENSE_JOB_ID = 'license_refresh'
BACKUP_JOB_ID = 'scheduled_backup'


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    executors = {
        'default': ThreadPoolExecutor(max_workers=2)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    scheduler.add_job(
        func=_refresh_license_wrapper,
        trigger=IntervalTrigger(seconds=app.config.get('LICENSE_CACHE_SECONDS', 12 * 60 * 60)),
        id=LICENSE_JOB_ID,
        name='License Refresh',
        replace_existing=True
    )

    cron = app.config.get('BACKUP_SCHEDULE_CRON')
    if cron:
        scheduler.add_job(
            func=_execute_backup_wrapper,
            trigger=CronTrigger.from_crontab(cron, timezone='UTC'),
            id=BACKUP_JOB_ID,
            name='Scheduled Backup',
            replace_existing=True
        )
        logger.info(f"Scheduled backups enabled ({cron})")

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info(f"APScheduler started (state={scheduler.state})")
    for job in scheduler.get_jobs():
        next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
        logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def _refresh_license_wrapper():
    """Refresh the store configuration inside the app context."""
    with flask_app.app_context():
        try:
            provider = get_config_provider(flask_app)
            credentials = provider.get_config(force=True)
            if credentials is None:
                logger.warning("License refresh returned no usable S3 configuration")
            else:
                logger.info("License refreshed")
        except Exception:
            logger.exception("License refresh failed")


def _execute_backup_wrapper():
    """
    Run a backup in scheduler context.

    The executor reports failures in its result; anything escaping it is
    logged here so the scheduler thread keeps running.
    """
    with flask_app.app_context():
        try:
            logger.info("Scheduler executing backup")
            result = execute_backup(flask_app)
            logger.info(f"Scheduled backup finished: success={result.success} ({result.details})")
        except Exception:
            logger.exception("Scheduled backup failed")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        }
        for job in scheduler.get_jobs()
    ]
