"""
APScheduler configuration for recurring backups.

A single cron job runs run_backup() on the configured schedule. The job
is limited to one instance, so a trigger that fires while a previous run
is still going is skipped rather than starting a concurrent run.
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from pgbackuper.models import Settings
from pgbackuper.backup.executor import run_backup, BackupRunError, PreflightError
from pgbackuper.backup.storage import StorageBackend, StorageError


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'scheduled_backup'

# Global scheduler instance
scheduler = None


def init_scheduler(settings: Settings, storage: StorageBackend, temp_dir: str = None, timezone: str = 'UTC'):
    """
    Initialize APScheduler with the backup job.

    Args:
        settings: Validated Settings (backup.schedule is a crontab string)
        storage: Storage backend selected at startup
        temp_dir: Scratch directory for dumps
        timezone: Timezone the cron expression is evaluated in

    Returns:
        The scheduler instance

    Raises:
        ValueError: If backup.schedule is not a valid crontab expression
    """
    global scheduler

    if scheduler is not None:
        return scheduler

    trigger = CronTrigger.from_crontab(settings.backup.schedule, timezone=timezone)

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one backup run at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=timezone
    )

    scheduler.add_job(
        func=execute_scheduled_backup,
        args=[settings, storage, temp_dir],
        trigger=trigger,
        id=BACKUP_JOB_ID,
        name='Scheduled Backup',
        replace_existing=True
    )

    logger.info(f"Scheduled backup with cron expression: {settings.backup.schedule}")
    return scheduler


def start_scheduler():
    """Start the APScheduler."""
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info("APScheduler started")

    for job in scheduler.get_jobs():
        next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
        logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")


def stop_scheduler():
    """Stop the APScheduler and forget it."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")

    scheduler = None


def execute_scheduled_backup(settings: Settings, storage: StorageBackend, temp_dir: str = None):
    """
    Job function: run one backup and log the outcome.

    Failures are logged and the scheduler waits for the next trigger.

    Returns:
        BackupRunSummary, or None if the run did not complete successfully
    """
    try:
        summary = run_backup(settings, storage=storage, temp_dir=temp_dir)
    except BackupRunError as e:
        logger.error(f"Scheduled backup failed: {e}")
        return None
    except (PreflightError, StorageError) as e:
        logger.error(f"Scheduled backup aborted: {e}")
        return None

    logger.info(
        f"Scheduled backup completed: {summary.success_count} databases "
        f"in {summary.duration_seconds:.1f}s"
    )
    return summary


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
