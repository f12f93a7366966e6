"""
APScheduler configuration and job dispatch for vaultsync.

Manages:
- The scheduler tick (every minute): enqueue jobs for due backup schedules
- Backup job execution on a bounded 'backups' thread pool
- Daily retention policy enforcement
- Periodic sync queue replay (when a sync queue is configured)
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor

from vaultsync import db
from vaultsync.backup.executor import create_job, execute_backup_job
from vaultsync.backup.retention import enforce_retention_policies
from vaultsync.backup.schedules import get_due_schedules, update_schedule_after_run

logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


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

    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI']),
        'memory': MemoryJobStore(),
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=3),
        'backups': ThreadPoolExecutor(max_workers=app.config.get('BACKUP_WORKERS', 4)),
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    scheduler.add_job(
        func=_tick_wrapper,
        trigger=IntervalTrigger(seconds=app.config.get('SCHEDULER_TICK_SECONDS', 60)),
        id='schedule_tick',
        name='Backup Schedule Tick',
        replace_existing=True
    )

    # Add retention policy job (runs daily at 3 AM UTC, after the default backup slot)
    scheduler.add_job(
        func=_retention_wrapper,
        trigger=CronTrigger(hour=3, minute=0),
        id='retention_cleanup',
        name='Daily Retention Cleanup',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (state={scheduler.state})")

        for job in scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def run_scheduler_tick(now: Optional[datetime] = None,
                       dispatch: Optional[Callable[[int], None]] = None) -> int:
    """
    Enqueue one job per due schedule and advance each schedule.

    The tick never waits for backups to run. Advancing next_run_at here
    keeps the next tick from enqueueing the same slot again.

    Args:
        now: Current naive UTC time
        dispatch: Called with each new job id (defaults to enqueue_backup_job)

    Returns:
        Number of jobs enqueued
    """
    now = now or datetime.utcnow()
    dispatch = dispatch or enqueue_backup_job
    enqueued = 0

    for schedule in get_due_schedules(now):
        try:
            options = {'secondary_owner_id': schedule.secondary_owner_id} if schedule.secondary_owner_id else {}
            job = create_job(schedule.owner_id, schedule.backup_type, options, schedule=schedule)
            update_schedule_after_run(schedule, now)
            dispatch(job.id)
            enqueued += 1
            logger.info(f"Enqueued scheduled backup job {job.id} for owner {schedule.owner_id}")
        except Exception as e:
            db.session.rollback()
            logger.error(f"Failed to enqueue backup for owner {schedule.owner_id}: {e}")

    return enqueued


def enqueue_backup_job(job_id: int):
    """
    Hand a pending job to the 'backups' executor.

    Args:
        job_id: BackupJob ID to execute
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    # 1 second delay so the job row is committed before the worker reads it
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[job_id],
        trigger=DateTrigger(run_date=datetime.now(timezone.utc) + timedelta(seconds=1)),
        id=f"backup_job_{job_id}",
        name=f"Backup job {job_id}",
        executor='backups',
        replace_existing=True
    )


def schedule_sync_replay(interval_seconds: int = 60):
    """Replay the sync queue periodically (kept in memory, not persisted)."""
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    scheduler.add_job(
        func=_sync_replay_wrapper,
        trigger=IntervalTrigger(seconds=interval_seconds),
        id='sync_queue_replay',
        name='Sync Queue Replay',
        jobstore='memory',
        replace_existing=True
    )


def _tick_wrapper():
    with flask_app.app_context():
        try:
            run_scheduler_tick()
        except Exception as e:
            logger.error(f"Scheduler tick failed: {e}")


def _execute_backup_wrapper(job_id: int):
    """
    Wrapper function for executing backup jobs in scheduler context.

    Args:
        job_id: BackupJob ID to execute
    """
    global flask_app

    # Execute within app context using stored Flask app reference
    with flask_app.app_context():
        try:
            logger.info(f"Scheduler executing backup job ID: {job_id}")
            job = execute_backup_job(job_id)
            logger.info(f"Backup job {job_id} completed with status: {job.status}")
        except Exception as e:
            logger.error(f"Scheduler backup job {job_id} failed: {e}")


def _retention_wrapper():
    with flask_app.app_context():
        try:
            enforce_retention_policies()
        except Exception as e:
            logger.error(f"Retention cleanup failed: {e}")


def _sync_replay_wrapper():
    from vaultsync.backup.service import replay_sync_queue

    with flask_app.app_context():
        try:
            stats = replay_sync_queue()
            if stats['succeeded'] or stats['dead']:
                logger.info(f"Sync queue replay: {stats}")
        except Exception as e:
            logger.error(f"Sync queue replay failed: {e}")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    global scheduler

    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    global scheduler
    return scheduler is not None and scheduler.running
