"""
APScheduler configuration and job dispatching for exportjob.

Manages:
- The dispatcher, which runs due export jobs from the job store
- Recurring exports (daily / weekly / monthly, unique per source)
- Daily sweep of stale temporary artifacts
- Enqueueing of one-off export jobs
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError

from exportjob import db
from exportjob.export.errors import MissingConfigurationError
from exportjob.export.executor import execute_export_attempt
from exportjob.export.job import utcnow
from exportjob.export.spec import JobSpec
from exportjob.export.sweeper import sweep_stale_artifacts
from exportjob.models import ExportJob, ScheduledExport
from exportjob.utils.crypto import crypto_manager


logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

DISPATCHER_JOB_ID = 'export_dispatcher'
SWEEP_JOB_ID = 'artifact_sweep'
SYNC_JOB_ID = 'schedule_sync'
SCHEDULE_JOB_PREFIX = 'schedule_'
EXPORTS_EXECUTOR = 'exports'

FREQUENCY_CRONTABS = {
    'daily': '0 2 * * *',
    'weekly': '0 2 * * 0',
    'monthly': '0 2 1 * *',
}


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
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    # Export attempts run one at a time in their own pool, apart from the
    # recurring, sweep and sync jobs
    executors = {
        'default': ThreadPoolExecutor(max_workers=2),
        EXPORTS_EXECUTOR: ThreadPoolExecutor(max_workers=1)
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
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    scheduler.add_job(
        func=_dispatch_wrapper,
        trigger=IntervalTrigger(seconds=app.config['DISPATCH_INTERVAL_SECONDS']),
        id=DISPATCHER_JOB_ID,
        name='Export Dispatcher',
        executor=EXPORTS_EXECUTOR,
        replace_existing=True
    )

    # Sweep stale artifacts daily at 3 AM UTC
    scheduler.add_job(
        func=_sweep_wrapper,
        trigger=CronTrigger(hour=3, minute=0),
        id=SWEEP_JOB_ID,
        name='Daily Artifact Sweep',
        replace_existing=True
    )

    # Pick up recurring exports created or removed from the CLI
    scheduler.add_job(
        func=_sync_wrapper,
        trigger=IntervalTrigger(seconds=60),
        id=SYNC_JOB_ID,
        name='Recurring Export Sync',
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

        jobs = scheduler.get_jobs()
        if jobs:
            logger.info(f"Loaded {len(jobs)} scheduled jobs:")
            for job in jobs:
                next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
                logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
        else:
            logger.info("No scheduled jobs loaded")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def start_worker(app):
    """
    Start the background worker of this process.

    Recovers attempts interrupted by a previous shutdown, registers
    recurring exports and starts the scheduler.
    """
    init_scheduler(app)
    with app.app_context():
        recover_interrupted_exports()
        sync_scheduled_exports()
    start_scheduler()


def recover_interrupted_exports() -> int:
    """
    Requeue export jobs left in 'running' by a process that died mid-attempt.

    The interrupted attempt stays counted. Must be called within app context.

    Returns:
        Number of requeued jobs
    """
    interrupted = ExportJob.query.filter_by(status='running').all()
    now = utcnow()

    for job in interrupted:
        job.status = 'queued'
        job.next_attempt_at = now
        for attempt in job.history.filter_by(status='running'):
            attempt.status = 'failed_retryable'
            attempt.error_message = 'Attempt interrupted by shutdown'
            attempt.completed_at = now
        logger.warning(f"Requeued interrupted export job {job.id} (attempts so far: {job.attempts})")

    if interrupted:
        db.session.commit()
    return len(interrupted)


def enqueue_export(spec: JobSpec, schedule: Optional[ScheduledExport] = None,
                   passphrase_encrypted: Optional[str] = None) -> ExportJob:
    """
    Persist a new export job and wake the dispatcher.

    Must be called within app context.

    Args:
        spec: Job specification
        schedule: Recurring export that produced this job, if any
        passphrase_encrypted: Already encrypted passphrase (from a schedule)

    Returns:
        The queued ExportJob

    Raises:
        MissingConfigurationError: If the install secret is not initialized
    """
    if passphrase_encrypted is None:
        passphrase_encrypted = _encrypt_passphrase(spec.passphrase)

    data = spec.to_data()
    job = ExportJob(
        source_id=data['source_id'],
        passphrase_encrypted=passphrase_encrypted,
        destination_kind=data['destination_kind'],
        destination_ref=data['destination_ref'],
        status='queued',
        next_attempt_at=utcnow(),
        schedule=schedule
    )
    db.session.add(job)
    db.session.commit()

    logger.info(f"Enqueued export job {job.id}: {spec.describe()}")
    _wake_dispatcher()
    return job


def dispatch_due_exports() -> int:
    """
    Run one attempt of every export job that is due.

    Must be called within app context.

    Returns:
        Number of attempts dispatched
    """
    due_ids = [
        job_id for (job_id,) in db.session.query(ExportJob.id).filter(
            ExportJob.status.in_(('queued', 'retry_scheduled')),
            ExportJob.next_attempt_at <= utcnow()
        ).order_by(ExportJob.next_attempt_at, ExportJob.id).all()
    ]

    dispatched = 0
    for job_id in due_ids:
        try:
            execute_export_attempt(job_id)
            dispatched += 1
        except ValueError as e:
            # Finished or cancelled since the query ran
            logger.info(f"Skipped export job {job_id}: {e}")
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception(f"Job store error while running export job {job_id}")

    return dispatched


def _dispatch_wrapper():
    """Run due exports in scheduler context."""
    global flask_app

    with flask_app.app_context():
        dispatched = dispatch_due_exports()
        if dispatched:
            logger.info(f"Dispatcher ran {dispatched} export attempt(s)")


def _sweep_wrapper():
    """Sweep stale artifacts in scheduler context."""
    global flask_app

    with flask_app.app_context():
        summary = sweep_stale_artifacts()
        logger.info(f"Artifact sweep deleted {summary['deleted']} file(s)")


def _sync_wrapper():
    """Synchronize recurring exports in scheduler context."""
    global flask_app

    with flask_app.app_context():
        sync_scheduled_exports()


def _wake_dispatcher():
    """Move the dispatcher's next run to now so new work starts promptly."""
    global scheduler

    if scheduler is None or not scheduler.running:
        return

    try:
        scheduler.modify_job(DISPATCHER_JOB_ID, next_run_time=datetime.now(timezone.utc))
    except JobLookupError:
        logger.warning("Dispatcher job not found; queued export will wait for the next worker start")


def _encrypt_passphrase(passphrase: str) -> str:
    if not crypto_manager.is_initialized:
        raise MissingConfigurationError(
            "Crypto manager not initialized. Cannot store export passphrase. "
            "Set ENCRYPTION_PASSWORD and restart."
        )
    return crypto_manager.encrypt(passphrase)


def schedule_export(spec: JobSpec, frequency: str, source_name: Optional[str] = None) -> ScheduledExport:
    """
    Create or replace the recurring export of a source.

    At most one recurring export exists per source; scheduling again
    replaces the previous frequency, passphrase and destination.

    Must be called within app context.

    Raises:
        ValueError: If frequency is not daily, weekly or monthly
        MissingConfigurationError: If the install secret is not initialized
    """
    if frequency not in FREQUENCY_CRONTABS:
        raise ValueError(f"Unsupported frequency: {frequency}. Use one of: {', '.join(FREQUENCY_CRONTABS)}")

    unique_work_name = f"scheduled_export_{spec.source_id}"
    data = spec.to_data()

    scheduled = ScheduledExport.query.filter_by(unique_work_name=unique_work_name).first()
    if scheduled is None:
        scheduled = ScheduledExport(unique_work_name=unique_work_name)
        db.session.add(scheduled)

    scheduled.source_id = data['source_id']
    scheduled.source_name = source_name or data['source_id']
    scheduled.passphrase_encrypted = _encrypt_passphrase(spec.passphrase)
    scheduled.destination_kind = data['destination_kind']
    scheduled.destination_ref = data['destination_ref']
    scheduled.frequency = frequency
    scheduled.enabled = True
    db.session.commit()

    logger.info(f"Scheduled {frequency} export: {unique_work_name}")

    if scheduler is not None:
        _add_schedule_job(scheduled)

    return scheduled


def cancel_scheduled_export(source_id: str) -> bool:
    """
    Remove the recurring export of a source.

    Export jobs it already enqueued are left untouched.

    Returns:
        True if a recurring export was removed
    """
    unique_work_name = f"scheduled_export_{source_id}"
    scheduled = ScheduledExport.query.filter_by(unique_work_name=unique_work_name).first()
    if scheduled is None:
        return False

    schedule_job_id = f"{SCHEDULE_JOB_PREFIX}{scheduled.id}"
    db.session.delete(scheduled)
    db.session.commit()

    if scheduler is not None:
        try:
            scheduler.remove_job(schedule_job_id)
        except JobLookupError:
            logger.warning(f"Scheduler job {schedule_job_id} was already removed")

    logger.info(f"Removed recurring export: {unique_work_name}")
    return True


def get_scheduled_exports() -> list:
    """List recurring exports with their next run time."""
    exports = []
    for scheduled in ScheduledExport.query.order_by(ScheduledExport.source_id).all():
        info = scheduled.to_dict()
        job = scheduler.get_job(f"{SCHEDULE_JOB_PREFIX}{scheduled.id}") if scheduler is not None else None
        info['next_run'] = job.next_run_time.isoformat() if job and job.next_run_time else None
        exports.append(info)
    return exports


def sync_scheduled_exports():
    """
    Synchronize recurring exports from the database to the scheduler.

    This function should be called:
    - After worker startup
    - After creating or removing recurring exports from another process
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    scheduled_job_ids = {job.id for job in scheduler.get_jobs() if job.id.startswith(SCHEDULE_JOB_PREFIX)}

    for scheduled in ScheduledExport.query.all():
        job_id = f"{SCHEDULE_JOB_PREFIX}{scheduled.id}"

        if scheduled.enabled:
            _add_schedule_job(scheduled)
            scheduled_job_ids.discard(job_id)

    # Remove any leftover scheduler jobs that don't exist in database
    for leftover_id in scheduled_job_ids:
        try:
            scheduler.remove_job(leftover_id)
            logger.info(f"Removed orphaned recurring export: {leftover_id}")
        except JobLookupError:
            pass


def _add_schedule_job(scheduled: ScheduledExport):
    """
    Add (or replace) the scheduler job of a recurring export.

    Args:
        scheduled: ScheduledExport instance
    """
    global scheduler

    trigger = CronTrigger.from_crontab(FREQUENCY_CRONTABS[scheduled.frequency], timezone='UTC')

    scheduler.add_job(
        func=_enqueue_scheduled_wrapper,
        args=[scheduled.id],
        trigger=trigger,
        id=f"{SCHEDULE_JOB_PREFIX}{scheduled.id}",
        name=f"Export: {scheduled.source_name}",
        replace_existing=True
    )

    logger.info(f"Registered recurring export: {scheduled.unique_work_name} ({scheduled.frequency})")


def enqueue_scheduled_export(scheduled_id: int) -> Optional[ExportJob]:
    """
    Enqueue one export job for a recurring export.

    Must be called within app context.

    Returns:
        The queued ExportJob, or None if the recurring export is gone or disabled
    """
    scheduled = db.session.get(ScheduledExport, scheduled_id)
    if scheduled is None or not scheduled.enabled:
        logger.info(f"Recurring export {scheduled_id} not found or disabled; nothing to enqueue")
        return None

    # Validates the stored fields without decrypting the passphrase
    spec = JobSpec(
        source_id=scheduled.source_id,
        passphrase='<stored>',
        destination_kind=scheduled.destination_kind,
        destination_ref=scheduled.destination_ref,
    )
    return enqueue_export(spec, schedule=scheduled, passphrase_encrypted=scheduled.passphrase_encrypted)


def _enqueue_scheduled_wrapper(scheduled_id: int):
    """Enqueue a recurring export in scheduler context."""
    global flask_app

    with flask_app.app_context():
        try:
            enqueue_scheduled_export(scheduled_id)
        except MissingConfigurationError as e:
            logger.error(f"Cannot enqueue recurring export {scheduled_id}: {e}")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduler jobs.

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
    """Check if the scheduler of this process is running."""
    global scheduler

    return scheduler is not None and scheduler.running
