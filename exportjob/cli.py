"""CLI commands for operating export jobs.

Registered on the Flask app as `flask exports ...`:
- Enqueueing and running export jobs
- Checking job status and attempt logs
- Cancelling jobs
- Managing recurring exports
- Sweeping stale artifacts
"""

import click
from flask.cli import AppGroup

from exportjob import db
from exportjob.export.errors import MissingConfigurationError
from exportjob.export.executor import cancel_export, execute_until_settled
from exportjob.export.spec import DestinationKind, JobSpec
from exportjob.export.sweeper import sweep_stale_artifacts
from exportjob.models import ExportJob
from exportjob.scheduler import (
    FREQUENCY_CRONTABS,
    cancel_scheduled_export,
    enqueue_export,
    get_scheduled_exports,
    schedule_export,
)


exports_cli = AppGroup('exports', help='Export job commands.')


def _build_spec(source_id: str, passphrase: str, destination: str, local: bool) -> JobSpec:
    if local and destination:
        raise click.UsageError("Use either --destination or --local, not both")
    if not local and not destination:
        raise click.UsageError("A remote export needs --destination (or pass --local)")

    try:
        return JobSpec(
            source_id=source_id,
            passphrase=passphrase,
            destination_kind=DestinationKind.LOCAL_TARGET if local else DestinationKind.REMOTE_ENDPOINT,
            destination_ref=None if local else destination,
        )
    except MissingConfigurationError as e:
        raise click.UsageError(str(e))


def _echo_job(job: ExportJob):
    click.echo(f"Job {job.id}: {job.source_id} -> {job.destination_ref or 'local'}")
    click.echo(f"  Status:   {job.status}")
    click.echo(f"  Attempts: {job.attempts}")
    if job.failure_kind:
        click.echo(f"  Failure:  {job.failure_kind} - {job.error_message}")
    if job.artifact_path:
        click.echo(f"  Artifact: {job.artifact_path} ({job.artifact_size_bytes} bytes)")
    if job.next_attempt_at and job.status == 'retry_scheduled':
        click.echo(f"  Next attempt: {job.next_attempt_at.isoformat()} UTC")


passphrase_option = click.option(
    '--passphrase',
    prompt=True,
    hide_input=True,
    confirmation_prompt=True,
    help='Passphrase protecting the exported artifact',
)


@exports_cli.command('enqueue')
@click.argument('source_id')
@passphrase_option
@click.option('--destination', default=None, help='Upload endpoint (https://... or s3://bucket/prefix)')
@click.option('--local', is_flag=True, help='Keep the artifact locally instead of uploading')
@click.option('--now', 'run_now', is_flag=True, help='Run in this process until the job settles')
def enqueue_command(source_id, passphrase, destination, local, run_now):
    """Enqueue a one-off export of SOURCE_ID."""
    spec = _build_spec(source_id, passphrase, destination, local)

    try:
        job = enqueue_export(spec)
    except MissingConfigurationError as e:
        raise click.ClickException(str(e))

    click.echo(f"Enqueued export job {job.id}")

    if run_now:
        job = execute_until_settled(job.id)
        _echo_job(job)
        if job.status != 'succeeded':
            raise SystemExit(1)


@exports_cli.command('run')
@click.argument('job_id', type=int)
def run_command(job_id):
    """Run JOB_ID in this process until it settles."""
    try:
        job = execute_until_settled(job_id)
    except ValueError as e:
        raise click.ClickException(str(e))

    _echo_job(job)
    if job.status != 'succeeded':
        raise SystemExit(1)


@exports_cli.command('status')
@click.argument('job_id', type=int, required=False)
@click.option('--logs', 'show_logs', is_flag=True, help='Print the log of every attempt')
def status_command(job_id, show_logs):
    """Show one export job, or the most recent ones."""
    if job_id is None:
        jobs = ExportJob.query.order_by(ExportJob.created_at.desc()).limit(20).all()
        if not jobs:
            click.echo("No export jobs")
        for job in jobs:
            click.echo(f"{job.id:>5}  {job.status:<16} {job.attempts} attempt(s)  {job.source_id}")
        return

    job = db.session.get(ExportJob, job_id)
    if job is None:
        raise click.ClickException(f"Export job not found: {job_id}")

    _echo_job(job)
    if show_logs:
        for attempt in job.history:
            click.echo(f"--- Attempt {attempt.attempt_number} ({attempt.status}) ---")
            click.echo(attempt.logs or '')


@exports_cli.command('cancel')
@click.argument('job_id', type=int)
def cancel_command(job_id):
    """Cancel JOB_ID."""
    try:
        job = cancel_export(job_id)
    except ValueError as e:
        raise click.ClickException(str(e))

    if job.status == 'cancelled':
        click.echo(f"Export job {job_id} cancelled")
    elif job.is_finished:
        click.echo(f"Export job {job_id} already finished ({job.status})")
    else:
        click.echo(f"Cancellation requested for running export job {job_id}")


@exports_cli.command('schedule')
@click.argument('source_id')
@click.argument('frequency', type=click.Choice(sorted(FREQUENCY_CRONTABS)))
@passphrase_option
@click.option('--destination', default=None, help='Upload endpoint (https://... or s3://bucket/prefix)')
@click.option('--local', is_flag=True, help='Keep the artifact locally instead of uploading')
@click.option('--name', 'source_name', default=None, help='Display name of the source')
def schedule_command(source_id, frequency, passphrase, destination, local, source_name):
    """Export SOURCE_ID every day, week or month (replaces an existing schedule)."""
    spec = _build_spec(source_id, passphrase, destination, local)

    try:
        scheduled = schedule_export(spec, frequency, source_name=source_name)
    except MissingConfigurationError as e:
        raise click.ClickException(str(e))

    click.echo(f"Scheduled {scheduled.frequency} export: {scheduled.unique_work_name}")
    click.echo("The worker picks up the change within a minute")


@exports_cli.command('schedules')
def schedules_command():
    """List recurring exports."""
    exports = get_scheduled_exports()
    if not exports:
        click.echo("No recurring exports")
    for info in exports:
        target = info['destination_ref'] or 'local'
        click.echo(f"{info['unique_work_name']}: {info['frequency']} -> {target}")


@exports_cli.command('unschedule')
@click.argument('source_id')
def unschedule_command(source_id):
    """Remove the recurring export of SOURCE_ID."""
    if not cancel_scheduled_export(source_id):
        raise click.ClickException(f"No recurring export for source: {source_id}")
    click.echo(f"Removed recurring export of {source_id}")


@exports_cli.command('sweep')
def sweep_command():
    """Delete stale temporary artifacts."""
    summary = sweep_stale_artifacts()
    click.echo(f"Deleted {summary['deleted']} stale artifact(s), kept {summary['kept']}")
    for error in summary['errors']:
        click.echo(error, err=True)
