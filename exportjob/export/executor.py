"""
Export executor - runs one attempt of a persisted export job.

Workflow:
1. Refuse the attempt if the job was cancelled or its lifespan has passed
2. Claim the job (pending -> running) and create the ExportAttempt record
3. Rebuild the JobSpec (decrypting the passphrase with the install secret)
4. Run ExportUploadJob with collaborators built from app config
5. Store the attempt outcome and log
6. Apply the retry policy to the ExportJob (succeeded / failed / retry_scheduled)
"""

import logging
import threading
import time
from datetime import datetime
from typing import Dict, Optional

from cryptography.fernet import InvalidToken
from flask import current_app
from sqlalchemy import update

from exportjob import db
from exportjob.models import ExportAttempt, ExportJob
from exportjob.utils.crypto import crypto_manager
from .cancellation import CancellationToken
from .errors import FailureKind, MissingConfigurationError
from .exporter import ArchiveExporter
from .job import ExportDependencies, ExportUploadJob, utcnow
from .outcome import AttemptOutcome
from .runner import RetryPolicy, lifespan_exceeded_outcome
from .sources import SourceResolver
from .spec import JobSpec
from .upload import create_upload_client


logger = logging.getLogger(__name__)

# Tokens of attempts running in this process, keyed by ExportJob id
_active_tokens: Dict[int, CancellationToken] = {}
_tokens_lock = threading.Lock()

PENDING_STATUSES = ('queued', 'retry_scheduled')


def build_dependencies(config, cancel_token: CancellationToken) -> ExportDependencies:
    """Build the collaborators of an attempt from a Flask config mapping."""
    return ExportDependencies(
        exporter=ArchiveExporter(
            chunk_size=config['EXPORT_CHUNK_SIZE'],
            kdf_iterations=config['EXPORT_KDF_ITERATIONS'],
        ),
        upload_client_factory=lambda destination_ref: create_upload_client(destination_ref, config),
        source_resolver=SourceResolver(config['SOURCE_ROOT'], config['SOURCE_EXCLUDE_PATTERNS']),
        secret_provider=lambda: crypto_manager,
        temp_dir=config['TEMP_DIR'],
        cancel_token=cancel_token,
    )


def load_spec(job: ExportJob) -> JobSpec:
    """
    Rebuild the JobSpec of a persisted job.

    Raises:
        MissingConfigurationError: If the passphrase cannot be decrypted or a field is invalid
    """
    if not crypto_manager.is_initialized:
        raise MissingConfigurationError(
            "Crypto manager not initialized. Cannot decrypt export passphrase. "
            "Set ENCRYPTION_PASSWORD and restart."
        )

    try:
        passphrase = crypto_manager.decrypt(job.passphrase_encrypted)
    except (InvalidToken, ValueError) as e:
        raise MissingConfigurationError(f"Failed to decrypt export passphrase: {e}")

    return JobSpec.from_data({
        'source_id': job.source_id,
        'passphrase': passphrase,
        'destination_kind': job.destination_kind,
        'destination_ref': job.destination_ref,
    })


class ExportExecutor:
    """
    Runs one attempt of an ExportJob and applies the retry policy.
    """

    def __init__(self, job: ExportJob, policy: Optional[RetryPolicy] = None, dependencies_factory=None):
        """
        Initialize export executor.

        Args:
            job: ExportJob to run
            policy: Retry policy (defaults to the app config's EXPORT_* settings)
            dependencies_factory: Optional callable(config, cancel_token) -> ExportDependencies
        """
        self.job = job
        self.policy = policy or RetryPolicy.from_config(current_app.config)
        self.dependencies_factory = dependencies_factory or build_dependencies
        self.attempt_record = None
        self.decision = None
        self.logs = []

    def execute(self) -> Optional[ExportAttempt]:
        """
        Execute one attempt.

        Returns:
            ExportAttempt record, or None if the attempt was refused
            (cancelled job or lifespan exceeded)
        """
        now = utcnow()

        if self.job.cancellation_requested:
            self._finish_job('cancelled', AttemptOutcome.failure(FailureKind.CANCELLED), now)
            return None

        if self.policy.lifespan_exceeded(self.job.created_at, now):
            self._log(f"Lifespan exceeded for export job {self.job.id}; refusing attempt")
            self._finish_job('failed', lifespan_exceeded_outcome(), now)
            return None

        self._claim()
        self.attempt_record = ExportAttempt(
            job_id=self.job.id,
            attempt_number=self.job.attempts,
            status='running',
            started_at=now
        )
        db.session.add(self.attempt_record)
        db.session.commit()

        self._log(f"Starting attempt {self.job.attempts}/{self.policy.max_attempts} of export job {self.job.id}")

        token = CancellationToken()
        with _tokens_lock:
            _active_tokens[self.job.id] = token
        try:
            outcome = self._run_attempt(token)
        finally:
            with _tokens_lock:
                _active_tokens.pop(self.job.id, None)

        self._record(outcome)
        return self.attempt_record

    def _claim(self):
        """
        Move the job from a pending status to running and count the attempt.

        The conditional update lets exactly one caller win when the CLI and
        the worker pick up the same job.

        Raises:
            ValueError: If the job is no longer pending
        """
        result = db.session.execute(
            update(ExportJob)
            .where(ExportJob.id == self.job.id, ExportJob.status.in_(PENDING_STATUSES))
            .values(status='running', attempts=ExportJob.attempts + 1, next_attempt_at=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            raise ValueError(f"Export job {self.job.id} was claimed by another attempt")
        db.session.commit()
        db.session.refresh(self.job)

    def _run_attempt(self, token: CancellationToken) -> AttemptOutcome:
        try:
            spec = load_spec(self.job)
        except MissingConfigurationError as e:
            self._log(f"Cannot rebuild export job: {e}")
            return AttemptOutcome.failure(FailureKind.MISSING_CONFIGURATION, e, detail=str(e))

        export_job = ExportUploadJob(spec, self.dependencies_factory(current_app.config, token))
        outcome = export_job.run()
        self.logs.extend(export_job.logs)
        return outcome

    def _record(self, outcome: AttemptOutcome):
        now = utcnow()

        attempt = self.attempt_record
        attempt.status = outcome.job_state.value
        attempt.failure_kind = outcome.failure_kind.value if outcome.failure_kind else None
        attempt.error_message = outcome.message
        attempt.artifact_path = outcome.artifact_path
        attempt.artifact_size_bytes = outcome.artifact_size
        attempt.completed_at = now

        # Re-read the flag: cancel_export() may have set it while the attempt ran
        db.session.refresh(self.job, ['cancellation_requested'])

        if self.job.cancellation_requested and not outcome.succeeded:
            self._finish_job('cancelled', outcome, now)
            return

        self.decision = self.policy.decide(outcome, self.job.attempts, self.job.created_at, now)

        if self.decision.retry:
            self.job.status = 'retry_scheduled'
            self.job.failure_kind = outcome.failure_kind.value
            self.job.error_message = outcome.message
            self.job.next_attempt_at = now + self.decision.delay
            self._log(f"Retry scheduled at {self.job.next_attempt_at.isoformat()}")
            self._flush_logs()
            db.session.commit()
        else:
            final = self.decision.final_outcome
            self._finish_job('succeeded' if final.succeeded else 'failed', final, now)

    def _finish_job(self, status: str, outcome: AttemptOutcome, now: datetime):
        self.job.status = status
        self.job.completed_at = now
        self.job.next_attempt_at = None
        self.job.failure_kind = outcome.failure_kind.value if outcome.failure_kind else None
        self.job.error_message = outcome.message
        if outcome.succeeded:
            self.job.artifact_path = outcome.artifact_path
            self.job.artifact_size_bytes = outcome.artifact_size

        self._log(f"Export job {self.job.id} finished with status: {status}")
        self._flush_logs()
        db.session.commit()

    def _flush_logs(self):
        if self.attempt_record is not None:
            self.attempt_record.logs = '\n'.join(self.logs)

    def _log(self, message: str):
        timestamp = utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def execute_export_attempt(job_id: int, policy: Optional[RetryPolicy] = None) -> Optional[ExportAttempt]:
    """
    Run the next attempt of an export job by ID.

    Raises:
        ValueError: If the job is not found or is no longer pending
    """
    job = db.session.get(ExportJob, job_id)

    if not job:
        raise ValueError(f"Export job not found: {job_id}")

    if job.is_finished:
        raise ValueError(f"Export job already finished: {job_id} ({job.status})")

    if job.status == 'running':
        raise ValueError(f"Export job already running: {job_id}")

    return ExportExecutor(job, policy=policy).execute()


def execute_until_settled(job_id: int, policy: Optional[RetryPolicy] = None, sleep=time.sleep) -> ExportJob:
    """
    Run attempts of an export job inline, sleeping through retry backoff,
    until the job succeeds, fails or is cancelled.
    """
    while True:
        execute_export_attempt(job_id, policy=policy)
        job = db.session.get(ExportJob, job_id)

        if job.status != 'retry_scheduled':
            return job

        delay = (job.next_attempt_at - utcnow()).total_seconds()
        if delay > 0:
            sleep(delay)


def cancel_export(job_id: int) -> ExportJob:
    """
    Cancel an export job.

    A pending job is cancelled immediately; a running attempt in this process
    is signalled through its cancellation token and the job is finalized as
    cancelled when the attempt returns.

    Raises:
        ValueError: If the job is not found
    """
    job = db.session.get(ExportJob, job_id)
    if not job:
        raise ValueError(f"Export job not found: {job_id}")

    if job.is_finished:
        return job

    job.cancellation_requested = True
    if job.status in ('queued', 'retry_scheduled'):
        job.status = 'cancelled'
        job.completed_at = utcnow()
        job.next_attempt_at = None
        job.failure_kind = FailureKind.CANCELLED.value
    db.session.commit()

    with _tokens_lock:
        token = _active_tokens.get(job_id)
    if token is not None:
        token.cancel("cancelled by operator")
        logger.info(f"Signalled running attempt of export job {job_id} to cancel")

    return job


def is_attempt_running(job_id: int) -> bool:
    with _tokens_lock:
        return job_id in _active_tokens
