"""
Unit tests for export executor (exportjob/export/executor.py).

Tests attempts of persisted export jobs, retry bookkeeping and cancellation.
"""

import os
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import update

from exportjob import db
from exportjob.export.errors import ExportCancelledError
from exportjob.export.executor import (
    ExportExecutor,
    cancel_export,
    execute_export_attempt,
    execute_until_settled,
    is_attempt_running,
)
from exportjob.export.outcome import Failure
from exportjob.export.runner import RetryPolicy
from exportjob.export.spec import DestinationKind, JobSpec
from exportjob.models import ExportJob
from exportjob.scheduler import enqueue_export
from exportjob.utils.crypto import CryptoManager


LOCAL_SPEC = JobSpec('library', 'hunter2', DestinationKind.LOCAL_TARGET)
REMOTE_SPEC = JobSpec('library', 'hunter2', DestinationKind.REMOTE_ENDPOINT, 'https://upload.example.com')


@pytest.fixture
def local_job(db, install_secret, source_dir):
    return enqueue_export(LOCAL_SPEC)


@pytest.fixture
def remote_job(db, install_secret, source_dir):
    return enqueue_export(REMOTE_SPEC)


def no_sleep(seconds):
    pass


class TestExportExecutor:
    """Test single attempts."""

    def test_executor_initialization(self, local_job):
        executor = ExportExecutor(local_job)

        assert executor.job == local_job
        assert executor.attempt_record is None
        assert executor.policy.max_attempts == 3
        assert executor.logs == []

    def test_local_export_succeeds(self, local_job):
        attempt = execute_export_attempt(local_job.id)

        job = db.session.get(ExportJob, local_job.id)
        assert job.status == 'succeeded'
        assert job.attempts == 1
        assert job.completed_at is not None
        assert job.failure_kind is None
        assert os.path.exists(job.artifact_path)
        assert job.artifact_size_bytes == os.path.getsize(job.artifact_path)

        assert attempt.status == 'succeeded'
        assert attempt.attempt_number == 1
        assert 'Export job finished successfully' in attempt.logs
        assert 'hunter2' not in attempt.logs

    def test_passphrase_encrypted_at_rest(self, local_job, install_secret):
        assert local_job.passphrase_encrypted != 'hunter2'
        assert install_secret.decrypt(local_job.passphrase_encrypted) == 'hunter2'

    def test_missing_source_fails_permanently(self, db, install_secret, source_dir):
        job = enqueue_export(JobSpec('unknown', 'hunter2', DestinationKind.LOCAL_TARGET))

        execute_export_attempt(job.id)

        job = db.session.get(ExportJob, job.id)
        assert job.status == 'failed'
        assert job.attempts == 1
        assert job.failure_kind == 'missing_configuration'
        assert job.next_attempt_at is None

    def test_uninitialized_install_secret(self, local_job):
        with patch('exportjob.export.executor.crypto_manager', CryptoManager()):
            execute_export_attempt(local_job.id)

        job = db.session.get(ExportJob, local_job.id)
        assert job.status == 'failed'
        assert job.failure_kind == 'missing_configuration'
        assert 'Crypto manager not initialized' in job.error_message

    def test_retryable_failure_schedules_retry(self, remote_job, make_upload_client, temp_artifacts):
        client = make_upload_client(negotiate_result=Failure(IOError('connection reset'), -1))

        with patch('exportjob.export.executor.create_upload_client', return_value=client):
            attempt = execute_export_attempt(remote_job.id, policy=RetryPolicy(initial_backoff=timedelta(minutes=5)))

        job = db.session.get(ExportJob, remote_job.id)
        assert job.status == 'retry_scheduled'
        assert job.failure_kind == 'network_transient'
        assert job.next_attempt_at > datetime.utcnow() + timedelta(minutes=4)
        assert attempt.status == 'failed_retryable'
        assert temp_artifacts() == []

    def test_lifespan_exceeded_refuses_attempt(self, local_job, db):
        local_job.created_at = datetime.utcnow() - timedelta(days=2)
        db.session.commit()

        result = execute_export_attempt(local_job.id)

        job = db.session.get(ExportJob, local_job.id)
        assert result is None
        assert job.status == 'failed'
        assert job.failure_kind == 'lifespan_exceeded'
        assert job.attempts == 0

    def test_job_not_found(self, db):
        with pytest.raises(ValueError, match="not found"):
            execute_export_attempt(999)

    def test_finished_job_not_rerun(self, local_job):
        execute_export_attempt(local_job.id)

        with pytest.raises(ValueError, match="already finished"):
            execute_export_attempt(local_job.id)

    def test_running_job_not_started_again(self, local_job, db):
        local_job.status = 'running'
        local_job.attempts = 1
        db.session.commit()

        with pytest.raises(ValueError, match="already running"):
            execute_export_attempt(local_job.id)

        job = db.session.get(ExportJob, local_job.id)
        assert job.status == 'running'
        assert job.attempts == 1
        assert job.history.count() == 0

    def test_claim_lost_to_another_attempt(self, local_job, db):
        executor = ExportExecutor(local_job)
        db.session.execute(
            update(ExportJob).where(ExportJob.id == local_job.id).values(status='running', attempts=1)
        )
        db.session.commit()

        with pytest.raises(ValueError, match="claimed by another attempt"):
            executor.execute()

        job = db.session.get(ExportJob, local_job.id)
        assert job.attempts == 1
        assert job.history.count() == 0


class TestExecuteUntilSettled:
    """Test the inline retry loop against the job store."""

    def test_retries_until_max_attempts(self, remote_job, make_upload_client, temp_artifacts):
        client = make_upload_client(stream_result=Failure(IOError('connection reset'), -1))

        with patch('exportjob.export.executor.create_upload_client', return_value=client):
            job = execute_until_settled(remote_job.id, sleep=no_sleep)

        assert job.status == 'failed'
        assert job.attempts == 3
        assert job.failure_kind == 'network_transient'
        assert [a.status for a in job.history] == ['failed_retryable'] * 3
        assert temp_artifacts() == []

    def test_permanent_failure_runs_once(self, remote_job, make_upload_client):
        client = make_upload_client(stream_result=Failure(Exception('forbidden'), 403))

        with patch('exportjob.export.executor.create_upload_client', return_value=client):
            job = execute_until_settled(remote_job.id, sleep=no_sleep)

        assert job.status == 'failed'
        assert job.attempts == 1
        assert job.failure_kind == 'authorization_or_quota'

    def test_success_after_retry(self, remote_job, make_upload_client, temp_artifacts):
        failing = make_upload_client(negotiate_result=Failure(IOError('timeout'), -1))
        working = make_upload_client()

        with patch('exportjob.export.executor.create_upload_client', side_effect=[failing, working]):
            job = execute_until_settled(remote_job.id, sleep=no_sleep)

        assert job.status == 'succeeded'
        assert job.attempts == 2
        assert job.artifact_path is None
        assert len(working.uploaded) == 1
        assert failing.uploaded == []
        assert temp_artifacts() == []


class TestCancelExport:
    """Test cancellation of persisted jobs."""

    def test_cancel_queued_job(self, local_job):
        job = cancel_export(local_job.id)

        assert job.status == 'cancelled'
        assert job.cancellation_requested is True
        with pytest.raises(ValueError, match="already finished"):
            execute_export_attempt(local_job.id)

    def test_cancel_finished_job_is_noop(self, local_job):
        execute_export_attempt(local_job.id)

        job = cancel_export(local_job.id)

        assert job.status == 'succeeded'

    def test_cancel_unknown_job(self, db):
        with pytest.raises(ValueError, match="not found"):
            cancel_export(12345)

    def test_cancel_running_attempt(self, remote_job, make_upload_client):
        job_id = remote_job.id
        seen_running = []

        def cancel_during_upload(cancel_token):
            seen_running.append(is_attempt_running(job_id))
            cancel_export(job_id)
            seen_running.append(cancel_token.is_cancelled)

        client = make_upload_client(on_stream=cancel_during_upload,
                                    stream_result=Failure(ExportCancelledError('cancelled'), -1))

        with patch('exportjob.export.executor.create_upload_client', return_value=client):
            execute_export_attempt(job_id)

        job = db.session.get(ExportJob, job_id)
        assert seen_running == [True, True]
        assert job.status == 'cancelled'
        assert job.failure_kind == 'cancelled'
        assert is_attempt_running(job_id) is False
