"""
Export module for exportjob.

This module handles the durable export-and-upload job:
- Job specification and its persisted form
- Encrypted archive export
- Resumable upload (HTTP endpoint and S3)
- Failure taxonomy and retry policy
- Execution against the job store
"""

from .cancellation import CancellationToken
from .errors import FailureKind, PhaseFailure, classify_api_failure, classify_exception, is_retryable
from .exporter import ArchiveExporter, decrypt_artifact
from .job import ExportDependencies, ExportUploadJob
from .outcome import AttemptOutcome, Failure, JobState, Success
from .runner import RetryPolicy, run_with_retries
from .spec import DestinationKind, JobSpec
from .sweeper import ArtifactSweeper
from .upload import HttpUploadClient, S3UploadClient, create_upload_client

__all__ = [
    'ArchiveExporter',
    'ArtifactSweeper',
    'AttemptOutcome',
    'CancellationToken',
    'DestinationKind',
    'ExportDependencies',
    'ExportUploadJob',
    'Failure',
    'FailureKind',
    'HttpUploadClient',
    'JobSpec',
    'JobState',
    'PhaseFailure',
    'RetryPolicy',
    'S3UploadClient',
    'Success',
    'classify_api_failure',
    'classify_exception',
    'create_upload_client',
    'decrypt_artifact',
    'is_retryable',
    'run_with_retries',
]
