"""
Export-and-upload job - one attempt of a durable export.

Workflow:
1. Preparation: resolve key material and source, pick a unique artifact path
2. Export: materialize the encrypted artifact at the temporary path
3. Upload (remote destinations only): negotiate parameters, stream the artifact
4. Cleanup: delete the temporary artifact unless it is a local deliverable

Each phase returns a PhaseFailure instead of raising; the first failure ends
the attempt and is turned into an AttemptOutcome. Retry scheduling belongs to
the caller (see runner.py).
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, Union

from .cancellation import CancellationToken
from .errors import (
    ExportCancelledError,
    FailureKind,
    MissingConfigurationError,
    PhaseFailure,
    classify_api_failure,
    classify_exception,
)
from .outcome import AttemptOutcome, Failure, JobState, check_transition
from .spec import JobSpec


logger = logging.getLogger(__name__)

ARTIFACT_PREFIX = 'export_'
ARTIFACT_SUFFIX = '.backup'


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the job store persists."""
    return datetime.utcnow()


@dataclass
class ExportDependencies:
    """
    Collaborators of an ExportUploadJob.

    Attributes:
        exporter: Object with export(secret, source, destination_path, passphrase, cancel_token)
        upload_client_factory: Callable building an upload client for a destination_ref
        source_resolver: Callable resolving a source_id to a source object
        secret_provider: Callable returning the install secret, or None if unavailable
        temp_dir: Directory receiving temporary artifacts
        clock: Callable returning the current naive UTC datetime
        cancel_token: Token polled by every blocking call of the attempt
    """

    exporter: Any
    upload_client_factory: Callable[[str], Any]
    source_resolver: Callable[[str], Any]
    secret_provider: Callable[[], Any]
    temp_dir: str
    clock: Callable[[], datetime] = utcnow
    cancel_token: CancellationToken = field(default_factory=CancellationToken)


class ExportUploadJob:
    """
    Runs a single attempt of an export job.

    An instance runs at most once; the JobRunner builds a fresh instance
    (from the persisted JobSpec) for every retry.
    """

    def __init__(self, spec: JobSpec, dependencies: ExportDependencies):
        self.spec = spec
        self.deps = dependencies
        self.state = JobState.NOT_STARTED
        self.outcome = None
        self.artifact_path = None
        self.artifact_size = None
        self.logs = []
        self._artifact_discarded = False
        self._artifact_created = False

    @property
    def cancel_token(self) -> CancellationToken:
        return self.deps.cancel_token

    def cancel(self, reason: Optional[str] = None):
        self.deps.cancel_token.cancel(reason)

    def run(self) -> AttemptOutcome:
        """
        Execute the attempt.

        Returns:
            AttemptOutcome for the JobRunner

        Raises:
            RuntimeError: If the job has already been run
        """
        self._transition(JobState.RUNNING)
        self._log(f"Starting export job: {self.spec.describe()}")

        outcome = None
        try:
            outcome = self._run_phases()
        except Exception as e:
            # Fail closed: anything a phase did not classify is permanent
            logger.exception(f"Unexpected error in export job for source {self.spec.source_id}")
            outcome = AttemptOutcome.failure(classify_exception(e), e, detail=str(e))
        finally:
            keep_artifact = outcome is not None and outcome.succeeded and not self.spec.is_remote
            if not keep_artifact:
                self._discard_artifact()

        self._transition(outcome.job_state)
        self.outcome = outcome

        if outcome.succeeded:
            self._log("Export job finished successfully")
        else:
            self._log(f"Export job failed ({outcome.status.value}): {outcome.message}", logging.WARNING)

        return outcome

    def _run_phases(self) -> AttemptOutcome:
        prepared = self._prepare()
        if isinstance(prepared, PhaseFailure):
            return AttemptOutcome.from_phase_failure(prepared)
        source, secret = prepared

        failure = self._export(source, secret) or self._checkpoint('export')
        if failure:
            return AttemptOutcome.from_phase_failure(failure)

        if not self.spec.is_remote:
            self._log(f"Export destination is local. Artifact kept at: {self.artifact_path}")
            return AttemptOutcome.success(str(self.artifact_path), self.artifact_size)

        failure = self._upload()
        if failure:
            return AttemptOutcome.from_phase_failure(failure)

        return AttemptOutcome.success(artifact_size=self.artifact_size)

    def _prepare(self) -> Union[tuple, PhaseFailure]:
        """Validate preconditions and resolve the artifact path."""
        secret = self.deps.secret_provider()
        if secret is None or not getattr(secret, 'is_initialized', True):
            return self._precondition_failure("Encryption key material is not available")

        if not self.spec.passphrase:
            return self._precondition_failure("Passphrase is empty")

        try:
            source = self.deps.source_resolver(self.spec.source_id)
        except (MissingConfigurationError, OSError) as e:
            return self._precondition_failure(str(e), cause=e)

        if not source.is_readable():
            return self._precondition_failure(f"Source is not readable: {self.spec.source_id}")

        try:
            os.makedirs(self.deps.temp_dir, exist_ok=True)
        except OSError as e:
            self._log(f"Cannot create temporary directory {self.deps.temp_dir}: {e}", logging.ERROR)
            return PhaseFailure(classify_exception(e), 'preparation', e)

        self.artifact_path = self._unique_artifact_path()
        return self._checkpoint('preparation') or (source, secret)

    def _export(self, source, secret) -> Optional[PhaseFailure]:
        self._log(f"Beginning export to temporary file: {self.artifact_path}")

        self._artifact_created = True
        try:
            reported_size = self.deps.exporter.export(
                secret,
                source,
                str(self.artifact_path),
                self.spec.passphrase,
                self.deps.cancel_token,
            )
            self.artifact_size = reported_size if reported_size is not None else os.path.getsize(self.artifact_path)
        except FileExistsError as e:
            # Another holder owns this path; leave its file alone
            self._artifact_created = False
            failure = PhaseFailure(classify_exception(e), 'export', e)
            self._log(f"Export failed: {failure.describe()}", logging.ERROR)
            return failure
        except Exception as e:
            failure = PhaseFailure(classify_exception(e), 'export', e)
            self._log(f"Export failed: {failure.describe()}", logging.ERROR)
            self._discard_artifact()
            return failure

        self._log(f"Export to temporary file successful. Size: {self.artifact_size} bytes")
        return None

    def _upload(self) -> Optional[PhaseFailure]:
        try:
            client = self.deps.upload_client_factory(self.spec.destination_ref)
        except Exception as e:
            kind = FailureKind.MISSING_CONFIGURATION if isinstance(e, MissingConfigurationError) else classify_exception(e)
            self._discard_artifact()
            return PhaseFailure(kind, 'negotiation', e)

        try:
            return self._negotiate_and_stream(client)
        finally:
            close = getattr(client, 'close', None)
            if callable(close):
                close()

    def _negotiate_and_stream(self, client) -> Optional[PhaseFailure]:
        self._log("Getting upload parameters")
        result = client.negotiate_upload()

        if isinstance(result, Failure):
            failure = PhaseFailure(classify_api_failure(result.code, result.error), 'negotiation',
                                   result.error, result.code)
            self._log(f"Failed to get upload parameters: {failure.describe()}", logging.WARNING)
            self._discard_artifact()
            return failure

        params = result.value
        self._log(
            f"Got upload parameters. Key: {params.form.key}, "
            f"URL starts with: {params.resumable_url[:30]}"
        )

        failure = self._checkpoint('negotiation')
        if failure:
            self._abandon_upload(client, params)
            return failure

        self._log(f"Starting upload. File size: {self.artifact_size} bytes")
        try:
            with open(self.artifact_path, 'rb') as stream:
                result = client.stream_upload(
                    params.form,
                    params.resumable_url,
                    stream,
                    self.artifact_size,
                    self.deps.cancel_token,
                )
        except OSError as e:
            failure = PhaseFailure(classify_exception(e), 'upload', e)
            self._log(f"Failed to read artifact for upload: {failure.describe()}", logging.ERROR)
            self._abandon_upload(client, params)
            return failure

        if isinstance(result, Failure):
            failure = PhaseFailure(classify_api_failure(result.code, result.error), 'upload',
                                   result.error, result.code)
            self._log(f"Failed to upload artifact: {failure.describe()}", logging.WARNING)
            return failure

        self._log("Artifact upload successful")
        return None

    def _abandon_upload(self, client, params):
        abandon = getattr(client, 'abandon', None)
        if callable(abandon):
            abandon(params)
            self._log("Abandoned negotiated upload")

    def _checkpoint(self, phase: str) -> Optional[PhaseFailure]:
        token = self.deps.cancel_token
        if not token.is_cancelled:
            return None
        self._log(f"Cancelled after {phase}", logging.WARNING)
        return PhaseFailure(FailureKind.CANCELLED, phase, ExportCancelledError(f"Export cancelled: {token.reason}"))

    def _precondition_failure(self, reason: str, cause: Optional[BaseException] = None) -> PhaseFailure:
        error = MissingConfigurationError(reason)
        if cause is not None:
            error.__cause__ = cause
        self._log(f"Cannot proceed with export: {reason}", logging.ERROR)
        return PhaseFailure(FailureKind.MISSING_CONFIGURATION, 'preparation', error)

    def _unique_artifact_path(self) -> Path:
        millis = int(self.deps.clock().timestamp() * 1000)
        safe_source_id = "".join(
            c if c.isalnum() or c in ('-', '_') else '_'
            for c in self.spec.source_id
        )

        base = f"{ARTIFACT_PREFIX}{safe_source_id}_{millis}"
        candidate = Path(self.deps.temp_dir) / f"{base}{ARTIFACT_SUFFIX}"
        counter = 1
        while candidate.exists():
            candidate = Path(self.deps.temp_dir) / f"{base}-{counter}{ARTIFACT_SUFFIX}"
            counter += 1
        return candidate

    def _discard_artifact(self):
        """Delete the temporary artifact; runs at most once per attempt."""
        if self._artifact_discarded or self.artifact_path is None or not self._artifact_created:
            return
        self._artifact_discarded = True

        try:
            if self.artifact_path.exists():
                self.artifact_path.unlink()
                self._log(f"Deleted temporary artifact: {self.artifact_path}")
        except OSError as e:
            self._log(f"Warning: Failed to delete temporary artifact {self.artifact_path}: {e}", logging.WARNING)

    def _transition(self, target: JobState):
        check_transition(self.state, target)
        self.state = target

    def _log(self, message: str, level: int = logging.INFO):
        timestamp = self.deps.clock().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, f"[{self.spec.source_id}] {message}")
