"""
Result types shared by the job and its collaborators.

- NetworkResult: Success(value) or Failure(error, code) returned by upload clients
- AttemptOutcome: tagged result of one ExportUploadJob.run()
- JobState: lifecycle of a single attempt
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar, Union

from .errors import FAILURE_MESSAGES, FailureKind, PhaseFailure, is_retryable


T = TypeVar('T')


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T = None

    def map(self, transform: Callable[[T], Any]) -> 'NetworkResult':
        return Success(transform(self.value))


@dataclass(frozen=True)
class Failure:
    """A rejected network call. code is the HTTP status, or -1 without a response."""

    error: BaseException
    code: int = -1

    def map(self, transform: Callable[[Any], Any]) -> 'Failure':
        return self


NetworkResult = Union[Success, Failure]


class JobState(str, Enum):
    NOT_STARTED = 'not_started'
    RUNNING = 'running'
    SUCCEEDED = 'succeeded'
    FAILED_RETRYABLE = 'failed_retryable'
    FAILED_PERMANENT = 'failed_permanent'


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED_PERMANENT})

_TRANSITIONS = {
    JobState.NOT_STARTED: frozenset({JobState.RUNNING}),
    JobState.RUNNING: frozenset({
        JobState.SUCCEEDED,
        JobState.FAILED_RETRYABLE,
        JobState.FAILED_PERMANENT,
    }),
}


def check_transition(current: JobState, target: JobState):
    """Raise RuntimeError if target is not reachable from current."""
    if target not in _TRANSITIONS.get(current, frozenset()):
        raise RuntimeError(f"Invalid job state transition: {current.value} -> {target.value}")


class OutcomeStatus(str, Enum):
    SUCCESS = 'success'
    RETRYABLE_FAILURE = 'retryable_failure'
    PERMANENT_FAILURE = 'permanent_failure'


@dataclass(frozen=True)
class AttemptOutcome:
    """Result of one attempt, read by the JobRunner to decide on a retry."""

    status: OutcomeStatus
    failure_kind: Optional[FailureKind] = None
    cause: Optional[BaseException] = None
    message: Optional[str] = None
    artifact_path: Optional[str] = None
    artifact_size: Optional[int] = None

    @classmethod
    def success(cls, artifact_path: Optional[str] = None, artifact_size: Optional[int] = None) -> 'AttemptOutcome':
        return cls(OutcomeStatus.SUCCESS, artifact_path=artifact_path, artifact_size=artifact_size)

    @classmethod
    def failure(cls, kind: FailureKind, cause: Optional[BaseException] = None,
                detail: Optional[str] = None) -> 'AttemptOutcome':
        status = OutcomeStatus.RETRYABLE_FAILURE if is_retryable(kind) else OutcomeStatus.PERMANENT_FAILURE
        message = FAILURE_MESSAGES[kind]
        if detail:
            message = f"{message} ({detail})"
        return cls(status, failure_kind=kind, cause=cause, message=message)

    @classmethod
    def from_phase_failure(cls, failure: PhaseFailure) -> 'AttemptOutcome':
        return cls.failure(failure.kind, failure.cause, detail=failure.describe())

    @property
    def succeeded(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    @property
    def retryable(self) -> bool:
        return self.status is OutcomeStatus.RETRYABLE_FAILURE

    @property
    def permanent(self) -> bool:
        return self.status is OutcomeStatus.PERMANENT_FAILURE

    @property
    def job_state(self) -> JobState:
        return {
            OutcomeStatus.SUCCESS: JobState.SUCCEEDED,
            OutcomeStatus.RETRYABLE_FAILURE: JobState.FAILED_RETRYABLE,
            OutcomeStatus.PERMANENT_FAILURE: JobState.FAILED_PERMANENT,
        }[self.status]
