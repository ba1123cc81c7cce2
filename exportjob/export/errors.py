"""
Failure taxonomy for export jobs.

Every failure surfaced by a collaborator (exporter, upload client, source
resolver) is caught at the phase boundary and mapped to exactly one
FailureKind. The kind alone decides whether the JobRunner may retry.
"""

import errno
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import requests
from botocore.exceptions import BotoCoreError


class ExportError(Exception):
    """Base class for export job errors."""
    pass


class StoragePermissionError(ExportError):
    """Raised when the artifact location cannot be written for lack of permission."""
    pass


class InsufficientStorageError(ExportError):
    """Raised when there is not enough space to write the artifact."""
    pass


class ExportCancelledError(ExportError):
    """Raised from a cancellation checkpoint once the attempt was cancelled."""
    pass


class MissingConfigurationError(ExportError):
    """Raised when required configuration or key material is unavailable."""
    pass


class UploadApiError(ExportError):
    """Raised (or returned inside a Failure) when the upload endpoint rejects a request."""

    def __init__(self, message, status_code=None, endpoint=None):
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint


class FailureKind(str, Enum):
    PERMISSION_DENIED = 'permission_denied'
    INSUFFICIENT_SPACE = 'insufficient_space'
    IO_TRANSIENT = 'io_transient'
    NETWORK_TRANSIENT = 'network_transient'
    AUTHORIZATION_OR_QUOTA = 'authorization_or_quota'
    MISSING_CONFIGURATION = 'missing_configuration'
    CANCELLED = 'cancelled'
    LIFESPAN_EXCEEDED = 'lifespan_exceeded'
    UNCLASSIFIED = 'unclassified'


RETRYABLE_KINDS = frozenset({
    FailureKind.IO_TRANSIENT,
    FailureKind.NETWORK_TRANSIENT,
    FailureKind.CANCELLED,
})

# Operator-actionable text for each kind
FAILURE_MESSAGES = {
    FailureKind.PERMISSION_DENIED: "Storage permission required: grant write access to the export directory",
    FailureKind.INSUFFICIENT_SPACE: "Storage is full: free up space before exporting again",
    FailureKind.IO_TRANSIENT: "Temporary storage error while writing the export",
    FailureKind.NETWORK_TRANSIENT: "Temporary network error while uploading the export",
    FailureKind.AUTHORIZATION_OR_QUOTA: "Upload rejected by the endpoint: check credentials and storage quota",
    FailureKind.MISSING_CONFIGURATION: "Export is misconfigured: check the encryption key, source and destination",
    FailureKind.CANCELLED: "Export was cancelled",
    FailureKind.LIFESPAN_EXCEEDED: "Export gave up: lifespan exceeded",
    FailureKind.UNCLASSIFIED: "Export failed with an unexpected error",
}

AUTHORIZATION_CODES = frozenset({401, 403})
QUOTA_CODES = frozenset({402, 413, 507})
TRANSIENT_CODES = frozenset({404, 408, 410, 429})

TRANSPORT_ERRORS = (OSError, requests.RequestException, BotoCoreError)

_NO_SPACE_ERRNOS = frozenset(
    code for code in (getattr(errno, 'ENOSPC', None), getattr(errno, 'EDQUOT', None))
    if code is not None
)
_PERMISSION_ERRNOS = frozenset({errno.EACCES, errno.EPERM, errno.EROFS})


@dataclass(frozen=True)
class PhaseFailure:
    """Classified failure returned by a job phase."""

    kind: FailureKind
    phase: str
    cause: Optional[BaseException] = None
    code: Optional[int] = None

    @property
    def retryable(self) -> bool:
        return is_retryable(self.kind)

    def describe(self) -> str:
        detail = f": {self.cause}" if self.cause is not None else ""
        code = f" (code {self.code})" if self.code not in (None, -1) else ""
        return f"{self.phase} failed [{self.kind.value}]{code}{detail}"


def is_retryable(kind: FailureKind) -> bool:
    return kind in RETRYABLE_KINDS


def translate_os_error(error: OSError) -> Exception:
    """
    Translate an OSError from artifact I/O into a storage error when its errno
    identifies a permission or space problem.

    Returns the original error otherwise.
    """
    if isinstance(error, PermissionError) or error.errno in _PERMISSION_ERRNOS:
        translated = StoragePermissionError(f"Permission denied: {error}")
    elif error.errno in _NO_SPACE_ERRNOS:
        translated = InsufficientStorageError(f"Insufficient storage: {error}")
    else:
        return error
    translated.__cause__ = error
    return translated


def classify_exception(error: BaseException) -> FailureKind:
    """
    Map an exception raised during an attempt to a FailureKind.

    Unknown exception types fail closed (UNCLASSIFIED is permanent).
    """
    if isinstance(error, ExportCancelledError):
        return FailureKind.CANCELLED
    if isinstance(error, MissingConfigurationError):
        return FailureKind.MISSING_CONFIGURATION
    if isinstance(error, StoragePermissionError):
        return FailureKind.PERMISSION_DENIED
    if isinstance(error, InsufficientStorageError):
        return FailureKind.INSUFFICIENT_SPACE
    if isinstance(error, OSError):
        translated = translate_os_error(error)
        if translated is not error:
            return classify_exception(translated)
        return FailureKind.IO_TRANSIENT
    return FailureKind.UNCLASSIFIED


def classify_api_failure(code: Optional[int], error: Optional[BaseException]) -> FailureKind:
    """
    Map an upload client Failure to a FailureKind.

    code is the HTTP status of the rejected request, or -1 when no response
    was received.
    """
    if isinstance(error, ExportCancelledError):
        return FailureKind.CANCELLED

    if code is not None and code > 0:
        if code in AUTHORIZATION_CODES or code in QUOTA_CODES:
            return FailureKind.AUTHORIZATION_OR_QUOTA
        if code in TRANSIENT_CODES or 500 <= code < 600:
            return FailureKind.NETWORK_TRANSIENT
        return FailureKind.UNCLASSIFIED

    if isinstance(error, TRANSPORT_ERRORS):
        return FailureKind.NETWORK_TRANSIENT
    return FailureKind.UNCLASSIFIED
