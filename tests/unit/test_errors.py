"""
Unit tests for the failure taxonomy (exportjob/export/errors.py).

Tests classification of exceptions and upload API failures.
"""

import errno

import pytest
import requests
from botocore.exceptions import EndpointConnectionError

from exportjob.export.errors import (
    ExportCancelledError,
    FailureKind,
    InsufficientStorageError,
    MissingConfigurationError,
    PhaseFailure,
    StoragePermissionError,
    UploadApiError,
    classify_api_failure,
    classify_exception,
    is_retryable,
    translate_os_error,
)


class TestRetryability:
    """Test which failure kinds may be retried."""

    @pytest.mark.parametrize('kind', [
        FailureKind.IO_TRANSIENT,
        FailureKind.NETWORK_TRANSIENT,
        FailureKind.CANCELLED,
    ])
    def test_retryable_kinds(self, kind):
        assert is_retryable(kind) is True

    @pytest.mark.parametrize('kind', [
        FailureKind.PERMISSION_DENIED,
        FailureKind.INSUFFICIENT_SPACE,
        FailureKind.AUTHORIZATION_OR_QUOTA,
        FailureKind.MISSING_CONFIGURATION,
        FailureKind.LIFESPAN_EXCEEDED,
        FailureKind.UNCLASSIFIED,
    ])
    def test_permanent_kinds(self, kind):
        assert is_retryable(kind) is False

    def test_phase_failure_retryable(self):
        failure = PhaseFailure(FailureKind.NETWORK_TRANSIENT, 'upload', IOError('reset'), -1)

        assert failure.retryable is True
        assert failure.describe() == 'upload failed [network_transient]: reset'

    def test_phase_failure_describe_with_code(self):
        failure = PhaseFailure(FailureKind.AUTHORIZATION_OR_QUOTA, 'negotiation', None, 403)

        assert failure.describe() == 'negotiation failed [authorization_or_quota] (code 403)'


class TestTranslateOsError:
    """Test errno-based translation of artifact I/O errors."""

    def test_no_space(self):
        error = OSError(errno.ENOSPC, 'No space left on device')

        translated = translate_os_error(error)

        assert isinstance(translated, InsufficientStorageError)
        assert translated.__cause__ is error

    def test_permission_error(self):
        translated = translate_os_error(PermissionError(errno.EACCES, 'Permission denied'))

        assert isinstance(translated, StoragePermissionError)

    def test_read_only_filesystem(self):
        translated = translate_os_error(OSError(errno.EROFS, 'Read-only file system'))

        assert isinstance(translated, StoragePermissionError)

    def test_other_errors_unchanged(self):
        error = OSError(errno.EIO, 'Input/output error')

        assert translate_os_error(error) is error


class TestClassifyException:
    """Test mapping of raised exceptions to failure kinds."""

    def test_permission(self):
        assert classify_exception(StoragePermissionError('denied')) is FailureKind.PERMISSION_DENIED

    def test_insufficient_space(self):
        assert classify_exception(InsufficientStorageError('full')) is FailureKind.INSUFFICIENT_SPACE

    def test_raw_os_errors_translated(self):
        assert classify_exception(OSError(errno.ENOSPC, 'full')) is FailureKind.INSUFFICIENT_SPACE
        assert classify_exception(PermissionError(errno.EACCES, 'denied')) is FailureKind.PERMISSION_DENIED

    def test_other_io_error_is_transient(self):
        assert classify_exception(OSError(errno.EIO, 'I/O error')) is FailureKind.IO_TRANSIENT

    def test_missing_configuration(self):
        assert classify_exception(MissingConfigurationError('no key')) is FailureKind.MISSING_CONFIGURATION

    def test_cancelled(self):
        assert classify_exception(ExportCancelledError('stop')) is FailureKind.CANCELLED

    def test_unknown_errors_fail_closed(self):
        assert classify_exception(ValueError('boom')) is FailureKind.UNCLASSIFIED
        assert classify_exception(KeyError('key')) is FailureKind.UNCLASSIFIED


class TestClassifyApiFailure:
    """Test mapping of upload client Failure(error, code) values."""

    @pytest.mark.parametrize('code', [401, 403, 402, 413, 507])
    def test_authorization_or_quota_codes(self, code):
        error = UploadApiError('rejected', status_code=code)

        assert classify_api_failure(code, error) is FailureKind.AUTHORIZATION_OR_QUOTA

    @pytest.mark.parametrize('code', [404, 408, 410, 429, 500, 502, 503])
    def test_transient_codes(self, code):
        assert classify_api_failure(code, UploadApiError('retry')) is FailureKind.NETWORK_TRANSIENT

    def test_unknown_client_error_code(self):
        assert classify_api_failure(400, UploadApiError('bad request')) is FailureKind.UNCLASSIFIED

    def test_no_response_with_transport_error(self):
        assert classify_api_failure(-1, requests.ConnectionError('refused')) is FailureKind.NETWORK_TRANSIENT
        assert classify_api_failure(-1, IOError('reset')) is FailureKind.NETWORK_TRANSIENT
        assert classify_api_failure(
            -1, EndpointConnectionError(endpoint_url='https://s3.amazonaws.com')
        ) is FailureKind.NETWORK_TRANSIENT

    def test_no_response_with_unknown_error(self):
        assert classify_api_failure(-1, ValueError('bad json')) is FailureKind.UNCLASSIFIED

    def test_cancelled_mid_upload(self):
        assert classify_api_failure(-1, ExportCancelledError('stop')) is FailureKind.CANCELLED
