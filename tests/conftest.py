"""
Shared pytest fixtures for exportjob tests.

This module provides fixtures for:
- Flask app with in-memory job store
- Install secret (CryptoManager) fixtures
- Export source directories
- Fake exporter / upload client collaborators
- Mock fixtures for external services (S3, scheduler)
"""

import os
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from exportjob import create_app, db as _db
from exportjob.export.cancellation import CancellationToken
from exportjob.export.job import ExportDependencies
from exportjob.export.outcome import Success
from exportjob.export.sources import DirectorySource, SourceResolver
from exportjob.export.upload import UploadForm, UploadParameters
from exportjob.utils.crypto import CryptoManager


FIXED_NOW = datetime(2024, 1, 15, 12, 0, 0)


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    app = create_app('testing', config_overrides={
        'TEMP_DIR': str(tmp_path / 'temp'),
        'SOURCE_ROOT': str(tmp_path / 'sources'),
    })

    os.makedirs(app.config['SOURCE_ROOT'], exist_ok=True)

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture(scope='session')
def crypto_manager_initialized():
    """
    Create and initialize a CryptoManager instance.

    Password: test_password_123
    """
    cm = CryptoManager()
    salt = cm.initialize('test_password_123')
    return cm, salt


@pytest.fixture(scope='function')
def install_secret(crypto_manager_initialized):
    """Patch the global install secret used by the executor and scheduler."""
    cm, _ = crypto_manager_initialized
    with patch('exportjob.export.executor.crypto_manager', cm), \
            patch('exportjob.scheduler.crypto_manager', cm):
        yield cm


@pytest.fixture
def source_dir(tmp_path):
    """
    Create an export source with a few files.

    Creates:
    - notes.txt
    - photos/cat.jpg
    - scratch.tmp (excluded by default patterns)
    """
    root = tmp_path / 'sources' / 'library'
    (root / 'photos').mkdir(parents=True)
    (root / 'notes.txt').write_text('Remember the milk')
    (root / 'photos' / 'cat.jpg').write_bytes(b'\xff\xd8\xff' + b'meow' * 100)
    (root / 'scratch.tmp').write_text('temporary')
    return root


@pytest.fixture
def directory_source(source_dir):
    return DirectorySource('library', source_dir, ['*.tmp'])


class FakeExporter:
    """Exporter writing fixed bytes, or raising a configured error."""

    def __init__(self, payload=b'encrypted-artifact', error=None, on_export=None):
        self.payload = payload
        self.error = error
        self.on_export = on_export
        self.calls = []

    def export(self, secret, source, destination_path, passphrase, cancel_token=None):
        self.calls.append(destination_path)
        with open(destination_path, 'xb') as f:
            f.write(self.payload[:len(self.payload) // 2])
            if self.on_export is not None:
                self.on_export(cancel_token)
            if self.error is not None:
                raise self.error
            f.write(self.payload[len(self.payload) // 2:])
        return len(self.payload)


class FakeUploadClient:
    """Upload client returning configured results and recording uploaded bytes."""

    def __init__(self, negotiate_result=None, stream_result=None, on_stream=None):
        form = UploadForm(key='artifact-key', signed_upload_location='https://upload.example.com/signed')
        self.negotiate_result = negotiate_result or Success(
            UploadParameters(form, 'https://upload.example.com/session/1')
        )
        self.stream_result = stream_result or Success(None)
        self.on_stream = on_stream
        self.negotiate_calls = 0
        self.uploaded = []
        self.abandoned = []
        self.closed = False

    def negotiate_upload(self):
        self.negotiate_calls += 1
        return self.negotiate_result

    def stream_upload(self, form, resumable_url, stream, length, cancel_token=None):
        self.uploaded.append(stream.read(length))
        if self.on_stream is not None:
            self.on_stream(cancel_token)
        return self.stream_result

    def abandon(self, params):
        self.abandoned.append(params)

    def close(self):
        self.closed = True


@pytest.fixture
def make_exporter():
    return FakeExporter


@pytest.fixture
def make_upload_client():
    return FakeUploadClient


@pytest.fixture
def make_dependencies(tmp_path, crypto_manager_initialized, source_dir):
    """
    Build ExportDependencies around fakes.

    Keyword arguments override single collaborators.
    """
    cm, _ = crypto_manager_initialized

    def _make(exporter=None, upload_client=None, secret=cm, resolver=None, temp_dir=None,
              cancel_token=None):
        client = upload_client or FakeUploadClient()
        return ExportDependencies(
            exporter=exporter or FakeExporter(),
            upload_client_factory=lambda destination_ref: client,
            source_resolver=resolver or SourceResolver(str(tmp_path / 'sources'), ['*.tmp']),
            secret_provider=lambda: secret,
            temp_dir=str(temp_dir or tmp_path / 'temp'),
            clock=lambda: FIXED_NOW,
            cancel_token=cancel_token or CancellationToken(),
        )

    return _make


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.client('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('exportjob.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance


@pytest.fixture
def temp_artifacts(tmp_path):
    """Names of the files left in the temporary directory."""
    def _list():
        path = tmp_path / "temp"
        if not path.exists():
            return []
        return sorted(p.name for p in path.iterdir())

    return _list
