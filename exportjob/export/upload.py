"""
Upload clients for remote export destinations.

Supports:
- HttpUploadClient: resumable HTTP upload (form negotiation + chunked PUT)
- S3UploadClient: S3 multipart upload

Both clients return NetworkResult values and never raise: any exception is
reported as Failure(error, -1) so the job can classify it at the phase
boundary.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import BinaryIO, Dict, Optional
from urllib.parse import parse_qs, urljoin, urlparse

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

from .cancellation import CancellationToken
from .errors import MissingConfigurationError, UploadApiError
from .outcome import Failure, NetworkResult, Success


logger = logging.getLogger(__name__)

DEFAULT_HTTP_CHUNK_SIZE = 1024 * 1024  # 1MB
DEFAULT_S3_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB
S3_MIN_PART_SIZE = 5 * 1024 * 1024

_RANGE_PATTERN = re.compile(r'bytes=(\d+)-(\d+)')


@dataclass(frozen=True)
class UploadForm:
    """Upload form issued by the endpoint for one artifact."""

    key: str
    signed_upload_location: str
    headers: Dict[str, str] = field(default_factory=dict)
    cdn: Optional[int] = None


@dataclass(frozen=True)
class UploadParameters:
    """Negotiated parameters for one upload attempt. Never persisted."""

    form: UploadForm
    resumable_url: str


class HttpUploadClient:
    """
    Client for a resumable HTTP upload endpoint.

    Negotiation:
        1. GET {base_url}/v4/attachments/form/upload -> upload form (JSON)
        2. POST form.signedUploadLocation with the form headers -> Location
           header holding the resumable session URL
    Transfer:
        PUT 'Content-Range: bytes */{length}' asks for the committed offset
        (308 + Range header), then bounded chunks are PUT with
        'Content-Range: bytes {start}-{end}/{length}' until the endpoint
        answers 200/201.
    """

    FORM_ENDPOINT = 'v4/attachments/form/upload'

    def __init__(self, base_url: str, session: Optional[requests.Session] = None,
                 chunk_size: int = DEFAULT_HTTP_CHUNK_SIZE, timeout: float = 30,
                 auth_token: Optional[str] = None):
        """
        Initialize HTTP upload client.

        Args:
            base_url: Base URL of the upload API
            session: Optional requests session (one is created if omitted)
            chunk_size: Bytes sent per PUT request
            timeout: Per-request timeout in seconds
            auth_token: Optional bearer token for the form endpoint
        """
        self.base_url = base_url if base_url.endswith('/') else base_url + '/'
        self.session = session or requests.Session()
        self.chunk_size = chunk_size
        self.timeout = timeout

        if auth_token:
            self.session.headers.update({'Authorization': f'Bearer {auth_token}'})

    def close(self):
        self.session.close()

    def abandon(self, params: UploadParameters):
        # Unused resumable sessions expire on the storage side
        pass

    def negotiate_upload(self) -> NetworkResult:
        """Request an upload form and open a resumable upload session for it."""
        try:
            form_result = self._get_upload_form()
            if isinstance(form_result, Failure):
                return form_result

            form = form_result.value
            url_result = self._get_resumable_url(form)
            return url_result.map(lambda resumable_url: UploadParameters(form, resumable_url))

        except Exception as e:
            return Failure(e, -1)

    def stream_upload(self, form: UploadForm, resumable_url: str, stream: BinaryIO, length: int,
                      cancel_token: Optional[CancellationToken] = None) -> NetworkResult:
        """
        Stream exactly length bytes from stream to the resumable session.

        Resumes from the offset the endpoint has already committed.
        """
        try:
            offset_result = self._query_offset(resumable_url, length)
            if isinstance(offset_result, Failure):
                return offset_result

            offset = offset_result.value
            if offset > 0:
                logger.info(f"Resuming upload of {form.key} at byte {offset}/{length}")
            stream.seek(offset)

            while offset < length:
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()

                chunk = stream.read(min(self.chunk_size, length - offset))
                if not chunk:
                    return Failure(IOError(f"Artifact ended at byte {offset}, expected {length}"), -1)

                end = offset + len(chunk) - 1
                response = self.session.put(
                    resumable_url,
                    data=chunk,
                    headers={
                        'Content-Range': f'bytes {offset}-{end}/{length}',
                        'Content-Type': 'application/octet-stream',
                    },
                    timeout=self.timeout,
                )

                if response.status_code in (200, 201):
                    return Success(None)
                if response.status_code != 308:
                    return self._failure(response, 'upload chunk')

                offset = self._committed_offset(response, default=end + 1)

            return Success(None)

        except Exception as e:
            return Failure(e, -1)

    def _get_upload_form(self) -> NetworkResult:
        endpoint = urljoin(self.base_url, self.FORM_ENDPOINT)
        response = self.session.get(endpoint, timeout=self.timeout)
        if response.status_code != 200:
            return self._failure(response, 'get upload form')

        data = response.json()
        return Success(UploadForm(
            key=data['key'],
            signed_upload_location=data['signedUploadLocation'],
            headers=data.get('headers') or {},
            cdn=data.get('cdn'),
        ))

    def _get_resumable_url(self, form: UploadForm) -> NetworkResult:
        headers = dict(form.headers)
        headers.update({'Content-Length': '0', 'Content-Type': 'application/octet-stream'})

        response = self.session.post(form.signed_upload_location, headers=headers, timeout=self.timeout)
        if response.status_code not in (200, 201):
            return self._failure(response, 'create resumable session')

        location = response.headers.get('Location')
        if not location:
            return Failure(UploadApiError("Resumable session response has no Location header",
                                          status_code=response.status_code), -1)
        return Success(location)

    def _query_offset(self, resumable_url: str, length: int) -> NetworkResult:
        response = self.session.put(
            resumable_url,
            headers={'Content-Range': f'bytes */{length}', 'Content-Length': '0'},
            timeout=self.timeout,
        )
        if response.status_code in (200, 201):
            return Success(length)
        if response.status_code == 308:
            return Success(self._committed_offset(response, default=0))
        return self._failure(response, 'query upload offset')

    @staticmethod
    def _committed_offset(response, default: int) -> int:
        match = _RANGE_PATTERN.match(response.headers.get('Range', ''))
        if match:
            return int(match.group(2)) + 1
        return default

    @staticmethod
    def _failure(response, action: str) -> Failure:
        return Failure(
            UploadApiError(f"Failed to {action}: HTTP {response.status_code}",
                           status_code=response.status_code, endpoint=response.url),
            response.status_code,
        )


class S3UploadClient:
    """
    Client uploading artifacts to S3 with multipart uploads.

    Objects are written to {prefix}/{YYYY}/{MM}/export-{id}.backup. The
    resumable URL has the form s3://{bucket}/{key}?uploadId={upload_id}.
    """

    def __init__(self, bucket_name: str, prefix: str = '', access_key: Optional[str] = None,
                 secret_key: Optional[str] = None, region: str = 'us-east-1',
                 chunk_size: int = DEFAULT_S3_CHUNK_SIZE, s3_client=None):
        """
        Initialize S3 upload client.

        Args:
            bucket_name: S3 bucket name
            prefix: Key prefix for uploaded artifacts
            access_key: AWS access key ID (default credential chain if omitted)
            secret_key: AWS secret access key
            region: AWS region (default: us-east-1)
            chunk_size: Part size; raised to the S3 minimum of 5MB
            s3_client: Optional preconfigured boto3 S3 client
        """
        self.bucket_name = bucket_name
        self.prefix = prefix.strip('/')
        self.chunk_size = max(chunk_size, S3_MIN_PART_SIZE)

        if s3_client is None:
            s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
            )
        self.s3_client = s3_client

    def negotiate_upload(self) -> NetworkResult:
        now = datetime.utcnow()
        key = f"{now.year}/{now.month:02d}/export-{uuid.uuid4().hex}.backup"
        if self.prefix:
            key = f"{self.prefix}/{key}"

        try:
            response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            return Failure(e, _status_code(e))
        except Exception as e:
            return Failure(e, -1)

        form = UploadForm(key=key, signed_upload_location=f"s3://{self.bucket_name}/{key}")
        return Success(UploadParameters(form, f"{form.signed_upload_location}?uploadId={response['UploadId']}"))

    def stream_upload(self, form: UploadForm, resumable_url: str, stream: BinaryIO, length: int,
                      cancel_token: Optional[CancellationToken] = None) -> NetworkResult:
        """Upload the artifact part by part, aborting the multipart upload on any failure."""
        upload_id = parse_qs(urlparse(resumable_url).query).get('uploadId', [None])[0]
        if not upload_id:
            return Failure(UploadApiError(f"No uploadId in resumable URL: {resumable_url}"), -1)

        parts = []
        sent = 0

        try:
            part_number = 1
            while sent < length:
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()

                data = stream.read(min(self.chunk_size, length - sent))
                if not data:
                    raise IOError(f"Artifact ended at byte {sent}, expected {length}")

                response = self.s3_client.upload_part(
                    Bucket=self.bucket_name,
                    Key=form.key,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=data,
                )
                parts.append({'PartNumber': part_number, 'ETag': response['ETag']})

                sent += len(data)
                part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=form.key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts},
            )
            return Success(None)

        except ClientError as e:
            self._abort(form.key, upload_id)
            return Failure(e, _status_code(e))
        except Exception as e:
            self._abort(form.key, upload_id)
            return Failure(e, -1)

    def abandon(self, params: UploadParameters):
        """Abort a negotiated multipart upload that will never be streamed."""
        upload_id = parse_qs(urlparse(params.resumable_url).query).get('uploadId', [None])[0]
        if upload_id:
            self._abort(params.form.key, upload_id)

    def _abort(self, key: str, upload_id: str):
        try:
            self.s3_client.abort_multipart_upload(Bucket=self.bucket_name, Key=key, UploadId=upload_id)
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Failed to abort multipart upload {upload_id}: {e}")


def _status_code(error: ClientError) -> int:
    return error.response.get('ResponseMetadata', {}).get('HTTPStatusCode', -1)


def create_upload_client(destination_ref: str, config: Optional[dict] = None):
    """
    Create the upload client for a destination URL.

    Args:
        destination_ref: http(s):// upload API URL or s3://bucket/prefix
        config: Mapping with optional UPLOAD_* and AWS_* settings

    Returns:
        HttpUploadClient or S3UploadClient

    Raises:
        MissingConfigurationError: If the destination URL is not supported
    """
    config = config or {}
    parsed = urlparse(destination_ref or '')

    if parsed.scheme in ('http', 'https') and parsed.netloc:
        return HttpUploadClient(
            destination_ref,
            chunk_size=config.get('UPLOAD_CHUNK_SIZE', DEFAULT_HTTP_CHUNK_SIZE),
            timeout=config.get('UPLOAD_TIMEOUT_SECONDS', 30),
            auth_token=config.get('UPLOAD_AUTH_TOKEN'),
        )

    if parsed.scheme == 's3' and parsed.netloc:
        return S3UploadClient(
            bucket_name=parsed.netloc,
            prefix=parsed.path,
            access_key=config.get('AWS_ACCESS_KEY_ID'),
            secret_key=config.get('AWS_SECRET_ACCESS_KEY'),
            region=config.get('AWS_REGION', 'us-east-1'),
            chunk_size=config.get('S3_CHUNK_SIZE', DEFAULT_S3_CHUNK_SIZE),
        )

    raise MissingConfigurationError(f"Unsupported destination: {destination_ref!r}")
