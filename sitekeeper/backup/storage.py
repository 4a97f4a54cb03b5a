"""
S3-compatible object store client over plain HTTPS.

Every request is signed with our own SigV4 implementation (see signer.py) and
sent with requests. Supports:
- listing backup archives under a prefix (with pagination)
- single PUT uploads streamed from disk
- the multipart sequence: initiate, upload part, complete, abort
- object download and deletion
"""

import logging
import math
import os
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

import requests

from .signer import canonical_uri, hash_file, hash_payload, sign_request, uri_encode, EMPTY_PAYLOAD_HASH
from .types import (
    BackupError,
    ErrorKind,
    MultipartSession,
    PartInfo,
    RemoteBackupEntry,
    StoreCredentials,
    UploadResult,
)

logger = logging.getLogger(__name__)

DEFAULT_MULTIPART_THRESHOLD = 1024 * 1024 * 1024  # 1GB
DEFAULT_CHUNK_SIZE = 200 * 1024 * 1024  # 200MB
MIN_CHUNK_SIZE = 5 * 1024 * 1024  # S3 minimum for every part but the last

# (connect, read) timeouts in seconds for requests without a large body
LIST_TIMEOUT = (10, 30)
CONTROL_TIMEOUT = (10, 60)
COMPLETE_TIMEOUT = (10, 120)

RATE_LIMIT_CODES = {'SlowDown', 'Throttling', 'ThrottlingException', 'RequestLimitExceeded', 'TooManyRequests'}
TIMEOUT_CODES = {'RequestTimeout', 'RequestTimeoutException'}
AUTH_CODES = {
    'SignatureDoesNotMatch', 'InvalidAccessKeyId', 'AccessDenied', 'ExpiredToken',
    'RequestTimeTooSkewed', 'AuthorizationHeaderMalformed', 'InvalidToken',
}


class StorageError(BackupError):
    """Raised when a store operation fails."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.UPLOAD_SERVER_ERROR,
                 status_code: Optional[int] = None, retryable: Optional[bool] = None):
        super().__init__(message, kind)
        self.status_code = status_code
        self.retryable = kind.retryable if retryable is None else retryable


@dataclass
class RetryPolicy:
    """
    Exponential backoff for transient store failures.

    Throttling backs off with a steeper base than timeouts and 5xx errors.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_base: float = 2.0
    rate_limit_base: float = 3.0
    max_delay: float = 120.0

    def delay(self, attempt: int, kind: ErrorKind) -> float:
        """Seconds to wait before retry number ``attempt`` (1-based)."""
        base = self.rate_limit_base if kind == ErrorKind.UPLOAD_RATE_LIMITED else self.backoff_base
        return min(self.base_delay * (base ** attempt), self.max_delay)


def choose_upload_method(size: int, threshold: int = DEFAULT_MULTIPART_THRESHOLD) -> str:
    """Files at or above the threshold go multipart, everything else is a single PUT."""
    return 'multipart' if size >= threshold else 'single'


def part_count(size: int, chunk_size: int) -> int:
    return max(1, math.ceil(size / chunk_size))


def compute_timeouts(size: int) -> Tuple[int, int]:
    """
    Connect and transfer timeouts scaled to the payload.

    Connect: one second per 5MB, between 30s and 120s.
    Transfer: one second per MB, between 10 minutes and 1 hour.
    """
    connect = min(120, max(30, math.ceil(size / (5 * 1024 * 1024))))
    read = min(3600, max(600, math.ceil(size / (1024 * 1024))))
    return connect, read


def build_query(**params) -> str:
    """Query string in canonical form, so the URL matches what gets signed."""
    pairs = sorted(
        (uri_encode(name.replace('_', '-')), uri_encode(str(value)))
        for name, value in params.items()
        if value is not None
    )
    return '&'.join(f"{name}={value}" for name, value in pairs)


def build_complete_xml(parts: List[PartInfo]) -> bytes:
    """
    Manifest for CompleteMultipartUpload.

    Raises:
        ValueError: If parts are not contiguous from 1 in ascending order
    """
    expected = list(range(1, len(parts) + 1))
    if [part.part_number for part in parts] != expected:
        raise ValueError("Parts must be contiguous from 1 in ascending order")

    root = ET.Element('CompleteMultipartUpload')
    for part in parts:
        element = ET.SubElement(root, 'Part')
        ET.SubElement(element, 'PartNumber').text = str(part.part_number)
        ET.SubElement(element, 'ETag').text = f'"{part.etag.strip(chr(34))}"'
    return ET.tostring(root, encoding='utf-8')


def parse_error_response(body: bytes) -> Tuple[Optional[str], Optional[str]]:
    """Extract (Code, Message) from an S3 XML error body."""
    if not body or b'<' not in body:
        return None, None
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        return None, None
    return root.findtext('{*}Code') or root.findtext('Code'), root.findtext('{*}Message') or root.findtext('Message')


def classify_failure(status_code: int, code: Optional[str]) -> Tuple[ErrorKind, bool]:
    """Map an HTTP failure to (kind, retryable)."""
    if status_code == 429 or code in RATE_LIMIT_CODES:
        return ErrorKind.UPLOAD_RATE_LIMITED, True
    # S3 answers a stalled upload with 400 RequestTimeout
    if code in TIMEOUT_CODES:
        return ErrorKind.UPLOAD_NETWORK, True
    if status_code in (401, 403) or code in AUTH_CODES:
        return ErrorKind.UPLOAD_AUTH, False
    if status_code >= 500:
        return ErrorKind.UPLOAD_SERVER_ERROR, True
    # Remaining 4xx: the request itself is wrong, retrying cannot help
    return ErrorKind.UPLOAD_SERVER_ERROR, False


def _parse_timestamp(value: str) -> datetime:
    value = value.strip().replace('Z', '+0000')
    for fmt in ('%Y-%m-%dT%H:%M:%S.%f%z', '%Y-%m-%dT%H:%M:%S%z'):
        try:
            return datetime.strptime(value, fmt).astimezone(timezone.utc)
        except ValueError:
            continue
    raise ValueError(f"Unrecognized LastModified timestamp: {value}")


class S3Client:
    """
    Signed S3 REST client for one bucket.

    Keys are full object keys (``example.com/example.com_2024-01-15_12-00-00.zip``);
    requests are path-style against ``credentials.base_url``.
    """

    def __init__(
        self,
        credentials: StoreCredentials,
        multipart_threshold: int = DEFAULT_MULTIPART_THRESHOLD,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        retry_policy: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if chunk_size < MIN_CHUNK_SIZE:
            raise ValueError(f"Chunk size must be at least {MIN_CHUNK_SIZE} bytes")

        self.credentials = credentials
        self.multipart_threshold = multipart_threshold
        self.chunk_size = chunk_size
        self.retry_policy = retry_policy or RetryPolicy()
        self.session = session or requests.Session()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Transport

    def _url(self, key: str, query: str = '') -> Tuple[str, str]:
        uri = canonical_uri(self.credentials.bucket, key)
        url = f"{self.credentials.base_url}{uri}"
        if query:
            url = f"{url}?{query}"
        return uri, url

    def _request(
        self,
        method: str,
        key: str = '',
        query: str = '',
        body=b'',
        payload_hash: Optional[str] = None,
        headers: Optional[dict] = None,
        timeout: Tuple[int, int] = CONTROL_TIMEOUT,
        stream: bool = False,
    ) -> requests.Response:
        """
        Sign and send one request; raise StorageError on any non-2xx outcome.

        The Authorization header is never logged.
        """
        uri, url = self._url(key, query)
        if payload_hash is None:
            payload_hash = hash_payload(body) if isinstance(body, (bytes, str)) else EMPTY_PAYLOAD_HASH

        signed = sign_request(self.credentials, method, uri, query, payload_hash=payload_hash)
        request_headers = signed.headers()
        request_headers.update(headers or {})

        logger.debug(f"S3 {method} {url}")

        try:
            response = self.session.request(
                method,
                url,
                headers=request_headers,
                data=body if body else None,
                timeout=timeout,
                stream=stream,
            )
        except requests.Timeout as e:
            raise StorageError(f"S3 {method} timeout: {e}", ErrorKind.UPLOAD_NETWORK)
        except requests.RequestException as e:
            raise StorageError(f"S3 {method} network error: {e}", ErrorKind.UPLOAD_NETWORK)

        if 200 <= response.status_code < 300:
            return response

        content = response.content
        code, message = parse_error_response(content)
        kind, retryable = classify_failure(response.status_code, code)
        detail = message or code or f"HTTP Error: {response.status_code}"
        logger.warning(f"S3 {method} {uri} failed: HTTP {response.status_code} {code or ''}".rstrip())
        raise StorageError(
            f"S3 {method} failed ({response.status_code}): {detail}",
            kind,
            status_code=response.status_code,
            retryable=retryable,
        )

    def _with_retries(self, description: str, func: Callable, *args, **kwargs):
        """
        Call func, retrying retryable StorageErrors with backoff.

        Raises:
            StorageError: The last error once attempts are exhausted, or
                immediately for non-retryable failures
        """
        attempt = 1
        while True:
            try:
                return func(*args, **kwargs)
            except StorageError as e:
                if not e.retryable or attempt >= self.retry_policy.max_attempts:
                    if e.retryable:
                        logger.error(f"{description} failed after {attempt} attempts: {e}")
                    raise
                delay = self.retry_policy.delay(attempt, e.kind)
                logger.warning(f"{description} attempt {attempt} failed ({e.kind.value}), retrying in {delay:.1f}s: {e}")
                self._sleep(delay)
                attempt += 1

    # ------------------------------------------------------------------
    # Listing, download, deletion

    def list_backups(self, prefix: Optional[str] = None, oldest_first: bool = False) -> List[RemoteBackupEntry]:
        """
        List backup archives under a prefix.

        Args:
            prefix: Key prefix (defaults to the site's prefix)
            oldest_first: Sort ascending by modification time (rotation order)

        Returns:
            RemoteBackupEntry list; directory markers and non-zip keys are skipped

        Raises:
            StorageError: If listing fails
        """
        prefix = self.credentials.key_prefix if prefix is None else prefix
        entries = []
        token = None

        while True:
            query = build_query(list_type=2, prefix=prefix, continuation_token=token)
            response = self._with_retries('S3 list', self._request, 'GET', '', query, timeout=LIST_TIMEOUT)

            try:
                root = ET.fromstring(response.content)
            except ET.ParseError as e:
                raise StorageError(f"Error parsing S3 list response: {e}", retryable=False)

            for content in root.findall('{*}Contents'):
                key = content.findtext('{*}Key') or ''
                if key == prefix or key.endswith('/') or not key.lower().endswith('.zip'):
                    continue

                last_modified = _parse_timestamp(content.findtext('{*}LastModified') or '')
                entries.append(RemoteBackupEntry(
                    filename=os.path.basename(key),
                    s3_key=key,
                    size=int(content.findtext('{*}Size') or 0),
                    last_modified=last_modified,
                    date_raw=int(last_modified.timestamp()),
                ))

            truncated = (root.findtext('{*}IsTruncated') or 'false').lower() == 'true'
            token = root.findtext('{*}NextContinuationToken')
            if not truncated or not token:
                break

        entries.sort(key=lambda entry: entry.date_raw, reverse=not oldest_first)
        logger.info(f"Found {len(entries)} backup archives under '{prefix}'")
        return entries

    def get_object(self, key: str, dest_path: str) -> int:
        """
        Download an object to a local file.

        Returns:
            Number of bytes written

        Raises:
            StorageError: If the download fails or is empty
        """
        response = self._with_retries(
            'S3 download', self._request, 'GET', key, timeout=compute_timeouts(0), stream=True
        )
        written = 0
        try:
            with open(dest_path, 'wb') as f:
                for chunk in response.iter_content(chunk_size=1024 * 1024):
                    f.write(chunk)
                    written += len(chunk)
        except requests.RequestException as e:
            raise StorageError(f"S3 download interrupted for {key}: {e}", ErrorKind.UPLOAD_NETWORK)

        if written == 0:
            raise StorageError(f"Downloaded object is empty: {key}", retryable=False)
        return written

    def delete_object(self, key: str):
        """
        Delete an object.

        Raises:
            StorageError: If deletion fails
        """
        if not key:
            raise StorageError("Missing key for S3 deletion", retryable=False)
        self._request('DELETE', key, timeout=LIST_TIMEOUT)
        logger.info(f"Deleted S3 object: {key}")

    # ------------------------------------------------------------------
    # Single upload

    def put_object(self, key: str, path: str, size: Optional[int] = None):
        """
        Upload a file with one PUT, streaming it from disk.

        Raises:
            StorageError: If the upload fails
        """
        size = os.path.getsize(path) if size is None else size
        payload_hash = hash_file(path)

        with open(path, 'rb') as f:
            self._request(
                'PUT',
                key,
                body=f,
                payload_hash=payload_hash,
                headers={
                    'Content-Type': 'application/octet-stream',
                    'Content-Length': str(size),
                },
                timeout=compute_timeouts(size),
            )

    # ------------------------------------------------------------------
    # Multipart

    def initiate_multipart(self, key: str) -> MultipartSession:
        """
        Start a multipart upload.

        Raises:
            StorageError: If the store does not return an UploadId
        """
        response = self._request(
            'POST',
            key,
            query='uploads=',
            headers={'Content-Type': 'application/octet-stream'},
            timeout=CONTROL_TIMEOUT,
        )
        try:
            upload_id = ET.fromstring(response.content).findtext('{*}UploadId')
        except ET.ParseError:
            upload_id = None

        if not upload_id:
            raise StorageError("Failed to initiate multipart upload: no UploadId in response")

        logger.info(f"Multipart upload initiated for {key}")
        return MultipartSession(key=key, upload_id=upload_id)

    def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        """
        Upload one part.

        Returns:
            The part's ETag, without surrounding quotes

        Raises:
            StorageError: If the upload fails or no ETag comes back
        """
        response = self._request(
            'PUT',
            key,
            query=build_query(partNumber=part_number, uploadId=upload_id),
            body=data,
            headers={
                'Content-Type': 'application/octet-stream',
                'Content-Length': str(len(data)),
            },
            timeout=compute_timeouts(len(data)),
        )
        etag = (response.headers.get('ETag') or '').strip().strip('"')
        if not etag:
            raise StorageError(f"No ETag returned for part {part_number}")
        return etag

    def complete_multipart(self, key: str, upload_id: str, parts: List[PartInfo]):
        """
        Stitch uploaded parts together.

        Raises:
            StorageError: If completion fails (S3 may report errors in a 200 body)
        """
        body = build_complete_xml(parts)
        response = self._request(
            'POST',
            key,
            query=build_query(uploadId=upload_id),
            body=body,
            headers={
                'Content-Type': 'application/xml',
                'Content-Length': str(len(body)),
            },
            timeout=COMPLETE_TIMEOUT,
        )

        code, message = parse_error_response(response.content)
        if code:
            kind, retryable = classify_failure(500, code)
            raise StorageError(f"Failed to complete multipart upload: {message or code}", kind, retryable=retryable)

        logger.info(f"Multipart upload completed for {key} ({len(parts)} parts)")

    def abort_multipart(self, key: str, upload_id: str) -> bool:
        """
        Abort a multipart upload so the store drops its stored parts.

        Failures are logged, not raised: abort runs on error paths.

        Returns:
            True if the store confirmed the abort
        """
        logger.info(f"Aborting multipart upload for {key}")
        try:
            self._request('DELETE', key, query=build_query(uploadId=upload_id), timeout=CONTROL_TIMEOUT)
        except StorageError as e:
            logger.error(f"Failed to abort multipart upload for {key}: {e}")
            return False
        logger.info("Successfully aborted multipart upload")
        return True

    # ------------------------------------------------------------------
    # Upload entry point

    def upload(self, local_path: str, key: Optional[str] = None) -> UploadResult:
        """
        Upload an archive, choosing single PUT or multipart by size.

        Args:
            local_path: Path to local archive file
            key: Object key (defaults to key_prefix + file name)

        Returns:
            UploadResult describing what was uploaded

        Raises:
            StorageError: If the upload fails after retries
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}", ErrorKind.ARCHIVE_FAILED, retryable=False)

        filename = os.path.basename(local_path)
        key = key or f"{self.credentials.key_prefix}{filename}"
        size = os.path.getsize(local_path)
        method = choose_upload_method(size, self.multipart_threshold)

        logger.info(f"Starting S3 upload for {filename} ({size / 1024 / 1024:.2f} MB, method: {method})")

        if method == 'multipart':
            parts = self._multipart_upload(local_path, key, size)
            return UploadResult(
                key=key, method=method, size=size, part_count=parts,
                message=f"Backup uploaded to S3 via multipart: {filename} ({parts} parts)",
            )

        self._with_retries('S3 upload', self.put_object, key, local_path, size)
        logger.info(f"S3 single upload successful for {filename}")
        return UploadResult(key=key, method=method, size=size, message=f"Backup uploaded to S3: {filename}")

    def _multipart_upload(self, local_path: str, key: str, size: int) -> int:
        """
        Run the multipart sequence; abort the session on any failure.

        Returns:
            Number of parts uploaded
        """
        total_parts = part_count(size, self.chunk_size)
        logger.info(f"Starting multipart upload: {total_parts} parts of {self.chunk_size / 1024 / 1024:.0f} MB")

        session = self._with_retries('S3 initiate multipart', self.initiate_multipart, key)

        try:
            with open(local_path, 'rb') as f:
                for part_number in range(1, total_parts + 1):
                    offset = (part_number - 1) * self.chunk_size
                    length = min(self.chunk_size, size - offset)

                    f.seek(offset)
                    data = f.read(length)
                    if len(data) != length:
                        raise StorageError(
                            f"Failed to read chunk {part_number}", ErrorKind.ARCHIVE_FAILED, retryable=False
                        )

                    etag = self._with_retries(
                        f"S3 part {part_number}", self.upload_part, key, session.upload_id, part_number, data
                    )
                    session.record(part_number, etag)
                    progress = round(part_number / total_parts * 100, 1)
                    logger.info(f"Uploaded part {part_number}/{total_parts} ({progress}%)")
                    del data

            self._with_retries(
                'S3 complete multipart', self.complete_multipart, key, session.upload_id, session.ordered_parts()
            )
            session.state = 'completed'

        except Exception as e:
            logger.error(f"Multipart upload failed: {e}")
            self.abort_multipart(key, session.upload_id)
            session.state = 'aborted'
            if isinstance(e, StorageError):
                raise
            raise StorageError(f"S3 multipart upload failed: {e}", retryable=False)

        return len(session.parts)
