"""
Types shared across the backup modules: credentials, listing entries,
multipart session state, run results and the error taxonomy.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional
from urllib.parse import urlparse


class ErrorKind(str, Enum):
    CONFIG_MISSING = 'ConfigMissing'
    DISK_SPACE_INSUFFICIENT = 'DiskSpaceInsufficient'
    DUMP_FAILED = 'DumpFailed'
    ARCHIVE_FAILED = 'ArchiveFailed'
    UPLOAD_NETWORK = 'UploadFailed.Network'
    UPLOAD_AUTH = 'UploadFailed.Auth'
    UPLOAD_RATE_LIMITED = 'UploadFailed.RateLimited'
    UPLOAD_SERVER_ERROR = 'UploadFailed.ServerError'
    ROTATION_FAILED = 'RotationFailed'
    ALREADY_RUNNING = 'AlreadyRunning'

    @property
    def retryable(self) -> bool:
        return self in (
            ErrorKind.UPLOAD_NETWORK,
            ErrorKind.UPLOAD_RATE_LIMITED,
            ErrorKind.UPLOAD_SERVER_ERROR,
        )


class BackupError(Exception):
    """Base error for a failed backup step; carries its ErrorKind."""

    kind = ErrorKind.UPLOAD_SERVER_ERROR

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


@dataclass(frozen=True)
class StoreCredentials:
    """
    Connection details for the S3-compatible store.

    ``key_prefix`` is where this site's backups live inside the bucket
    (e.g. ``example.com/``). Without an endpoint the regional AWS endpoint
    is used; requests are always path-style (``/{bucket}/{key}``).
    """

    access_key: str
    secret_key: str
    bucket: str
    region: str = 'us-east-1'
    endpoint: Optional[str] = None
    key_prefix: str = ''

    def __post_init__(self):
        missing = [name for name in ('access_key', 'secret_key', 'bucket') if not getattr(self, name)]
        if missing:
            raise ValueError(f"Incomplete S3 configuration: missing {', '.join(missing)}")
        if not self.region:
            object.__setattr__(self, 'region', 'us-east-1')
        if self.key_prefix and not self.key_prefix.endswith('/'):
            object.__setattr__(self, 'key_prefix', self.key_prefix + '/')

    @property
    def base_url(self) -> str:
        if self.endpoint:
            base_url = self.endpoint.rstrip('/')
            if not base_url.startswith('http'):
                base_url = 'https://' + base_url
            return base_url
        return f"https://s3.{self.region}.amazonaws.com"

    @property
    def host(self) -> str:
        return urlparse(self.base_url).netloc

    def redacted(self) -> dict:
        """Display-safe view (no secret, access key truncated)."""
        return {
            'bucket': self.bucket,
            'region': self.region,
            'endpoint': self.endpoint or 'N/A',
            'path': f"{self.bucket}/{self.key_prefix}",
            'access_key': self.access_key[:4] + '...',
        }


@dataclass
class RemoteBackupEntry:
    filename: str
    s3_key: str
    size: int
    last_modified: datetime
    date_raw: int  # epoch seconds

    def to_dict(self) -> dict:
        return {
            'filename': self.filename,
            's3_key': self.s3_key,
            'size': self.size,
            'last_modified': self.last_modified.isoformat(),
            'date_raw': self.date_raw,
        }


@dataclass(frozen=True)
class PartInfo:
    part_number: int
    etag: str

    def __post_init__(self):
        if self.part_number < 1:
            raise ValueError(f"Part numbers start at 1, got {self.part_number}")
        if not self.etag:
            raise ValueError(f"Part {self.part_number} has no ETag")


@dataclass
class MultipartSession:
    key: str
    upload_id: str
    parts: List[PartInfo] = field(default_factory=list)
    state: str = 'initiated'  # initiated, completed, aborted

    def record(self, part_number: int, etag: str):
        self.parts.append(PartInfo(part_number, etag))

    def ordered_parts(self) -> List[PartInfo]:
        return sorted(self.parts, key=lambda part: part.part_number)


@dataclass
class UploadResult:
    key: str
    method: str  # single, multipart
    size: int
    part_count: int = 1
    message: str = ''


@dataclass
class BackupResult:
    success: bool
    details: str
    error_kind: Optional[ErrorKind] = None
    run_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'details': self.details,
            'error_kind': self.error_kind.value if self.error_kind else None,
            'run_id': self.run_id,
        }
