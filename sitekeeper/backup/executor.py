"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Acquire the run lock (reject if a run is already in progress)
2. Load store configuration
3. Rotate old backups when the remote count meets the cap
4. Preflight: clear remnants, check free disk space
5. Dump the database
6. Create the archive
7. Upload to S3 (single PUT or multipart)
8. Cleanup temporary files, release the lock, record the result
"""

import logging
import os
import resource
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from sitekeeper import db
from sitekeeper.models import BackupRun
from sitekeeper.store import OptionStore
from .compression import create_site_archive, directory_size, generate_archive_filename, get_archive_size
from .database import dump_database
from .lock import RunLock
from .retention import RetentionManager
from .storage import RetryPolicy, S3Client
from .types import BackupError, BackupResult, ErrorKind

logger = logging.getLogger(__name__)

DISK_SPACE_FACTOR = 1.2
GUARD_FILES = {
    '.htaccess': 'deny from all\n',
    'index.php': '<?php\n// Silence is golden.\n',
}


class RunState(str, Enum):
    IDLE = 'idle'
    LOCK_ACQUIRED = 'lock_acquired'
    ROTATING_OLD = 'rotating_old'
    DUMPING = 'dumping'
    ARCHIVING = 'archiving'
    UPLOADING = 'uploading'
    CLEANING_UP = 'cleaning_up'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'


@dataclass
class BackupSettings:
    site_url: str
    site_database_url: Optional[str]
    content_dir: str
    backup_dir: str
    exclude_dirs: List[str] = field(default_factory=list)
    multipart_threshold: int = 1024 * 1024 * 1024
    chunk_size: int = 200 * 1024 * 1024
    max_retries: int = 3
    lock_ttl: int = 6 * 60 * 60
    dump_batch_size: int = 500

    @classmethod
    def from_config(cls, config) -> 'BackupSettings':
        return cls(
            site_url=config.get('SITE_URL') or 'http://localhost',
            site_database_url=config.get('SITE_DATABASE_URL'),
            content_dir=config['CONTENT_DIR'],
            backup_dir=config['BACKUP_DIR'],
            exclude_dirs=list(config.get('BACKUP_EXCLUDE_DIRS') or []),
            multipart_threshold=config.get('MULTIPART_THRESHOLD', 1024 * 1024 * 1024),
            chunk_size=config.get('MULTIPART_CHUNK_SIZE', 200 * 1024 * 1024),
            max_retries=config.get('UPLOAD_MAX_RETRIES', 3),
            lock_ttl=config.get('BACKUP_LOCK_TTL', 6 * 60 * 60),
            dump_batch_size=config.get('DUMP_BATCH_SIZE', 500),
        )


@contextmanager
def extended_resource_limits():
    """Raise CPU time and address space soft limits to their hard limits for a block."""
    saved = {}
    for limit in (resource.RLIMIT_CPU, resource.RLIMIT_AS):
        try:
            soft, hard = resource.getrlimit(limit)
            if soft != hard:
                resource.setrlimit(limit, (hard, hard))
                saved[limit] = (soft, hard)
        except (ValueError, OSError) as e:
            logger.warning(f"Could not raise resource limit {limit}: {e}")
    try:
        yield
    finally:
        for limit, previous in saved.items():
            try:
                resource.setrlimit(limit, previous)
            except (ValueError, OSError) as e:
                logger.warning(f"Could not restore resource limit {limit}: {e}")


class BackupExecutor:
    """
    Orchestrates one backup run.

    Steps raise BackupError subclasses; ``run()`` turns them into a
    BackupResult after the single cleanup path has run.
    """

    def __init__(
        self,
        settings: BackupSettings,
        config_provider,
        store: Optional[OptionStore] = None,
        client_factory: Callable = S3Client,
        force_refresh: bool = False,
    ):
        """
        Args:
            settings: Site and upload settings
            config_provider: Supplies StoreCredentials and the retention cap
            store: Option store holding the run lock
            client_factory: Builds the S3 client from credentials
            force_refresh: Ask the provider to bypass its cache
        """
        self.settings = settings
        self.config_provider = config_provider
        self.store = store or OptionStore()
        self.lock = RunLock(self.store, ttl=settings.lock_ttl)
        self.client_factory = client_factory
        self.force_refresh = force_refresh

        self.state = RunState.IDLE
        self.run_record = None
        self.temp_dir = None
        self.archive_path = None
        self.logs = []
        self._log_flush_counter = 0

    def run(self) -> BackupResult:
        """
        Execute the backup.

        Returns:
            BackupResult; errors are reported in it, never raised
        """
        if not self.lock.acquire():
            self._record_rejected()
            return BackupResult(
                success=False,
                details="A backup is already in progress",
                error_kind=ErrorKind.ALREADY_RUNNING,
                run_id=self.run_record.id,
            )

        self.state = RunState.LOCK_ACQUIRED
        self.run_record = BackupRun(status='running', started_at=datetime.utcnow())
        db.session.add(self.run_record)
        db.session.commit()

        self._log("Starting backup")

        try:
            with extended_resource_limits():
                details = self._execute_workflow()

            self.run_record.status = 'success'
            result = BackupResult(success=True, details=details)
            self._log(f"Backup completed successfully: {details}")

        except BackupError as e:
            self.run_record.status = 'failed'
            self.run_record.error_kind = e.kind.value
            result = BackupResult(success=False, details=str(e), error_kind=e.kind)
            self._log(f"Backup failed ({e.kind.value}): {e}")

        except Exception as e:
            logger.exception("Unexpected error during backup")
            self.run_record.status = 'failed'
            result = BackupResult(success=False, details=f"Unexpected error: {e}")
            self._log(f"Backup failed: {e}")

        finally:
            self._cleanup()

        self.state = RunState.SUCCEEDED if result.success else RunState.FAILED
        self.run_record.completed_at = datetime.utcnow()
        self.run_record.details = result.details
        self.run_record.logs = '\n'.join(self.logs)
        db.session.commit()

        result.run_id = self.run_record.id
        return result

    def _execute_workflow(self) -> str:
        """Run the backup steps; returns the success details."""
        credentials = self.config_provider.get_config(self.force_refresh)
        if credentials is None:
            raise BackupError("S3 configuration is missing or the license is invalid", ErrorKind.CONFIG_MISSING)
        self._log(f"Using bucket {credentials.bucket} with prefix {credentials.key_prefix}")

        client = self.client_factory(
            credentials,
            multipart_threshold=self.settings.multipart_threshold,
            chunk_size=self.settings.chunk_size,
            retry_policy=RetryPolicy(max_attempts=self.settings.max_retries),
        )

        # Step 1: Rotation (non-fatal)
        self.state = RunState.ROTATING_OLD
        keep_count = self.config_provider.get_keep_count()
        rotation = RetentionManager(client).rotate(keep_count)
        if rotation['skipped'] or rotation['failed']:
            self._log(f"Rotation incomplete ({ErrorKind.ROTATION_FAILED.value}), continuing")
        elif rotation['deleted']:
            self._log(f"Rotation deleted {len(rotation['deleted'])} old backups")
        self._flush_logs_to_db()

        # Step 2: Preflight
        self._prepare_backup_dir()
        self._check_disk_space()

        # Step 3: Dump database
        self.state = RunState.DUMPING
        self.temp_dir = tempfile.mkdtemp(prefix='sitekeeper_', dir=self.settings.backup_dir)
        dump_path = os.path.join(self.temp_dir, 'init.sql')
        if not self.settings.site_database_url:
            raise BackupError("Site database URL is not configured", ErrorKind.CONFIG_MISSING)

        self._log("Dumping database")
        tables = dump_database(
            self.settings.site_database_url,
            dump_path,
            batch_size=self.settings.dump_batch_size,
            site_url=self.settings.site_url,
        )
        self._log(f"Database dumped ({tables} tables)")
        self._flush_logs_to_db()

        # Step 4: Create archive
        self.state = RunState.ARCHIVING
        filename = generate_archive_filename(self.settings.site_url)
        self.archive_path = os.path.join(self.settings.backup_dir, filename)
        self._log(f"Creating archive {filename}")
        files = create_site_archive(
            self.archive_path,
            dump_path,
            self.settings.content_dir,
            exclude_dirs=self.settings.exclude_dirs,
            skip_paths=[self.settings.backup_dir],
        )
        file_size = get_archive_size(self.archive_path)
        self.run_record.archive_name = filename
        self.run_record.file_size_bytes = file_size
        self._log(f"Archive created: {filename} ({file_size / 1024 / 1024:.2f} MB, {files} files)")
        self._flush_logs_to_db()

        # Step 5: Upload
        self.state = RunState.UPLOADING
        self._log("Uploading to S3")
        upload = client.upload(self.archive_path, f"{credentials.key_prefix}{filename}")
        self.run_record.s3_key = upload.key
        self.run_record.upload_method = upload.method
        self.run_record.part_count = upload.part_count
        self._log(f"Uploaded to S3: {upload.key}")

        return upload.message

    def _prepare_backup_dir(self):
        """Create the backup root with its guard files and clear remnants of earlier runs."""
        backup_dir = self.settings.backup_dir
        os.makedirs(backup_dir, exist_ok=True)

        for name, content in GUARD_FILES.items():
            path = os.path.join(backup_dir, name)
            if not os.path.exists(path):
                with open(path, 'w') as f:
                    f.write(content)

        for name in os.listdir(backup_dir):
            if name in GUARD_FILES:
                continue
            path = os.path.join(backup_dir, name)
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            else:
                os.remove(path)
            self._log(f"Removed leftover backup file: {name}")

    def _check_disk_space(self):
        content_size = directory_size(
            self.settings.content_dir,
            self.settings.exclude_dirs,
            skip_paths=[self.settings.backup_dir],
        )
        required = int(content_size * DISK_SPACE_FACTOR)
        free = shutil.disk_usage(self.settings.backup_dir).free

        if free < required:
            raise BackupError(
                f"Insufficient disk space: {free / 1024 / 1024:.2f} MB free, "
                f"{required / 1024 / 1024:.2f} MB required",
                ErrorKind.DISK_SPACE_INSUFFICIENT,
            )
        self._log(f"Disk space OK ({free / 1024 / 1024:.2f} MB free, {required / 1024 / 1024:.2f} MB required)")

    def _cleanup(self):
        """Remove temporary files and release the lock. Safe to call more than once."""
        self.state = RunState.CLEANING_UP

        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
                self._log("Cleaned up temporary directory")
            except OSError as e:
                self._log(f"Warning: Failed to cleanup temp directory: {e}")
        self.temp_dir = None

        if self.archive_path and os.path.exists(self.archive_path):
            try:
                os.remove(self.archive_path)
                self._log("Removed local archive")
            except OSError as e:
                self._log(f"Warning: Failed to remove local archive: {e}")
        self.archive_path = None

        self.lock.release()

    def _record_rejected(self):
        now = datetime.utcnow()
        self.run_record = BackupRun(
            status='rejected',
            started_at=now,
            completed_at=now,
            error_kind=ErrorKind.ALREADY_RUNNING.value,
            details="A backup is already in progress",
        )
        db.session.add(self.run_record)
        db.session.commit()
        logger.info("Backup request rejected: already running")

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)

        # Flush logs every 5 entries
        self._log_flush_counter += 1
        if self._log_flush_counter >= 5:
            self._flush_logs_to_db()

    def _flush_logs_to_db(self):
        """Flush accumulated logs to database for real-time visibility."""
        if self.run_record is not None:
            self.run_record.logs = '\n'.join(self.logs)
            db.session.commit()
            self._log_flush_counter = 0


def execute_backup(app, force_refresh: bool = False, provider=None, client_factory: Callable = S3Client) -> BackupResult:
    """
    Run a backup for an app. Must be called inside an app context.

    Args:
        app: Flask app (settings come from its config)
        force_refresh: Bypass the configuration cache
        provider: Config provider (defaults to get_config_provider(app))
        client_factory: S3 client factory

    Returns:
        BackupResult
    """
    from sitekeeper.license import get_config_provider

    store = OptionStore()
    provider = provider or get_config_provider(app, store)
    executor = BackupExecutor(
        BackupSettings.from_config(app.config),
        provider,
        store=store,
        client_factory=client_factory,
        force_refresh=force_refresh,
    )
    return executor.run()
