"""
Retention policy enforcement for backups.

Keeps the number of archives stored under the site's prefix below the
configured cap by deleting the oldest ones before a new backup is made.
"""

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List

from .storage import StorageError
from .types import ErrorKind, RemoteBackupEntry

logger = logging.getLogger(__name__)


def plan_rotation(entries: List[RemoteBackupEntry], keep_count: int) -> List[RemoteBackupEntry]:
    """
    Choose which backups to delete so one more fits under the cap.

    Args:
        entries: Remote backups in any order
        keep_count: Maximum number of backups to keep

    Returns:
        The oldest ``len(entries) - keep_count + 1`` entries when the cap is
        met or exceeded, otherwise an empty list

    Raises:
        ValueError: If keep_count is less than 1
    """
    if keep_count < 1:
        raise ValueError(f"keep_count must be at least 1, got {keep_count}")

    if len(entries) < keep_count:
        return []

    oldest_first = sorted(entries, key=lambda entry: entry.date_raw)
    return oldest_first[:len(entries) - keep_count + 1]


class RetentionManager:
    """
    Applies the rotation plan against the object store.

    Failures here never abort a backup run: they are logged and reported
    in the summary.
    """

    def __init__(self, client, sleep: Callable[[float], None] = time.sleep,
                 delete_attempts: int = 2, retry_delay: float = 1.0):
        """
        Args:
            client: S3Client for the site's bucket
            sleep: Sleep function (injectable for tests)
            delete_attempts: Attempts per deletion
            retry_delay: Seconds between deletion attempts
        """
        self.client = client
        self.delete_attempts = delete_attempts
        self.retry_delay = retry_delay
        self._sleep = sleep
        self.logs = []

    def rotate(self, keep_count: int) -> Dict[str, Any]:
        """
        Delete the oldest backups if the store is at or over the cap.

        Returns:
            Dict with summary of cleanup operations:
            {
                'listed': int,
                'deleted': List[str],
                'failed': List[str],
                'skipped': bool,
                'error_kind': Optional[str]
            }
        """
        summary = {'listed': 0, 'deleted': [], 'failed': [], 'skipped': False, 'error_kind': None}

        try:
            entries = self.client.list_backups(oldest_first=True)
            summary['listed'] = len(entries)
            to_delete = plan_rotation(entries, keep_count)
        except (StorageError, ValueError) as e:
            self._log(f"Rotation skipped: {e}")
            summary['skipped'] = True
            summary['error_kind'] = ErrorKind.ROTATION_FAILED.value
            return summary

        if not to_delete:
            self._log(f"Rotation not needed ({len(entries)} of {keep_count} backups)")
            return summary

        self._log(f"Rotating: {len(entries)} backups, keeping {keep_count}, deleting {len(to_delete)}")

        for entry in to_delete:
            if self.delete_with_retry(entry.s3_key):
                summary['deleted'].append(entry.s3_key)
                self._log(f"Deleted old backup: {entry.filename}")
            else:
                summary['failed'].append(entry.s3_key)
                self._log(f"Failed to delete old backup: {entry.filename}")

        if summary['failed']:
            summary['error_kind'] = ErrorKind.ROTATION_FAILED.value

        return summary

    def delete_with_retry(self, key: str) -> bool:
        """
        Delete one object, retrying once after a short pause.

        Returns:
            True if the object was deleted
        """
        for attempt in range(1, self.delete_attempts + 1):
            try:
                self.client.delete_object(key)
                return True
            except StorageError as e:
                logger.warning(f"Delete attempt {attempt} failed for {key}: {e}")
                if attempt < self.delete_attempts:
                    self._sleep(self.retry_delay)
        return False

    def _log(self, message: str):
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)
