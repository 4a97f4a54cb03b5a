"""
Backup module for Sitekeeper.

This module handles the core backup functionality including:
- SigV4 request signing
- The S3 REST client (single and multipart uploads)
- Database dump and archive creation
- Execution orchestration
- Rotation of old backups
"""

from .executor import BackupExecutor, BackupSettings, execute_backup
from .compression import create_site_archive
from .database import dump_database
from .retention import RetentionManager, plan_rotation
from .storage import S3Client, StorageError, choose_upload_method
from .types import BackupError, BackupResult, ErrorKind, StoreCredentials

__all__ = [
    'BackupExecutor',
    'BackupSettings',
    'execute_backup',
    'create_site_archive',
    'dump_database',
    'RetentionManager',
    'plan_rotation',
    'S3Client',
    'StorageError',
    'choose_upload_method',
    'BackupError',
    'BackupResult',
    'ErrorKind',
    'StoreCredentials',
]
