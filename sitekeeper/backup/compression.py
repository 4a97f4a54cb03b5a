"""
Archive builder for site backups.

Packages the SQL dump (as ``init.sql`` at the archive root) and the filtered
content tree (under the content directory's basename) into one zip.
"""

import logging
import os
import zipfile
from datetime import datetime
from typing import Iterable, Iterator, List, Optional, Tuple
from urllib.parse import urlparse

from .types import BackupError, ErrorKind

logger = logging.getLogger(__name__)

# Relative to the content root
DEFAULT_EXCLUDE_DIRS = ['backups', 'uploads/uag-plugin/assets', 'cache', 'uploads/cache', 'temp', 'tmp']
EXCLUDED_FILES = {'debug.log'}
DUMP_ARCNAME = 'init.sql'


class ArchiveError(BackupError):
    """Raised when archive creation fails."""

    kind = ErrorKind.ARCHIVE_FAILED


def site_domain(site_url: str) -> str:
    """Host part of the site URL without a leading ``www.``."""
    parsed = urlparse(site_url if '://' in site_url else f"http://{site_url}")
    host = parsed.hostname or 'site'
    if host.startswith('www.'):
        host = host[4:]
    return host


def generate_archive_filename(site_url: str, now: Optional[datetime] = None) -> str:
    """
    Generate the archive filename.

    Format: {domain}_{YYYY-mm-dd_HH-MM-SS}.zip
    """
    timestamp = (now or datetime.now()).strftime('%Y-%m-%d_%H-%M-%S')
    return f"{site_domain(site_url)}_{timestamp}.zip"


def _is_excluded(relative_path: str, exclude_dirs: List[str]) -> bool:
    normalized = relative_path.replace(os.sep, '/')
    for excluded in exclude_dirs:
        excluded = excluded.strip('/')
        if normalized == excluded or normalized.startswith(excluded + '/'):
            return True

    parts = normalized.split('/')
    if parts[-1] in EXCLUDED_FILES:
        return True
    return any('cache' in part.lower() or part in ('temp', 'tmp') for part in parts)


def iter_content_files(
    content_dir: str,
    exclude_dirs: Optional[List[str]] = None,
    skip_paths: Iterable[str] = (),
) -> Iterator[Tuple[str, str]]:
    """
    Walk the content tree, yielding (absolute path, path relative to content_dir).

    Args:
        content_dir: Root of the content tree
        exclude_dirs: Extra directories to skip, relative to content_dir
        skip_paths: Absolute paths to skip entirely (e.g. the backup root)
    """
    excludes = DEFAULT_EXCLUDE_DIRS + list(exclude_dirs or [])
    skipped = {os.path.realpath(path) for path in skip_paths}

    for root, dirs, files in os.walk(content_dir):
        relative_root = os.path.relpath(root, content_dir)
        if relative_root == '.':
            relative_root = ''

        # Prune in place so os.walk does not descend
        dirs[:] = sorted(
            name for name in dirs
            if not _is_excluded(os.path.join(relative_root, name), excludes)
            and os.path.realpath(os.path.join(root, name)) not in skipped
        )

        for name in sorted(files):
            relative_path = os.path.join(relative_root, name)
            if _is_excluded(relative_path, excludes):
                continue
            yield os.path.join(root, name), relative_path


def directory_size(
    content_dir: str,
    exclude_dirs: Optional[List[str]] = None,
    skip_paths: Iterable[str] = (),
) -> int:
    """Total size in bytes of the files that would be archived."""
    total = 0
    for path, _ in iter_content_files(content_dir, exclude_dirs, skip_paths):
        try:
            total += os.path.getsize(path)
        except OSError:
            continue
    return total


def create_site_archive(
    archive_path: str,
    dump_path: str,
    content_dir: str,
    exclude_dirs: Optional[List[str]] = None,
    skip_paths: Iterable[str] = (),
) -> int:
    """
    Create the backup zip.

    Args:
        archive_path: Destination zip path
        dump_path: SQL dump added as init.sql
        content_dir: Content tree added under its basename
        exclude_dirs: Extra directories to skip, relative to content_dir
        skip_paths: Absolute paths to skip (the backup root itself)

    Returns:
        Number of content files added

    Raises:
        ArchiveError: If the archive cannot be written or ends up empty
    """
    if not os.path.isfile(dump_path):
        raise ArchiveError(f"Database dump not found: {dump_path}")
    if not os.path.isdir(content_dir):
        raise ArchiveError(f"Content directory not found: {content_dir}")

    base_name = os.path.basename(os.path.normpath(content_dir))
    added = 0
    skipped = 0

    try:
        with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED, allowZip64=True) as zipf:
            zipf.write(dump_path, DUMP_ARCNAME)

            for path, relative_path in iter_content_files(content_dir, exclude_dirs, skip_paths):
                arcname = f"{base_name}/{relative_path.replace(os.sep, '/')}"
                try:
                    zipf.write(path, arcname)
                    added += 1
                except FileNotFoundError:
                    # Removed between enumeration and archiving
                    skipped += 1
                    logger.warning(f"File vanished during backup, skipping: {relative_path}")

    except (OSError, zipfile.BadZipFile, zipfile.LargeZipFile) as e:
        if os.path.exists(archive_path):
            os.remove(archive_path)
        raise ArchiveError(f"Failed to create archive: {e}")

    if not os.path.exists(archive_path) or os.path.getsize(archive_path) == 0:
        raise ArchiveError("Archive is missing or empty after creation")

    logger.info(f"Archive created with {added} files ({skipped} skipped)")
    return added


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        ArchiveError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise ArchiveError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise ArchiveError(f"Failed to get archive size: {e}")
