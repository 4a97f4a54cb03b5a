"""
Unit tests for archive creation (sitekeeper/backup/compression.py).
"""

import os
import zipfile
from datetime import datetime
from unittest.mock import patch

import pytest

from sitekeeper.backup.compression import (
    ArchiveError,
    create_site_archive,
    directory_size,
    generate_archive_filename,
    get_archive_size,
    iter_content_files,
    site_domain,
)
from sitekeeper.backup.types import ErrorKind


@pytest.fixture
def dump_file(tmp_path):
    path = tmp_path / 'init.sql'
    path.write_text('-- dump\n')
    return path


class TestArchiveNaming:
    """Test archive filename generation."""

    def test_domain_strips_www_and_scheme(self):
        assert site_domain('https://www.example.com/') == 'example.com'
        assert site_domain('http://blog.example.org:8080/path') == 'blog.example.org'
        assert site_domain('example.net') == 'example.net'

    def test_filename_format(self):
        name = generate_archive_filename('https://www.example.com', datetime(2024, 1, 15, 9, 5, 3))
        assert name == 'example.com_2024-01-15_09-05-03.zip'


class TestContentWalk:
    """Test exclusion rules."""

    def test_default_exclusions(self, content_tree):
        files = sorted(rel.replace(os.sep, '/') for _, rel in iter_content_files(str(content_tree)))

        assert files == [
            'plugins/plugin/plugin.php',
            'themes/theme/style.css',
            'uploads/2024/photo.jpg',
        ]

    def test_extra_exclusions(self, content_tree):
        files = [rel for _, rel in iter_content_files(str(content_tree), exclude_dirs=['uploads'])]
        assert not any(rel.startswith('uploads') for rel in files)

    def test_skip_paths(self, content_tree):
        files = [
            rel for _, rel in
            iter_content_files(str(content_tree), skip_paths=[str(content_tree / 'themes')])
        ]
        assert not any(rel.startswith('themes') for rel in files)

    def test_directory_size_counts_included_files(self, content_tree):
        expected = sum(
            len(text) for text in ('body { color: black; }', 'jpeg-bytes', '<?php echo 1;')
        )
        assert directory_size(str(content_tree)) == expected


class TestCreateSiteArchive:
    """Test archive contents and failure handling."""

    def test_archive_layout(self, content_tree, dump_file, tmp_path):
        archive = tmp_path / 'out.zip'

        added = create_site_archive(str(archive), str(dump_file), str(content_tree))

        assert added == 3
        with zipfile.ZipFile(archive) as zipf:
            names = sorted(zipf.namelist())
            assert names == [
                'init.sql',
                'wp-content/plugins/plugin/plugin.php',
                'wp-content/themes/theme/style.css',
                'wp-content/uploads/2024/photo.jpg',
            ]
            assert zipf.read('init.sql') == b'-- dump\n'

    def test_vanished_file_skipped(self, content_tree, dump_file, tmp_path):
        archive = tmp_path / 'out.zip'
        original_write = zipfile.ZipFile.write

        def flaky_write(self, filename, arcname=None, *args, **kwargs):
            if str(filename).endswith('photo.jpg'):
                raise FileNotFoundError(filename)
            return original_write(self, filename, arcname, *args, **kwargs)

        with patch.object(zipfile.ZipFile, 'write', flaky_write):
            added = create_site_archive(str(archive), str(dump_file), str(content_tree))

        assert added == 2
        with zipfile.ZipFile(archive) as zipf:
            assert 'wp-content/uploads/2024/photo.jpg' not in zipf.namelist()

    def test_missing_dump(self, content_tree, tmp_path):
        with pytest.raises(ArchiveError) as exc_info:
            create_site_archive(str(tmp_path / 'out.zip'), str(tmp_path / 'nope.sql'), str(content_tree))
        assert exc_info.value.kind == ErrorKind.ARCHIVE_FAILED

    def test_missing_content_dir(self, dump_file, tmp_path):
        with pytest.raises(ArchiveError):
            create_site_archive(str(tmp_path / 'out.zip'), str(dump_file), str(tmp_path / 'absent'))

    def test_write_failure_removes_partial_archive(self, content_tree, dump_file, tmp_path):
        archive = tmp_path / 'out.zip'

        with patch.object(zipfile.ZipFile, 'write', side_effect=OSError('disk full')):
            with pytest.raises(ArchiveError):
                create_site_archive(str(archive), str(dump_file), str(content_tree))

        assert not archive.exists()


class TestArchiveSize:
    """Test get_archive_size."""

    def test_size(self, tmp_path):
        path = tmp_path / 'a.zip'
        path.write_bytes(b'12345')
        assert get_archive_size(str(path)) == 5

    def test_missing(self, tmp_path):
        with pytest.raises(ArchiveError):
            get_archive_size(str(tmp_path / 'missing.zip'))
