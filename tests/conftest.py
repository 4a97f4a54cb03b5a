"""
Shared pytest fixtures for Sitekeeper tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- Option store and store credentials
- Mock fixtures for external services (S3 via moto)
- Temporary content tree and site database fixtures
"""

import os
import sqlite3
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from sitekeeper import create_app, db as _db
from sitekeeper.backup.types import StoreCredentials
from sitekeeper.store import OptionStore


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    content_dir = tmp_path / 'wp-content'
    content_dir.mkdir()

    app = create_app('testing')
    app.config.update({
        'SITE_URL': 'https://www.example.com',
        'CONTENT_DIR': str(content_dir),
        'BACKUP_DIR': str(content_dir / 'backups'),
        'SITE_DATABASE_URL': f"sqlite:///{tmp_path / 'site.db'}",
        'WEBHOOK_SECRET': 'test-webhook-secret',
        'KEEP_BACKUPS': 5,
    })

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
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def option_store(db):
    """Option store bound to the test database."""
    return OptionStore(db.session)


@pytest.fixture
def credentials():
    """Store credentials for the test bucket."""
    return StoreCredentials(
        access_key='test_access_key_123',
        secret_key='test_secret_key_456',
        bucket='test-bucket',
        region='us-east-1',
        key_prefix='www.example.com/',
    )


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def content_tree(tmp_path):
    """
    Create a small content tree.

    Creates:
    - themes/theme/style.css
    - uploads/2024/photo.jpg
    - plugins/plugin/plugin.php
    - cache/page.html, uploads/cache/x.tmp (excluded)
    - tmp/scratch.txt, debug.log (excluded)
    - backups/old.zip (excluded: backup root)
    """
    root = tmp_path / 'content' / 'wp-content'
    files = {
        'themes/theme/style.css': 'body { color: black; }',
        'uploads/2024/photo.jpg': 'jpeg-bytes',
        'plugins/plugin/plugin.php': '<?php echo 1;',
        'cache/page.html': '<html></html>',
        'uploads/cache/x.tmp': 'cached',
        'tmp/scratch.txt': 'scratch',
        'debug.log': 'log line',
        'backups/old.zip': 'old archive',
    }
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


@pytest.fixture
def site_database(tmp_path):
    """
    Create a SQLite site database with two tables.

    Returns:
        SQLAlchemy URL of the database
    """
    path = tmp_path / 'site.db'
    connection = sqlite3.connect(str(path))
    connection.executescript("""
        CREATE TABLE wp_options (
            option_id INTEGER PRIMARY KEY,
            option_name VARCHAR(191) NOT NULL,
            option_value TEXT
        );
        CREATE TABLE wp_posts (
            id INTEGER PRIMARY KEY,
            post_title TEXT,
            post_content TEXT
        );
        INSERT INTO wp_options VALUES (1, 'siteurl', 'https://www.example.com');
        INSERT INTO wp_options VALUES (2, 'blogname', 'O''Brien''s blog');
        INSERT INTO wp_options VALUES (3, 'empty', NULL);
        INSERT INTO wp_posts VALUES (1, 'Hello', 'Line one
Line two');
    """)
    connection.commit()
    connection.close()
    return f"sqlite:///{path}"


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('sitekeeper.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
