"""
Unit tests for the backup API (sitekeeper/routes/backup_routes.py, sitekeeper/auth.py).
"""

import tempfile
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from sitekeeper.auth import verify_backup_key
from sitekeeper.backup.lock import RunLock
from sitekeeper.backup.storage import StorageError
from sitekeeper.backup.types import BackupResult, ErrorKind, RemoteBackupEntry
from sitekeeper.models import BackupRun
from sitekeeper.store import OptionStore

HEADERS = {'X-Backup-Key': 'test-webhook-secret'}


@pytest.fixture
def s3_settings(app):
    app.config.update({
        'S3_ACCESS_KEY': 'test_access_key_123',
        'S3_SECRET_KEY': 'test_secret_key_456',
        'S3_BUCKET': 'test-bucket',
    })
    return app


class TestAuthentication:
    """Test the shared-secret header check."""

    def test_verify_backup_key(self):
        assert verify_backup_key('secret', 'secret') is True
        assert verify_backup_key('secret', 'Secret') is False
        assert verify_backup_key('secret', None) is False
        assert verify_backup_key(None, 'secret') is False

    def test_missing_header(self, client, db):
        response = client.post('/api/backup/trigger')
        assert response.status_code == 401

    def test_wrong_key(self, client, db):
        response = client.get('/api/backup/status', headers={'X-Backup-Key': 'nope'})
        assert response.status_code == 401

    def test_no_secret_configured(self, app, client, db):
        app.config['WEBHOOK_SECRET'] = None
        response = client.get('/api/backup/status', headers=HEADERS)
        assert response.status_code == 403

    def test_health_is_public(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        assert response.get_json() == {'status': 'healthy'}


class TestTrigger:
    """Test POST /api/backup/trigger status mapping."""

    @pytest.mark.parametrize('result,status', [
        (BackupResult(True, 'Backup uploaded to S3: x.zip'), 200),
        (BackupResult(False, 'A backup is already in progress', ErrorKind.ALREADY_RUNNING), 409),
        (BackupResult(False, 'missing', ErrorKind.CONFIG_MISSING), 403),
        (BackupResult(False, 'denied', ErrorKind.UPLOAD_AUTH), 500),
    ])
    @patch('sitekeeper.routes.backup_routes.execute_backup')
    def test_status_codes(self, mock_execute, result, status, client, db):
        mock_execute.return_value = result

        response = client.post('/api/backup/trigger', headers=HEADERS)

        assert response.status_code == status
        body = response.get_json()
        assert body['success'] is result.success
        assert body['details'] == result.details
        assert mock_execute.call_args[1]['force_refresh'] is True

    def test_trigger_without_store_config(self, client, db):
        response = client.post('/api/backup/trigger', headers=HEADERS)

        assert response.status_code == 403
        assert response.get_json()['error_kind'] == 'ConfigMissing'


class TestStatus:
    """Test status and clear-status."""

    def test_status_reflects_lock(self, client, db):
        assert client.get('/api/backup/status', headers=HEADERS).get_json()['in_progress'] is False

        RunLock(OptionStore(db.session)).acquire()
        assert client.get('/api/backup/status', headers=HEADERS).get_json()['in_progress'] is True

    @patch('sitekeeper.routes.backup_routes.get_scheduled_jobs')
    def test_status_lists_scheduled_jobs(self, mock_jobs, client, db):
        mock_jobs.return_value = [{'id': 'license_refresh', 'name': 'License Refresh',
                                   'next_run': None, 'trigger': 'interval[12:00:00]'}]

        body = client.get('/api/backup/status', headers=HEADERS).get_json()

        assert body['scheduled_jobs'][0]['id'] == 'license_refresh'
        assert body['last_run'] is None

    def test_status_without_scheduler(self, client, db):
        body = client.get('/api/backup/status', headers=HEADERS).get_json()
        assert body['scheduled_jobs'] == []

    def test_clear_status(self, client, db):
        RunLock(OptionStore(db.session)).acquire()

        response = client.post('/api/backup/clear-status', headers=HEADERS)

        assert response.get_json() == {'success': True, 'cleared': True}
        assert RunLock(OptionStore(db.session)).held is False

    def test_history(self, client, db):
        db.session.add(BackupRun(status='success', started_at=datetime(2024, 1, 1), logs='line'))
        db.session.add(BackupRun(status='failed', started_at=datetime(2024, 1, 2)))
        db.session.commit()

        records = client.get('/api/history', headers=HEADERS).get_json()['records']

        assert [r['status'] for r in records] == ['failed', 'success']
        assert 'logs' not in records[0]

        records = client.get('/api/history?logs=true', headers=HEADERS).get_json()['records']
        assert records[1]['logs'] == 'line'


class TestStoredBackups:
    """Test listing, deletion and download."""

    @patch('sitekeeper.routes.backup_routes.S3Client')
    def test_list(self, mock_client_class, s3_settings, client, db):
        modified = datetime(2024, 1, 15, tzinfo=timezone.utc)
        mock_client_class.return_value.list_backups.return_value = [
            RemoteBackupEntry('a.zip', 'www.example.com/a.zip', 10, modified, int(modified.timestamp())),
        ]

        body = client.get('/api/backups', headers=HEADERS).get_json()

        assert body['total'] == 1
        assert body['backups'][0]['s3_key'] == 'www.example.com/a.zip'

    @patch('sitekeeper.routes.backup_routes.S3Client')
    def test_list_failure(self, mock_client_class, s3_settings, client, db):
        mock_client_class.return_value.list_backups.side_effect = StorageError("denied", ErrorKind.UPLOAD_AUTH)

        response = client.get('/api/backups', headers=HEADERS)

        assert response.status_code == 502
        assert response.get_json()['error_kind'] == 'UploadFailed.Auth'

    def test_list_not_configured(self, client, db):
        assert client.get('/api/backups', headers=HEADERS).status_code == 403

    @patch('sitekeeper.routes.backup_routes.S3Client')
    def test_delete(self, mock_client_class, s3_settings, client, db):
        mock_client_class.return_value.credentials.key_prefix = 'www.example.com/'

        response = client.delete('/api/backups/www.example.com/a.zip', headers=HEADERS)

        assert response.status_code == 200
        mock_client_class.return_value.delete_object.assert_called_once_with('www.example.com/a.zip')

    @patch('sitekeeper.routes.backup_routes.S3Client')
    def test_delete_outside_prefix(self, mock_client_class, s3_settings, client, db):
        mock_client_class.return_value.credentials.key_prefix = 'www.example.com/'

        response = client.delete('/api/backups/other.com/a.zip', headers=HEADERS)

        assert response.status_code == 400
        mock_client_class.return_value.delete_object.assert_not_called()

    def test_download(self, s3_settings, client, db, mock_s3):
        mock_s3.Object('test-bucket', 'www.example.com/a.zip').put(Body=b'zip-bytes')

        response = client.get('/api/backups/download?key=www.example.com/a.zip', headers=HEADERS)

        assert response.status_code == 200
        assert response.data == b'zip-bytes'
        assert 'a.zip' in response.headers['Content-Disposition']
        response.close()

    @pytest.fixture
    def download_dir(self, tmp_path, monkeypatch):
        """Send mkstemp files to a directory the test can inspect."""
        path = tmp_path / 'downloads'
        path.mkdir()
        monkeypatch.setattr(tempfile, 'tempdir', str(path))
        return path

    @patch('sitekeeper.routes.backup_routes.S3Client')
    def test_interrupted_download_removes_temp_file(self, mock_client_class, s3_settings, client, db, download_dir):
        def partial_download(key, dest_path):
            with open(dest_path, 'wb') as f:
                f.write(b'0123456789')
            raise StorageError("S3 download interrupted", ErrorKind.UPLOAD_NETWORK)

        mock_client_class.return_value.credentials.key_prefix = 'www.example.com/'
        mock_client_class.return_value.get_object.side_effect = partial_download

        response = client.get('/api/backups/download?key=www.example.com/a.zip', headers=HEADERS)

        assert response.status_code == 502
        assert response.get_json()['error_kind'] == 'UploadFailed.Network'
        assert list(download_dir.iterdir()) == []

    @patch('sitekeeper.routes.backup_routes.S3Client')
    def test_unexpected_download_error_removes_temp_file(self, mock_client_class, s3_settings, client, db,
                                                         download_dir):
        mock_client_class.return_value.credentials.key_prefix = 'www.example.com/'
        mock_client_class.return_value.get_object.side_effect = RuntimeError('disk full')

        with pytest.raises(RuntimeError):
            client.get('/api/backups/download?key=www.example.com/a.zip', headers=HEADERS)

        assert list(download_dir.iterdir()) == []

    def test_download_missing_key(self, s3_settings, client, db):
        assert client.get('/api/backups/download', headers=HEADERS).status_code == 400


class TestLicenseRefresh:
    """Test POST /api/license/refresh."""

    def test_refresh_with_static_config(self, s3_settings, client, db):
        body = client.post('/api/license/refresh', headers=HEADERS).get_json()

        assert body['success'] is True
        assert body['store']['bucket'] == 'test-bucket'
        assert 'test_secret_key_456' not in str(body)

    def test_refresh_without_config(self, client, db):
        assert client.post('/api/license/refresh', headers=HEADERS).status_code == 403
