"""
Backup routes - trigger runs, inspect status and manage stored backups.
"""

import logging
import os
import tempfile

from flask import Blueprint, after_this_request, current_app, jsonify, request, send_file

from sitekeeper.auth import backup_key_required
from sitekeeper.backup.executor import execute_backup
from sitekeeper.backup.lock import RunLock
from sitekeeper.backup.retention import RetentionManager
from sitekeeper.backup.storage import S3Client, StorageError
from sitekeeper.backup.types import ErrorKind
from sitekeeper.license import get_config_provider
from sitekeeper.models import BackupRun
from sitekeeper.scheduler import get_scheduled_jobs
from sitekeeper.store import OptionStore

logger = logging.getLogger(__name__)

bp = Blueprint('backup', __name__, url_prefix='/api')

# HTTP status for each failure kind of a triggered run
STATUS_BY_KIND = {
    ErrorKind.ALREADY_RUNNING: 409,
    ErrorKind.CONFIG_MISSING: 403,
}


def _store_client():
    """S3 client for the configured store, or None when not configured."""
    credentials = get_config_provider(current_app).get_config()
    if credentials is None:
        return None
    return S3Client(credentials)


def _remove_temp_file(path):
    try:
        os.remove(path)
    except OSError as e:
        logger.warning(f"Failed to remove download temp file: {e}")


def _not_configured():
    return jsonify({'success': False, 'message': 'S3 configuration is missing or the license is invalid'}), 403


@bp.route('/backup/trigger', methods=['POST'])
@backup_key_required
def trigger_backup():
    """
    Run a backup synchronously.

    Returns:
        JSON {success, message, details} with 200, 409 (already running),
        403 (not configured) or 500 (failed)
    """
    logger.info("Backup triggered via API")
    result = execute_backup(current_app._get_current_object(), force_refresh=True)

    if result.success:
        return jsonify({'success': True, 'message': 'Backup completed successfully', 'details': result.details}), 200

    status = STATUS_BY_KIND.get(result.error_kind, 500)
    return jsonify({
        'success': False,
        'message': 'Backup failed',
        'details': result.details,
        'error_kind': result.error_kind.value if result.error_kind else None,
    }), status


@bp.route('/backup/status', methods=['GET'])
@backup_key_required
def backup_status():
    """Report whether a run holds the lock, the last run and the scheduled jobs."""
    lock = RunLock(OptionStore())
    latest = BackupRun.query.order_by(BackupRun.started_at.desc()).first()
    return jsonify({
        'in_progress': lock.held,
        'last_run': latest.to_dict() if latest else None,
        'scheduled_jobs': get_scheduled_jobs(),
    })


@bp.route('/backup/clear-status', methods=['POST'])
@backup_key_required
def clear_status():
    """Release a stale run lock left behind by a crashed process."""
    cleared = RunLock(OptionStore()).force_release()
    logger.info(f"Backup status cleared via API (lock was held: {cleared})")
    return jsonify({'success': True, 'cleared': cleared})


@bp.route('/backups', methods=['GET'])
@backup_key_required
def list_backups():
    """List stored backups, newest first."""
    client = _store_client()
    if client is None:
        return _not_configured()

    try:
        entries = client.list_backups()
    except StorageError as e:
        return jsonify({'success': False, 'message': str(e), 'error_kind': e.kind.value}), 502

    return jsonify({
        'success': True,
        'backups': [entry.to_dict() for entry in entries],
        'total': len(entries),
    })


@bp.route('/backups/<path:key>', methods=['DELETE'])
@backup_key_required
def delete_backup(key):
    """Delete one stored backup (retried once)."""
    client = _store_client()
    if client is None:
        return _not_configured()

    if not key.startswith(client.credentials.key_prefix):
        return jsonify({'success': False, 'message': 'Key is outside this site\'s backups'}), 400

    if not RetentionManager(client).delete_with_retry(key):
        return jsonify({'success': False, 'message': f'Failed to delete {key}'}), 502

    return jsonify({'success': True, 'message': f'Deleted {os.path.basename(key)}'})


@bp.route('/backups/download', methods=['GET'])
@backup_key_required
def download_backup():
    """Stream a stored backup as an attachment."""
    key = request.args.get('key', '')
    if not key:
        return jsonify({'success': False, 'message': 'Missing key'}), 400

    client = _store_client()
    if client is None:
        return _not_configured()

    if not key.startswith(client.credentials.key_prefix):
        return jsonify({'success': False, 'message': 'Key is outside this site\'s backups'}), 400

    handle, temp_path = tempfile.mkstemp(suffix='.zip')
    os.close(handle)

    try:
        client.get_object(key, temp_path)
    except StorageError as e:
        _remove_temp_file(temp_path)
        return jsonify({'success': False, 'message': str(e), 'error_kind': e.kind.value}), 502
    except Exception:
        _remove_temp_file(temp_path)
        raise

    @after_this_request
    def remove_temp_file(response):
        _remove_temp_file(temp_path)
        return response

    return send_file(temp_path, as_attachment=True, download_name=os.path.basename(key),
                     mimetype='application/zip')


@bp.route('/history', methods=['GET'])
@backup_key_required
def list_history():
    """
    Get recent backup runs.

    Query params:
        - limit: Max number of records (default: 50, max: 200)
        - logs: Include run logs when "true"
    """
    limit = min(request.args.get('limit', 50, type=int), 200)
    include_logs = request.args.get('logs', 'false').lower() == 'true'

    runs = BackupRun.query.order_by(BackupRun.started_at.desc()).limit(limit).all()
    return jsonify({
        'records': [run.to_dict(include_logs=include_logs) for run in runs],
        'limit': limit,
    })


@bp.route('/license/refresh', methods=['POST'])
@backup_key_required
def refresh_license():
    """Force a configuration refresh from the license server."""
    credentials = get_config_provider(current_app).get_config(force=True)
    if credentials is None:
        return jsonify({'success': False, 'message': 'License is invalid or the server is unreachable'}), 403

    return jsonify({'success': True, 'store': credentials.redacted()})
