"""
Shared-secret authentication for the backup API.
"""

import hmac
import logging
from functools import wraps
from typing import Optional

from flask import current_app, jsonify, request

logger = logging.getLogger(__name__)

BACKUP_KEY_HEADER = 'X-Backup-Key'


def verify_backup_key(expected: Optional[str], provided: Optional[str]) -> bool:
    """
    Compare a provided key with the webhook secret in constant time.

    Returns:
        False when either value is missing
    """
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode('utf-8'), provided.encode('utf-8'))


def backup_key_required(view):
    """Reject requests whose X-Backup-Key header does not match the webhook secret."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        from sitekeeper.license import get_config_provider

        provider = get_config_provider(current_app)
        expected = provider.get_webhook_secret()

        if not expected:
            logger.warning("Backup API called but no webhook secret is configured")
            return jsonify({'success': False, 'message': 'Backup API is not configured'}), 403

        if not verify_backup_key(expected, request.headers.get(BACKUP_KEY_HEADER)):
            logger.warning(f"Unauthorized backup API request from {request.remote_addr}")
            return jsonify({'success': False, 'message': 'Unauthorized'}), 401

        return view(*args, **kwargs)

    return wrapped
