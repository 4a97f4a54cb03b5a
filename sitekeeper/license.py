"""
License server handshake and the store configuration providers.

The license server hands out the S3 credentials, the webhook secret and the
retention cap. Responses are signed with a shared secret and cached in the
option store with the secrets encrypted.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import re
import time
from datetime import datetime
from typing import Optional

import requests

from sitekeeper.backup.types import StoreCredentials
from sitekeeper.store import OptionStore
from sitekeeper.utils.crypto import InvalidToken, MasterKeyManager, get_master_key_manager

logger = logging.getLogger(__name__)

LICENSE_CACHE_KEY = 'license_data'
DEFAULT_KEEP_COUNT = 1000
DEFAULT_CACHE_SECONDS = 12 * 60 * 60
REQUEST_TIMEOUT = 15


class LicenseError(Exception):
    """Raised when the license server response cannot be trusted."""
    pass


def site_key_prefix(site_url: str) -> str:
    """Object key prefix for a site: URL without scheme or trailing slash, plus '/'."""
    return re.sub(r'^https?://', '', site_url.rstrip('/')) + '/'


def sign_payload(payload: str, shared_secret: str) -> str:
    return hashlib.sha256(f"{shared_secret}{payload}{shared_secret}".encode('utf-8')).hexdigest()


def decode_license_response(body: bytes, shared_secret: str) -> dict:
    """
    Decode and verify a license server response.

    Args:
        body: Raw response body (base64 of ``{"payload": ..., "signature": ...}``)
        shared_secret: Secret shared with the license server

    Returns:
        The decoded payload dict

    Raises:
        LicenseError: If the envelope is malformed or the signature does not match
    """
    try:
        envelope = json.loads(base64.b64decode(body.strip()))
    except (binascii.Error, ValueError) as e:
        raise LicenseError(f"Invalid response format from license server: {e}")

    if not isinstance(envelope, dict) or 'payload' not in envelope or 'signature' not in envelope:
        raise LicenseError("Invalid response format from license server")

    payload = envelope['payload']
    expected = sign_payload(payload, shared_secret)
    if not hmac.compare_digest(expected, str(envelope['signature'])):
        raise LicenseError("License signature verification failed")

    try:
        data = json.loads(payload)
    except ValueError as e:
        raise LicenseError(f"Invalid license payload: {e}")

    if not isinstance(data, dict):
        raise LicenseError("Invalid license payload")
    return data


def _parse_valid_until(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    for fmt in ('%Y-%m-%d %H:%M:%S', '%Y-%m-%dT%H:%M:%S', '%Y-%m-%d'):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    logger.warning(f"Unrecognized license expiry: {value}")
    return None


class LicenseClient:
    """
    Fetches, verifies and caches license data.

    ``check()`` returns the license data with secrets in plaintext, or None
    when no valid license is available.
    """

    def __init__(
        self,
        server_url: str,
        shared_secret: str,
        store: OptionStore,
        key_manager: MasterKeyManager,
        cache_seconds: int = DEFAULT_CACHE_SECONDS,
        session: Optional[requests.Session] = None,
        clock=time.time,
    ):
        self.server_url = server_url
        self.shared_secret = shared_secret
        self.store = store
        self.key_manager = key_manager
        self.cache_seconds = cache_seconds
        self.session = session or requests.Session()
        self._clock = clock

    def check(self, force: bool = False) -> Optional[dict]:
        """
        Return valid license data, refreshing from the server when needed.

        Args:
            force: Skip the cache and ask the server

        Returns:
            License dict ({s3_config, webhook_secret, total_backups_to_keep,
            valid_until}) or None
        """
        cached = self._load_cache()

        if not force and cached and self._is_fresh(cached):
            return cached

        try:
            response = self.session.get(self.server_url, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            return self._fallback(cached, f"Failed to connect to license server: {e}")

        if response.status_code != 200:
            return self._fallback(cached, f"Failed to connect to license server: HTTP Error: {response.status_code}")

        try:
            data = decode_license_response(response.content, self.shared_secret)
        except LicenseError as e:
            logger.error(str(e))
            self.invalidate()
            return None

        if data.get('status') != 'valid' or not data.get('s3_config') or not data.get('webhook_secret'):
            logger.error(f"License status is invalid or missing required data (S3/Webhook). Status: {data.get('status')}")
            self.invalidate()
            return None

        license_data = {
            's3_config': dict(data['s3_config']),
            'webhook_secret': data['webhook_secret'],
            'total_backups_to_keep': int(data.get('total_backups_to_keep') or DEFAULT_KEEP_COUNT),
            'valid_until': data.get('valid_until') or '',
            'checked_at': int(self._clock()),
        }
        self._save_cache(license_data)
        logger.info("License valid. S3 and webhook details updated.")
        return license_data

    def invalidate(self):
        if self.store.delete(LICENSE_CACHE_KEY):
            logger.info("Cached license data invalidated")

    def _fallback(self, cached: Optional[dict], message: str) -> Optional[dict]:
        logger.error(message)
        if cached:
            logger.warning("Using stale cached license data due to server error.")
            return cached
        self.invalidate()
        return None

    def _is_fresh(self, cached: dict) -> bool:
        if self._clock() - cached.get('checked_at', 0) >= self.cache_seconds:
            return False
        valid_until = _parse_valid_until(cached.get('valid_until'))
        return valid_until is None or valid_until > datetime.utcfromtimestamp(self._clock())

    def _save_cache(self, license_data: dict):
        stored = json.loads(json.dumps(license_data))
        stored['s3_config']['secret_key'] = self.key_manager.encrypt(str(stored['s3_config'].get('secret_key', '')))
        stored['webhook_secret'] = self.key_manager.encrypt(str(stored['webhook_secret']))
        self.store.set(LICENSE_CACHE_KEY, stored)

    def _load_cache(self) -> Optional[dict]:
        stored = self.store.get(LICENSE_CACHE_KEY)
        if not stored:
            return None
        try:
            stored['s3_config']['secret_key'] = self.key_manager.decrypt(stored['s3_config']['secret_key'])
            stored['webhook_secret'] = self.key_manager.decrypt(stored['webhook_secret'])
        except (InvalidToken, KeyError, TypeError) as e:
            logger.warning(f"Cached license data unreadable, discarding: {e}")
            self.invalidate()
            return None
        return stored


class LicenseConfigProvider:
    """Store configuration backed by the license server."""

    def __init__(self, client: LicenseClient, site_url: str):
        self.client = client
        self.site_url = site_url

    def get_config(self, force: bool = False) -> Optional[StoreCredentials]:
        data = self.client.check(force)
        if not data:
            return None

        s3_config = data['s3_config']
        try:
            return StoreCredentials(
                access_key=s3_config.get('access_key', ''),
                secret_key=s3_config.get('secret_key', ''),
                bucket=s3_config.get('bucket', ''),
                region=s3_config.get('region') or 'us-east-1',
                endpoint=s3_config.get('endpoint') or None,
                key_prefix=site_key_prefix(self.site_url),
            )
        except ValueError as e:
            logger.error(f"License S3 configuration unusable: {e}")
            return None

    def get_keep_count(self) -> int:
        data = self.client.check()
        return data['total_backups_to_keep'] if data else DEFAULT_KEEP_COUNT

    def get_webhook_secret(self) -> Optional[str]:
        data = self.client.check()
        return data['webhook_secret'] if data else None


class StaticConfigProvider:
    """Store configuration taken straight from the S3_* settings."""

    def __init__(self, app_config, site_url: str):
        self.app_config = app_config
        self.site_url = site_url

    def get_config(self, force: bool = False) -> Optional[StoreCredentials]:
        try:
            return StoreCredentials(
                access_key=self.app_config.get('S3_ACCESS_KEY') or '',
                secret_key=self.app_config.get('S3_SECRET_KEY') or '',
                bucket=self.app_config.get('S3_BUCKET') or '',
                region=self.app_config.get('S3_REGION') or 'us-east-1',
                endpoint=self.app_config.get('S3_ENDPOINT') or None,
                key_prefix=site_key_prefix(self.site_url),
            )
        except ValueError as e:
            logger.error(str(e))
            return None

    def get_keep_count(self) -> int:
        return self.app_config.get('KEEP_BACKUPS') or DEFAULT_KEEP_COUNT

    def get_webhook_secret(self) -> Optional[str]:
        return self.app_config.get('WEBHOOK_SECRET')


def get_config_provider(app, store: Optional[OptionStore] = None):
    """
    Pick the configuration provider for an app.

    Static S3 settings win; otherwise the license server is used.
    """
    site_url = app.config.get('SITE_URL') or 'http://localhost'

    if app.config.get('S3_ACCESS_KEY') or not app.config.get('LICENSE_SERVER_URL'):
        return StaticConfigProvider(app.config, site_url)

    client = LicenseClient(
        server_url=app.config['LICENSE_SERVER_URL'],
        shared_secret=app.config.get('LICENSE_SHARED_SECRET') or '',
        store=store or OptionStore(),
        key_manager=get_master_key_manager(app),
        cache_seconds=app.config.get('LICENSE_CACHE_SECONDS') or DEFAULT_CACHE_SECONDS,
    )
    return LicenseConfigProvider(client, site_url)
