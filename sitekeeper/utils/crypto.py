"""
Master key encryption utilities.

Uses Flask SECRET_KEY to encrypt/decrypt secrets cached in the option store
(S3 secret key, webhook secret) so they never sit there in plaintext.
"""

import base64
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


class MasterKeyManager:
    """
    Handles encryption/decryption using Flask SECRET_KEY as master key.
    """

    def __init__(self, secret_key: str):
        """
        Initialize with Flask SECRET_KEY.

        Args:
            secret_key: Flask app SECRET_KEY (from config or /data/.secret_key)
        """
        # SECRET_KEY is the secret, so a fixed salt is enough
        fixed_salt = b'sitekeeper_option_cache_salt_v1'

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=fixed_salt,
            iterations=100000,
        )

        key = base64.urlsafe_b64encode(kdf.derive(secret_key.encode()))
        self._fernet = Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string for persistent storage.

        Args:
            plaintext: Value in plaintext

        Returns:
            Fernet token as a string
        """
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        """
        Decrypt a stored value.

        Args:
            token: Fernet token produced by encrypt()

        Returns:
            Plaintext value

        Raises:
            cryptography.fernet.InvalidToken: If decryption fails (wrong key or corrupted data)
        """
        return self._fernet.decrypt(token.encode()).decode()


def get_master_key_manager(app) -> MasterKeyManager:
    """
    Factory function to create MasterKeyManager from Flask app config.

    Raises:
        RuntimeError: If SECRET_KEY not configured
    """
    secret_key = app.config.get('SECRET_KEY')

    if not secret_key:
        raise RuntimeError("SECRET_KEY not configured - cannot initialize MasterKeyManager")

    return MasterKeyManager(secret_key)


__all__ = ['MasterKeyManager', 'get_master_key_manager', 'InvalidToken']
