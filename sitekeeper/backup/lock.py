"""
Single-flight run lock kept in the option store.
"""

import logging
import secrets
from datetime import datetime

from sitekeeper.store import OptionStore

logger = logging.getLogger(__name__)

DEFAULT_LOCK_KEY = 'backup_in_progress'
DEFAULT_LOCK_TTL = 6 * 60 * 60


class RunLock:
    """
    Boolean-with-expiry marker; at most one holder at a time.

    The TTL only matters when a process dies mid-run: normal runs release
    the lock themselves.
    """

    def __init__(self, store: OptionStore, key: str = DEFAULT_LOCK_KEY, ttl: int = DEFAULT_LOCK_TTL):
        self.store = store
        self.key = key
        self.ttl = ttl
        self.token = secrets.token_hex(16)
        self._owned = False

    def acquire(self) -> bool:
        """Take the lock. Returns False without waiting if it is already held."""
        acquired = self.store.add(
            self.key,
            {'started_at': datetime.utcnow().isoformat(), 'owner': self.token},
            ttl=self.ttl,
        )
        if acquired:
            self._owned = True
            logger.info(f"Run lock acquired (ttl {self.ttl}s)")
        else:
            logger.info("Run lock already held")
        return acquired

    def release(self):
        """Release the lock if this instance holds it. Safe to call repeatedly."""
        if not self._owned:
            return
        self._owned = False

        current = self.store.get(self.key)
        if not isinstance(current, dict) or current.get('owner') != self.token:
            logger.warning("Run lock expired and was taken by another run, leaving it in place")
            return

        self.store.delete(self.key)
        logger.info("Run lock released")

    def force_release(self) -> bool:
        """Clear the lock regardless of owner (stale status reset)."""
        self._owned = False
        return self.store.delete(self.key)

    @property
    def held(self) -> bool:
        return self.store.exists(self.key)
