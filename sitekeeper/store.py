"""
Key-value option store with expiry.

Backs the backup run lock and the cached license data. Values are stored as
JSON; an option whose expiry has passed behaves as if it did not exist.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError

from sitekeeper import db
from sitekeeper.models import Option

logger = logging.getLogger(__name__)


class OptionStore:
    """
    get/set/add/delete over the ``options`` table.

    ``add`` only creates an option that is absent or expired and reports
    whether it did; the primary key makes concurrent adds race-safe.
    """

    def __init__(self, session=None):
        self.session = session or db.session

    def _load(self, key: str) -> Optional[Option]:
        option = self.session.get(Option, key)
        if option is None:
            return None
        if option.is_expired():
            self.session.delete(option)
            self.session.commit()
            return None
        return option

    def get(self, key: str, default: Any = None) -> Any:
        option = self._load(key)
        if option is None or option.value is None:
            return default
        return json.loads(option.value)

    def exists(self, key: str) -> bool:
        return self._load(key) is not None

    def set(self, key: str, value: Any, ttl: Optional[int] = None):
        """
        Create or replace an option.

        Args:
            key: Option name
            value: JSON-serializable value
            ttl: Seconds until expiry (None = never expires)
        """
        option = self.session.get(Option, key)
        if option is None:
            option = Option(key=key)
            self.session.add(option)

        option.value = json.dumps(value)
        option.expires_at = _expiry(ttl)
        self.session.commit()

    def add(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """
        Create an option only if it is absent or expired.

        Returns:
            True if the option was created, False if a live one already exists
        """
        if self._load(key) is not None:
            return False

        self.session.add(Option(key=key, value=json.dumps(value), expires_at=_expiry(ttl)))
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            logger.info(f"Option {key} was created concurrently")
            return False
        return True

    def delete(self, key: str) -> bool:
        """Delete an option. Returns False if it did not exist."""
        option = self.session.get(Option, key)
        if option is None:
            return False
        self.session.delete(option)
        self.session.commit()
        return True


def _expiry(ttl: Optional[int]) -> Optional[datetime]:
    if ttl is None:
        return None
    return datetime.utcnow() + timedelta(seconds=ttl)
