"""MongoDB-backed lease records for the execution lock."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict

from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError

LOGGER = logging.getLogger(__name__)


class MongoLeaseStore:
    """One document per lock name: ``{_id, lock_until, locked_at, locked_by}``."""

    def __init__(self, collection: Collection) -> None:
        self._collection = collection

    def try_lock(self, name: str, *, now: datetime, lock_until: datetime, holder: str) -> bool:
        """Take the lease if it is free or expired.

        The filter only matches an expired lease; when a live lease exists the
        upsert collides on ``_id`` and the attempt reports False.
        """
        try:
            self._collection.find_one_and_update(
                {"_id": name, "lock_until": {"$lte": now}},
                {"$set": {"lock_until": lock_until, "locked_at": now, "locked_by": holder}},
                upsert=True,
            )
        except DuplicateKeyError:
            LOGGER.debug("Lease %s is held by another owner", name)
            return False
        return True

    def unlock(self, name: str, *, holder: str, lock_until: datetime) -> bool:
        result = self._collection.update_one(
            {"_id": name, "locked_by": holder},
            {"$set": {"lock_until": lock_until}},
        )
        return result.matched_count == 1

    def find(self, name: str) -> Dict[str, Any] | None:
        return self._collection.find_one({"_id": name})
