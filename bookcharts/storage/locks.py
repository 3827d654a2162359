"""Advisory job locks stored in MongoDB.

A lock is a document whose _id is the lock name. Inserting it acquires
the lock; the unique _id makes a second insert fail. Locks carry an
expiry so a crashed run doesn't block the next nightly invocation
forever: an expired lock can be taken over by the next caller.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from bookcharts.config import MongoConfig

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL = timedelta(hours=1)


class JobLock:
    def __init__(self, db: Database, config: MongoConfig) -> None:
        self._locks = db[config.locks_collection]

    def acquire(
        self,
        name: str,
        owner: str,
        ttl: timedelta = DEFAULT_LOCK_TTL,
        now: datetime | None = None,
    ) -> bool:
        """Try to take the named lock. Returns False if someone holds it."""
        now = now or datetime.now(timezone.utc)
        lock = {
            "owner": owner,
            "acquired_at": now,
            "expires_at": now + ttl,
        }
        try:
            self._locks.insert_one({"_id": name, **lock})
            return True
        except DuplicateKeyError:
            pass

        taken_over = self._locks.find_one_and_update(
            {"_id": name, "expires_at": {"$lt": now}},
            {"$set": lock},
        )
        if taken_over is not None:
            logger.warning(
                "Took over expired lock %s from %s", name, taken_over.get("owner")
            )
            return True
        return False

    def holder(self, name: str) -> str | None:
        doc = self._locks.find_one({"_id": name})
        return doc.get("owner") if doc else None

    def release(self, name: str, owner: str) -> None:
        self._locks.delete_one({"_id": name, "owner": owner})
