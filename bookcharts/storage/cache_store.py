"""MongoDB-backed persistent stores for the two caches.

MetadataCacheStore is Layer-2 of the metadata cache: one document per
ISBN, last writer wins. SnapshotStore holds the weekly bestseller
payloads written by the ingestion job and read by the serving path.

Every pymongo failure is converted to CacheUnavailable so callers can
degrade (the metadata cache) or map it to a clean 500 (the read
endpoint) without depending on pymongo themselves.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from pymongo import ASCENDING, IndexModel
from pymongo.database import Database
from pymongo.errors import PyMongoError

from bookcharts.config import MongoConfig
from bookcharts.exceptions import CacheUnavailable
from bookcharts.models import BookMetadata, ListMetadata, SnapshotCacheRecord

logger = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class MetadataCacheStore:
    """Persistent metadata cache, shared by all process instances."""

    def __init__(self, db: Database, config: MongoConfig) -> None:
        self._entries = db[config.metadata_cache_collection]

    def ensure_indexes(self) -> None:
        try:
            self._entries.create_indexes([
                IndexModel([("isbn", ASCENDING)], unique=True, name="isbn_unique"),
                IndexModel([("fetched_at", ASCENDING)], name="fetched_at"),
            ])
        except PyMongoError as exc:
            raise CacheUnavailable(f"Index creation failed: {exc}") from exc
        logger.info("Ensured indexes on metadata cache collection")

    def get_many(self, isbns: list[str]) -> dict[str, tuple[BookMetadata, datetime]]:
        """Return isbn -> (metadata, fetched_at) for the ISBNs present."""
        if not isbns:
            return {}
        try:
            docs = list(self._entries.find({"isbn": {"$in": list(isbns)}}))
        except PyMongoError as exc:
            raise CacheUnavailable(
                f"Metadata cache read failed: {exc}", details={"count": len(isbns)}
            ) from exc
        return {
            doc["isbn"]: (BookMetadata.from_document(doc["value"]), _aware(doc["fetched_at"]))
            for doc in docs
        }

    def put(self, isbn: str, value: BookMetadata, fetched_at: datetime) -> None:
        try:
            self._entries.replace_one(
                {"isbn": isbn},
                {
                    "isbn": isbn,
                    "value": value.to_document(),
                    "fetched_at": fetched_at,
                },
                upsert=True,
            )
        except PyMongoError as exc:
            raise CacheUnavailable(
                f"Metadata cache write failed: {exc}", details={"isbn": isbn}
            ) from exc

    def delete(self, isbn: str) -> None:
        try:
            self._entries.delete_one({"isbn": isbn})
        except PyMongoError as exc:
            raise CacheUnavailable(f"Metadata cache delete failed: {exc}") from exc

    def delete_older_than(self, cutoff: datetime) -> int:
        """Prune entries fetched before cutoff. Returns the number removed."""
        try:
            result = self._entries.delete_many({"fetched_at": {"$lt": cutoff}})
        except PyMongoError as exc:
            raise CacheUnavailable(f"Metadata cache prune failed: {exc}") from exc
        logger.info("Pruned %d metadata cache entries", result.deleted_count)
        return result.deleted_count


class SnapshotStore:
    """Weekly snapshot payloads and their list metadata.

    The ingestion job is the only writer; the read endpoint only calls
    get() and get_list_metadata().
    """

    def __init__(self, db: Database, config: MongoConfig) -> None:
        self._snapshots = db[config.snapshot_collection]
        self._list_metadata = db[config.list_metadata_collection]

    def ensure_indexes(self) -> None:
        try:
            self._snapshots.create_indexes([
                IndexModel([("cache_key", ASCENDING)], unique=True, name="cache_key_unique"),
            ])
            self._list_metadata.create_indexes([
                IndexModel([("week_date", ASCENDING)], unique=True, name="week_date_unique"),
            ])
        except PyMongoError as exc:
            raise CacheUnavailable(f"Index creation failed: {exc}") from exc

    def get(self, cache_key: str) -> SnapshotCacheRecord | None:
        try:
            doc = self._snapshots.find_one({"cache_key": cache_key})
        except PyMongoError as exc:
            raise CacheUnavailable(
                f"Snapshot read failed: {exc}", details={"cache_key": cache_key}
            ) from exc
        if doc is None:
            return None
        return SnapshotCacheRecord.from_document(doc)

    def get_list_metadata(self, week_date: str) -> ListMetadata | None:
        try:
            doc = self._list_metadata.find_one({"week_date": week_date})
        except PyMongoError as exc:
            raise CacheUnavailable(f"List metadata read failed: {exc}") from exc
        if doc is None:
            return None
        return ListMetadata.from_document(doc)

    def put(self, record: SnapshotCacheRecord) -> None:
        try:
            self._snapshots.replace_one(
                {"cache_key": record.cache_key},
                record.to_document(),
                upsert=True,
            )
        except PyMongoError as exc:
            raise CacheUnavailable(f"Snapshot write failed: {exc}") from exc
        logger.info("Stored snapshot %s", record.cache_key)

    def put_list_metadata(self, metadata: ListMetadata) -> None:
        try:
            self._list_metadata.replace_one(
                {"week_date": metadata.week_date},
                metadata.to_document(),
                upsert=True,
            )
        except PyMongoError as exc:
            raise CacheUnavailable(f"List metadata write failed: {exc}") from exc
