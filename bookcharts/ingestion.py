"""Weekly ingestion: the single writer for scores and snapshots.

Runs after a region's weekly list has been parsed:

    1. Validate the list
    2. Score every entry (list size per category)
    3. Replace that region's week in weekly_scores
    4. Record title/author for ranking display

Publishing the combined weekly snapshot for the read endpoint is a
separate step (publish_snapshot), run once per week after all regions
have been ingested.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import date, datetime, timezone
from typing import Any

from bookcharts.cache.snapshot_cache import snapshot_cache_key
from bookcharts.models import ListEntry, ListMetadata, SnapshotCacheRecord
from bookcharts.scoring.engine import score_weekly_list
from bookcharts.storage.cache_store import SnapshotStore
from bookcharts.storage.repository import ScoresRepository
from bookcharts.validation.validators import ValidationResult, validate_weekly_list

logger = logging.getLogger(__name__)


def ingest_week(
    repository: ScoresRepository,
    region: str,
    week_date: str,
    entries: Sequence[ListEntry],
) -> tuple[int, ValidationResult]:
    """Score and store one region's weekly list.

    An invalid list is not stored at all, so a bad parse never
    replaces a good week.

    Returns:
        (rows written, validation result)
    """
    validation = validate_weekly_list(region, week_date, entries)
    for warning in validation.warnings:
        logger.info("Ingestion warning: %s", warning)
    if not validation.valid:
        logger.warning(
            "Rejected %s week %s: %d validation errors",
            region, week_date, len(validation.errors),
        )
        return 0, validation

    scores = score_weekly_list(region, week_date, entries)
    repository.ensure_indexes()
    written = repository.save_weekly_scores(region, week_date, scores)
    repository.upsert_books(entries)
    return written, validation


def publish_snapshot(
    store: SnapshotStore,
    week_date: date,
    comparison_week_date: date,
    payload: Any,
    list_metadata: ListMetadata | None = None,
    fetched_at: datetime | None = None,
) -> SnapshotCacheRecord:
    """Write the snapshot the read endpoint serves for a week pair."""
    record = SnapshotCacheRecord(
        cache_key=snapshot_cache_key(week_date, comparison_week_date),
        payload=payload,
        last_fetched_at=fetched_at or datetime.now(timezone.utc),
    )
    store.ensure_indexes()
    store.put(record)
    if list_metadata is not None:
        store.put_list_metadata(list_metadata)
    return record
