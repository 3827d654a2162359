"""Read-path cache for the weekly bestseller snapshot.

The ingestion job writes one snapshot record per (week, comparison
week) pair. This module only reads: it derives the cache key and ETag
from the two week dates, short-circuits conditional requests, and
classifies how old the stored payload is:

    age < 4h          fresh
    4h <= age < 24h   stale
    age >= 24h        unavailable (payload still returned; caller
                      should trigger a refresh)

A missing record is reported as not_found, which is distinct from
unavailable: unavailable means old data exists, not_found means none
has been ingested yet.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date, datetime, time, timedelta, timezone
from typing import Protocol

from bookcharts.config import SnapshotConfig
from bookcharts.models import (
    ListMetadata,
    SnapshotCacheRecord,
    SnapshotMetadata,
    SnapshotResult,
)

logger = logging.getLogger(__name__)

FRESH = "fresh"
STALE = "stale"
UNAVAILABLE = "unavailable"
NOT_MODIFIED = "not_modified"
NOT_FOUND = "not_found"


class SnapshotReader(Protocol):
    def get(self, cache_key: str) -> SnapshotCacheRecord | None: ...

    def get_list_metadata(self, week_date: str) -> ListMetadata | None: ...


def snapshot_cache_key(week_date: date, comparison_week_date: date) -> str:
    return f"bestseller_list_{week_date.isoformat()}_vs_{comparison_week_date.isoformat()}"


def snapshot_etag(week_date: date, comparison_week_date: date) -> str:
    return f'"{week_date.isoformat()}-{comparison_week_date.isoformat()}"'


def etag_matches(if_none_match: str | None, etag: str) -> bool:
    """Weak comparison of an If-None-Match header against etag.

    The header may list several tags separated by commas, and any of
    them may carry the W/ prefix.
    """
    if not if_none_match:
        return False
    wanted = etag.removeprefix("W/")
    for candidate in if_none_match.split(","):
        if candidate.strip().removeprefix("W/") == wanted:
            return True
    return False


def most_recent_list_day(today: date, weekday: int = 2) -> date:
    """Most recent list day on or before today (Wednesday by default)."""
    return today - timedelta(days=(today.weekday() - weekday) % 7)


def classify_freshness(
    last_fetched_at: datetime,
    now: datetime,
    config: SnapshotConfig | None = None,
) -> str:
    config = config or SnapshotConfig()
    age = now - last_fetched_at
    if age < config.fresh_window:
        return FRESH
    if age < config.stale_window:
        return STALE
    return UNAVAILABLE


def next_refresh_after(week_date: date, config: SnapshotConfig | None = None) -> datetime:
    """Next ingestion: one week after the snapshot week, at the ingestion hour."""
    config = config or SnapshotConfig()
    return datetime.combine(
        week_date + timedelta(days=7),
        time(hour=config.ingestion_hour_utc),
        tzinfo=timezone.utc,
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BestsellerSnapshotCache:
    """Freshness-aware reader over the snapshot store."""

    def __init__(
        self,
        store: SnapshotReader,
        config: SnapshotConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._config = config or SnapshotConfig()
        self._clock = clock

    def resolve_weeks(
        self,
        week_date: date | None = None,
        comparison_week_date: date | None = None,
        now: datetime | None = None,
    ) -> tuple[date, date]:
        """Fill in defaults: latest list day, and the week before it."""
        if week_date is None:
            today = (now or self._clock()).date()
            week_date = most_recent_list_day(today, self._config.list_weekday)
        if comparison_week_date is None:
            comparison_week_date = week_date - timedelta(days=7)
        return week_date, comparison_week_date

    def get_snapshot(
        self,
        week_date: date | None = None,
        comparison_week_date: date | None = None,
        if_none_match: str | None = None,
        now: datetime | None = None,
    ) -> SnapshotResult:
        """Read one snapshot.

        Args:
            week_date: List week; defaults to the most recent list day.
            comparison_week_date: Week to compare against; defaults to
                seven days before week_date.
            if_none_match: ETag the caller already holds.
            now: Reference time for freshness; defaults to the clock.

        Returns:
            SnapshotResult with status fresh, stale, unavailable,
            not_modified or not_found.

        Raises:
            CacheUnavailable: If the snapshot store can't be read.
        """
        now = now or self._clock()
        week_date, comparison_week_date = self.resolve_weeks(
            week_date, comparison_week_date, now
        )
        cache_key = snapshot_cache_key(week_date, comparison_week_date)
        etag = snapshot_etag(week_date, comparison_week_date)

        if etag_matches(if_none_match, etag):
            return SnapshotResult(status=NOT_MODIFIED, cache_key=cache_key, etag=etag)

        next_refresh = next_refresh_after(week_date, self._config)
        record = self._store.get(cache_key)
        if record is None:
            logger.warning("Snapshot cache miss for %s", cache_key)
            return SnapshotResult(
                status=NOT_FOUND,
                cache_key=cache_key,
                etag=etag,
                metadata=SnapshotMetadata(
                    current_week=week_date.isoformat(),
                    comparison_week=comparison_week_date.isoformat(),
                    cache_status=NOT_FOUND,
                    next_refresh=next_refresh,
                ),
            )

        status = classify_freshness(record.last_fetched_at, now, self._config)
        if status == UNAVAILABLE:
            logger.warning(
                "Snapshot %s is older than %s, refresh needed",
                cache_key, self._config.stale_window,
            )

        return SnapshotResult(
            status=status,
            cache_key=cache_key,
            etag=etag,
            payload=record.payload,
            metadata=SnapshotMetadata(
                current_week=week_date.isoformat(),
                comparison_week=comparison_week_date.isoformat(),
                cache_status=status,
                next_refresh=next_refresh,
                last_fetched=record.last_fetched_at,
                list_metadata=self._store.get_list_metadata(week_date.isoformat()),
            ),
        )
