from datetime import date, datetime, timedelta, timezone

import pytest

from bookcharts.cache.snapshot_cache import (
    FRESH,
    NOT_FOUND,
    NOT_MODIFIED,
    STALE,
    UNAVAILABLE,
    BestsellerSnapshotCache,
    classify_freshness,
    etag_matches,
    most_recent_list_day,
    next_refresh_after,
    snapshot_cache_key,
    snapshot_etag,
)
from bookcharts.exceptions import SnapshotNotFound
from bookcharts.models import ListMetadata, SnapshotCacheRecord
from conftest import NOW

WEEK = date(2025, 11, 12)
PREVIOUS = date(2025, 11, 5)
KEY = "bestseller_list_2025-11-12_vs_2025-11-05"


def _store_record(store, age, payload=None):
    store.put(SnapshotCacheRecord(
        cache_key=KEY,
        payload=payload if payload is not None else {"fiction": ["9780000000001"]},
        last_fetched_at=NOW - age,
    ))


class TestKeys:
    def test_cache_key(self):
        assert snapshot_cache_key(WEEK, PREVIOUS) == KEY

    def test_etag_is_quoted(self):
        assert snapshot_etag(WEEK, PREVIOUS) == '"2025-11-12-2025-11-05"'

    @pytest.mark.parametrize("today,expected", [
        (date(2025, 11, 12), date(2025, 11, 12)),  # Wednesday
        (date(2025, 11, 13), date(2025, 11, 12)),
        (date(2025, 11, 18), date(2025, 11, 12)),
        (date(2025, 11, 11), date(2025, 11, 5)),
    ])
    def test_most_recent_list_day(self, today, expected):
        assert most_recent_list_day(today) == expected

    @pytest.mark.parametrize("header,expected", [
        ('"2025-11-12-2025-11-05"', True),
        ('W/"2025-11-12-2025-11-05"', True),
        ('"other", "2025-11-12-2025-11-05"', True),
        ('"other",W/"2025-11-12-2025-11-05"', True),
        ('"other"', False),
        ("", False),
        (None, False),
    ])
    def test_etag_matches(self, header, expected):
        assert etag_matches(header, snapshot_etag(WEEK, PREVIOUS)) is expected

    def test_next_refresh(self):
        assert next_refresh_after(WEEK) == datetime(2025, 11, 19, 16, tzinfo=timezone.utc)


class TestClassifyFreshness:
    @pytest.mark.parametrize("age,expected", [
        (timedelta(hours=2), FRESH),
        (timedelta(hours=4), STALE),
        (timedelta(hours=10), STALE),
        (timedelta(hours=24), UNAVAILABLE),
        (timedelta(hours=30), UNAVAILABLE),
    ])
    def test_bands(self, age, expected):
        assert classify_freshness(NOW - age, NOW) == expected


class TestGetSnapshot:
    def test_fresh_hit(self, snapshot_store, clock):
        _store_record(snapshot_store, timedelta(hours=2))
        cache = BestsellerSnapshotCache(snapshot_store, clock=clock)

        result = cache.get_snapshot(WEEK, PREVIOUS)

        assert result.status == FRESH
        assert result.payload == {"fiction": ["9780000000001"]}
        assert result.etag == '"2025-11-12-2025-11-05"'
        assert result.metadata.cache_status == FRESH
        assert result.metadata.last_fetched == NOW - timedelta(hours=2)

    def test_stale_hit(self, snapshot_store, clock):
        _store_record(snapshot_store, timedelta(hours=10))
        result = BestsellerSnapshotCache(snapshot_store, clock=clock).get_snapshot(
            WEEK, PREVIOUS
        )
        assert result.status == STALE
        assert result.payload is not None

    def test_unavailable_still_returns_payload(self, snapshot_store, clock):
        _store_record(snapshot_store, timedelta(hours=30))
        result = BestsellerSnapshotCache(snapshot_store, clock=clock).get_snapshot(
            WEEK, PREVIOUS
        )
        assert result.status == UNAVAILABLE
        assert result.payload == {"fiction": ["9780000000001"]}
        assert result.found is True

    def test_matching_etag_skips_store(self, snapshot_store, clock):
        _store_record(snapshot_store, timedelta(hours=2))
        cache = BestsellerSnapshotCache(snapshot_store, clock=clock)

        result = cache.get_snapshot(
            WEEK, PREVIOUS, if_none_match='"2025-11-12-2025-11-05"'
        )

        assert result.status == NOT_MODIFIED
        assert result.payload is None
        assert snapshot_store.reads == 0

    def test_weak_etag_in_list_skips_store(self, snapshot_store, clock):
        _store_record(snapshot_store, timedelta(hours=2))
        cache = BestsellerSnapshotCache(snapshot_store, clock=clock)

        result = cache.get_snapshot(
            WEEK, PREVIOUS, if_none_match='"stale-tag", W/"2025-11-12-2025-11-05"'
        )

        assert result.status == NOT_MODIFIED
        assert snapshot_store.reads == 0

    def test_other_etag_reads_store(self, snapshot_store, clock):
        _store_record(snapshot_store, timedelta(hours=2))
        result = BestsellerSnapshotCache(snapshot_store, clock=clock).get_snapshot(
            WEEK, PREVIOUS, if_none_match='"2025-11-05-2025-10-29"'
        )
        assert result.status == FRESH
        assert snapshot_store.reads == 1

    def test_missing_record_is_not_found(self, snapshot_store, clock):
        result = BestsellerSnapshotCache(snapshot_store, clock=clock).get_snapshot(
            WEEK, PREVIOUS
        )

        assert result.status == NOT_FOUND
        assert result.found is False
        assert result.payload is None
        assert result.metadata.next_refresh == datetime(
            2025, 11, 19, 16, tzinfo=timezone.utc
        )
        with pytest.raises(SnapshotNotFound) as exc_info:
            result.require_payload()
        assert exc_info.value.cache_key == KEY

    def test_defaults_to_current_week_and_previous(self, snapshot_store, clock):
        clock.advance(days=2)  # Friday
        _store_record(snapshot_store, timedelta(hours=1))

        result = BestsellerSnapshotCache(snapshot_store, clock=clock).get_snapshot()

        assert result.cache_key == KEY
        assert result.metadata.current_week == "2025-11-12"
        assert result.metadata.comparison_week == "2025-11-05"

    def test_list_metadata_included(self, snapshot_store, clock):
        _store_record(snapshot_store, timedelta(hours=1))
        snapshot_store.put_list_metadata(ListMetadata(
            week_date="2025-11-12", book_count=120, category_count=8,
            source_url="https://lists.example/2025-11-12", is_current_week=True,
        ))

        result = BestsellerSnapshotCache(snapshot_store, clock=clock).get_snapshot(
            WEEK, PREVIOUS
        )
        body = result.metadata.to_dict()

        assert body["bookCount"] == 120
        assert body["categoryCount"] == 8
        assert body["isCurrentWeek"] is True
        assert body["cacheStatus"] == FRESH
        assert body["nextRefresh"] == "2025-11-19T16:00:00+00:00"
