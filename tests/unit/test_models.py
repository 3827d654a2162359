from datetime import datetime, timedelta, timezone

import pytest

from bookcharts.exceptions import SnapshotNotFound
from bookcharts.models import (
    BookMetadata,
    BookRanking,
    CacheEntry,
    ListMetadata,
    RegionalPerformance,
    SnapshotCacheRecord,
    SnapshotMetadata,
    SnapshotResult,
    WeeklyScore,
    YearEndRankings,
)

NOW = datetime(2025, 11, 12, 12, 0, 0, tzinfo=timezone.utc)


class TestBookMetadata:
    def test_from_volume_info(self):
        meta = BookMetadata.from_volume_info("123", {
            "title": "A Book",
            "authors": ["One", "Two"],
            "categories": ["History", "Europe"],
            "publishedDate": "2023",
            "imageLinks": {
                "thumbnail": "http://img/thumb.jpg",
                "large": "http://img/large.jpg",
                "extraLarge": "http://img/xl.jpg",
            },
        })
        assert meta.authors == ("One", "Two")
        assert meta.category == "History"
        assert meta.cover_url == "https://img/large.jpg"
        assert "extraLarge" not in meta.image_links

    def test_sentinel(self):
        missing = BookMetadata.missing("123")
        assert missing.not_found
        assert missing.category == "Unknown"
        assert missing.cover_url is None
        assert missing.to_document() == {"isbn": "123", "not_found": True}

    def test_no_categories_is_unknown(self):
        assert BookMetadata(isbn="1", title="x").category == "Unknown"

    def test_document_round_trip_keeps_sentinel(self):
        doc = BookMetadata.missing("9").to_document()
        assert BookMetadata.from_document(doc) == BookMetadata.missing("9")

    def test_frozen(self):
        meta = BookMetadata(isbn="1")
        with pytest.raises(AttributeError):
            meta.title = "changed"


class TestCacheEntry:
    def test_expiry(self):
        entry = CacheEntry(
            identifier="1", value="v", fetched_at=NOW,
            ttl=timedelta(minutes=30), tier="memory",
        )
        assert entry.expires_at == NOW + timedelta(minutes=30)
        assert not entry.is_expired(NOW + timedelta(minutes=29))
        assert entry.is_expired(NOW + timedelta(minutes=30))


class TestWeeklyScore:
    def test_to_document(self):
        score = WeeklyScore(
            isbn="1", region="PNBA", week_date="2025-03-05", rank=2,
            category="Fiction", list_size=3, points=50.0,
        )
        assert score.year == 2025
        assert score.to_document() == {
            "isbn": "1",
            "region": "PNBA",
            "week_date": "2025-03-05",
            "rank": 2,
            "category": "Fiction",
            "list_size": 3,
            "points": 50.0,
        }


class TestRegionalPerformance:
    def test_rsi_stored_under_long_name(self):
        row = RegionalPerformance(
            isbn="1", region="SIBA", year=2025, regional_score=40.0, rsi=0.4,
            weeks_on_chart=2, best_rank=1, avg_rank=1.5, avg_score_per_week=20.0,
        )
        doc = row.to_document()
        assert doc["regional_strength_index"] == 0.4
        assert "rsi" not in doc
        assert RegionalPerformance.from_document(doc) == row


class TestYearEndRankings:
    def test_to_document_sorts_regions(self):
        ranking = BookRanking(isbn="1", title="T", author="A", score=10.0)
        rankings = YearEndRankings(
            year=2025,
            regional_top={"SIBA": (ranking,), "MIBA": (ranking,)},
            most_regional=(),
            most_national=(ranking,),
            most_efficient=(),
            generated_at=NOW,
        )
        doc = rankings.to_document()
        assert list(doc["regional_top"]) == ["MIBA", "SIBA"]
        assert doc["most_national"][0]["title"] == "T"
        assert doc["generated_at"] == NOW


class TestSnapshotCacheRecord:
    def test_naive_timestamp_read_as_utc(self):
        record = SnapshotCacheRecord.from_document({
            "cache_key": "k",
            "data": [1, 2],
            "last_fetched": datetime(2025, 11, 12, 12, 0, 0),
        })
        assert record.last_fetched_at == NOW
        assert record.payload == [1, 2]


class TestSnapshotMetadata:
    def test_to_dict_without_list_metadata(self):
        meta = SnapshotMetadata(
            current_week="2025-11-12",
            comparison_week="2025-11-05",
            cache_status="fresh",
            next_refresh=NOW,
            last_fetched=NOW,
        )
        body = meta.to_dict()
        assert body["currentWeek"] == "2025-11-12"
        assert body["lastFetched"] == "2025-11-12T12:00:00+00:00"
        assert body["bookCount"] is None
        assert body["isCurrentWeek"] is False

    def test_to_dict_with_list_metadata(self):
        meta = SnapshotMetadata(
            current_week="2025-11-12",
            comparison_week="2025-11-05",
            cache_status="stale",
            next_refresh=NOW,
            list_metadata=ListMetadata(week_date="2025-11-12", book_count=90),
        )
        assert meta.to_dict()["bookCount"] == 90
        assert meta.to_dict()["lastFetched"] is None


class TestSnapshotResult:
    def test_require_payload(self):
        hit = SnapshotResult(status="stale", cache_key="k", etag='"e"', payload={"a": 1})
        assert hit.found
        assert hit.require_payload() == {"a": 1}

        miss = SnapshotResult(status="not_found", cache_key="k", etag='"e"')
        with pytest.raises(SnapshotNotFound):
            miss.require_payload()
