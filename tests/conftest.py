import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from bookcharts.exceptions import (
    CacheUnavailable,
    PermanentLookupFailure,
    TransientLookupFailure,
)
from bookcharts.models import BookMetadata, LookupResult

NOW = datetime(2025, 11, 12, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeMetadataStore:
    """In-memory stand-in for MetadataCacheStore."""

    def __init__(self):
        self.entries = {}
        self.available = True
        self.puts = 0
        self.reads = 0

    def _check(self):
        if not self.available:
            raise CacheUnavailable("store down")

    def get_many(self, isbns):
        self.reads += 1
        self._check()
        return {isbn: self.entries[isbn] for isbn in isbns if isbn in self.entries}

    def put(self, isbn, value, fetched_at):
        self._check()
        self.puts += 1
        self.entries[isbn] = (value, fetched_at)

    def delete(self, isbn):
        self._check()
        self.entries.pop(isbn, None)

    def delete_older_than(self, cutoff):
        self._check()
        old = [k for k, (_, fetched_at) in self.entries.items() if fetched_at < cutoff]
        for key in old:
            del self.entries[key]
        return len(old)


class FakeLookupClient:
    """Scripted lookup client.

    outcomes maps isbn -> list of "ok" / "transient" / "permanent" /
    "raise"; the last outcome repeats. Unscripted ISBNs succeed.
    """

    def __init__(self, outcomes=None, delay=0.0):
        self.outcomes = outcomes or {}
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0
        self.closed = False
        self._lock = threading.Lock()

    def lookup(self, isbn):
        with self._lock:
            self.calls.append(isbn)
            attempt = self.calls.count(isbn)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            script = self.outcomes.get(isbn, ["ok"])
            outcome = script[min(attempt, len(script)) - 1]
            if outcome == "raise":
                raise RuntimeError("client bug")
            if outcome == "transient":
                return LookupResult(
                    identifier=isbn,
                    failure=TransientLookupFailure("429", identifier=isbn, status_code=429),
                )
            if outcome == "permanent":
                return LookupResult(
                    identifier=isbn,
                    failure=PermanentLookupFailure("not found", identifier=isbn),
                )
            return LookupResult(
                identifier=isbn,
                metadata=BookMetadata(
                    isbn=isbn,
                    title=f"Title {isbn}",
                    categories=("Fiction",),
                    published_date="2024-05-01",
                    image_links={"thumbnail": f"http://covers/{isbn}.jpg"},
                ),
            )
        finally:
            with self._lock:
                self.active -= 1

    def close(self):
        self.closed = True


class FakeSnapshotStore:
    def __init__(self):
        self.records = {}
        self.list_metadata = {}
        self.reads = 0
        self.indexed = False

    def ensure_indexes(self):
        self.indexed = True

    def get(self, cache_key):
        self.reads += 1
        return self.records.get(cache_key)

    def get_list_metadata(self, week_date):
        return self.list_metadata.get(week_date)

    def put(self, record):
        self.records[record.cache_key] = record

    def put_list_metadata(self, metadata):
        self.list_metadata[metadata.week_date] = metadata


class FakeAggregateStore:
    def __init__(self, docs=None):
        self.docs = list(docs or [])
        self.metrics = {}
        self.regional = {}
        self.replace_calls = 0

    def load_weekly_score_documents(self, year):
        return [dict(d) for d in self.docs if str(d.get("week_date", "")).startswith(str(year))]

    def replace_year_aggregates(self, year, metrics, regional):
        self.replace_calls += 1
        self.metrics[year] = [m.to_document() for m in metrics]
        self.regional[year] = [r.to_document() for r in regional]
        return len(metrics), len(regional)


class FakeLock:
    def __init__(self, held_by=None):
        self.held_by = held_by
        self.released = []

    def acquire(self, name, owner):
        if self.held_by is not None:
            return False
        self.held_by = owner
        return True

    def holder(self, name):
        return self.held_by

    def release(self, name, owner):
        self.released.append((name, owner))
        if self.held_by == owner:
            self.held_by = None


def score_doc(isbn, region, week_date, rank, list_size=10, category="Fiction"):
    return {
        "isbn": isbn,
        "region": region,
        "week_date": week_date,
        "rank": rank,
        "category": category,
        "list_size": list_size,
        "points": 0.0,
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metadata_store():
    return FakeMetadataStore()


@pytest.fixture
def lookup_client():
    return FakeLookupClient()


@pytest.fixture
def snapshot_store():
    return FakeSnapshotStore()
