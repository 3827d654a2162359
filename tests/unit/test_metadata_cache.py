import math
import time
from datetime import timedelta

import pytest

from bookcharts.cache.metadata_cache import MemoryCache, MultiTierCache
from bookcharts.config import CacheConfig, LookupConfig
from bookcharts.models import BookMetadata
from conftest import NOW, FakeLookupClient


def _make_cache(store, client, clock, sleeps=None, **lookup_overrides):
    lookup = LookupConfig(**{"batch_size": 3, "throttle_delay": 1.0, **lookup_overrides})
    recorded = sleeps if sleeps is not None else []
    return MultiTierCache(
        store,
        client,
        config=CacheConfig(),
        lookup_config=lookup,
        clock=clock,
        sleep=recorded.append,
    )


class TestMemoryCache:
    def test_get_returns_value_before_expiry(self):
        cache = MemoryCache()
        meta = BookMetadata(isbn="1")
        cache.set("1", meta, timedelta(minutes=30), NOW)
        assert cache.get("1", NOW + timedelta(minutes=29)) == meta

    def test_get_drops_expired_entry(self):
        cache = MemoryCache()
        cache.set("1", BookMetadata(isbn="1"), timedelta(minutes=30), NOW)
        assert cache.get("1", NOW + timedelta(minutes=30)) is None
        assert len(cache) == 0

    def test_sweep_evicts_only_expired(self):
        cache = MemoryCache()
        cache.set("old", BookMetadata(isbn="old"), timedelta(minutes=1), NOW)
        cache.set("new", BookMetadata(isbn="new"), timedelta(hours=1), NOW)
        assert cache.sweep(NOW + timedelta(minutes=5)) == 1
        assert len(cache) == 1


class TestResolve:
    def test_returns_entry_for_every_identifier(self, metadata_store, lookup_client, clock):
        cache = _make_cache(metadata_store, lookup_client, clock)
        result = cache.resolve({"a", "b", "c"})
        assert set(result) == {"a", "b", "c"}
        assert all(not meta.not_found for meta in result.values())

    def test_empty_input(self, metadata_store, lookup_client, clock):
        cache = _make_cache(metadata_store, lookup_client, clock)
        assert cache.resolve([]) == {}
        assert lookup_client.calls == []

    def test_second_resolve_makes_no_external_calls(
        self, metadata_store, lookup_client, clock
    ):
        cache = _make_cache(metadata_store, lookup_client, clock)
        first = cache.resolve(["a", "b", "c", "d"])
        calls_after_first = len(lookup_client.calls)

        second = cache.resolve(["a", "b", "c", "d"])

        assert len(lookup_client.calls) == calls_after_first
        assert first == second
        assert cache.stats.memory_hits == 4

    def test_duplicates_looked_up_once(self, metadata_store, lookup_client, clock):
        cache = _make_cache(metadata_store, lookup_client, clock)
        cache.resolve(["a", "a", "b", "a"])
        assert sorted(lookup_client.calls) == ["a", "b"]

    def test_writes_through_to_persistent_store(
        self, metadata_store, lookup_client, clock
    ):
        cache = _make_cache(metadata_store, lookup_client, clock)
        cache.resolve(["a"])
        value, fetched_at = metadata_store.entries["a"]
        assert value.title == "Title a"
        assert fetched_at == NOW

    def test_persistent_hit_is_promoted(self, metadata_store, lookup_client, clock):
        stored = BookMetadata(isbn="a", title="Stored")
        metadata_store.entries["a"] = (stored, NOW - timedelta(days=2))
        cache = _make_cache(metadata_store, lookup_client, clock)

        assert cache.resolve(["a"])["a"] == stored
        metadata_store.available = False
        assert cache.resolve(["a"])["a"] == stored
        assert lookup_client.calls == []
        assert cache.stats.persistent_hits == 1
        assert cache.stats.memory_hits == 1

    def test_expired_persistent_entry_is_a_miss(
        self, metadata_store, lookup_client, clock
    ):
        metadata_store.entries["a"] = (
            BookMetadata(isbn="a", title="Old"),
            NOW - timedelta(days=31),
        )
        cache = _make_cache(metadata_store, lookup_client, clock)
        assert cache.resolve(["a"])["a"].title == "Title a"
        assert lookup_client.calls == ["a"]

    def test_memory_entry_expires_after_ttl(self, metadata_store, lookup_client, clock):
        cache = _make_cache(metadata_store, lookup_client, clock)
        cache.resolve(["a"])
        metadata_store.entries.clear()
        clock.advance(minutes=31)
        cache.resolve(["a"])
        assert lookup_client.calls == ["a", "a"]

    def test_persistent_store_read_once_per_call(
        self, metadata_store, lookup_client, clock
    ):
        metadata_store.entries["a"] = (BookMetadata(isbn="a"), NOW - timedelta(days=1))
        cache = _make_cache(metadata_store, lookup_client, clock)

        cache.resolve([f"isbn-{i}" for i in range(20)] + ["a"])

        assert metadata_store.reads == 1
        assert "a" not in lookup_client.calls
        assert len(lookup_client.calls) == 20

    def test_memory_hits_skip_persistent_store(
        self, metadata_store, lookup_client, clock
    ):
        cache = _make_cache(metadata_store, lookup_client, clock)
        cache.resolve(["a", "b"])
        cache.resolve(["a", "b"])
        assert metadata_store.reads == 1


class TestFailures:
    def test_permanent_failure_resolves_to_sentinel(self, metadata_store, clock):
        client = FakeLookupClient({"bad": ["permanent"]})
        cache = _make_cache(metadata_store, client, clock)

        result = cache.resolve(["good", "bad"])

        assert result["bad"].not_found is True
        assert result["good"].not_found is False
        assert client.calls.count("bad") == 1

    def test_transient_failure_is_retried(self, metadata_store, clock):
        client = FakeLookupClient({"a": ["transient", "transient", "ok"]})
        sleeps = []
        cache = _make_cache(metadata_store, client, clock, sleeps=sleeps, max_attempts=3)

        result = cache.resolve(["a"])

        assert result["a"].title == "Title a"
        assert client.calls.count("a") == 3
        assert sleeps == [1.0, 2.0]

    def test_exhausted_retries_resolve_to_sentinel(self, metadata_store, clock):
        client = FakeLookupClient({"a": ["transient"]})
        cache = _make_cache(metadata_store, client, clock, max_attempts=3)

        result = cache.resolve(["a"])

        assert result["a"].not_found is True
        assert client.calls.count("a") == 3

    def test_client_exception_does_not_fail_batch(self, metadata_store, clock):
        client = FakeLookupClient({"boom": ["raise"]})
        cache = _make_cache(metadata_store, client, clock)

        result = cache.resolve(["boom", "fine"])

        assert result["boom"].not_found is True
        assert result["fine"].not_found is False

    def test_sentinel_is_cached_with_short_ttl(self, metadata_store, clock):
        client = FakeLookupClient({"bad": ["permanent"]})
        cache = _make_cache(metadata_store, client, clock)
        cache.resolve(["bad"])
        cache.resolve(["bad"])
        assert client.calls.count("bad") == 1

        cache.sweep()
        clock.advance(days=1, minutes=1)
        cache.resolve(["bad"])
        assert client.calls.count("bad") == 2

    def test_persistent_store_outage_degrades(self, metadata_store, lookup_client, clock):
        metadata_store.available = False
        cache = _make_cache(metadata_store, lookup_client, clock)

        result = cache.resolve(["a", "b"])

        assert set(result) == {"a", "b"}
        assert cache.stats.store_errors == 3  # one batched read, two writes
        assert cache.resolve(["a", "b"]) == result
        assert len(lookup_client.calls) == 2


class TestBatching:
    @pytest.mark.parametrize("count,batch_size", [(7, 3), (6, 3), (1, 3), (10, 2)])
    def test_batch_count(self, metadata_store, clock, count, batch_size):
        client = FakeLookupClient()
        sleeps = []
        cache = _make_cache(
            metadata_store, client, clock, sleeps=sleeps, batch_size=batch_size
        )

        cache.resolve([f"isbn-{i}" for i in range(count)])

        expected = math.ceil(count / batch_size)
        assert cache.stats.batches == expected
        assert sleeps == [1.0] * (expected - 1)

    def test_concurrency_bounded_by_batch_size(self, metadata_store, clock):
        client = FakeLookupClient(delay=0.02)
        cache = _make_cache(metadata_store, client, clock, batch_size=3)

        cache.resolve([f"isbn-{i}" for i in range(9)])

        assert 1 <= client.max_active <= 3
        assert len(client.calls) == 9

    def test_timeout_fails_whole_call(self, metadata_store, clock):
        client = FakeLookupClient(delay=0.5)
        cache = _make_cache(metadata_store, client, clock, batch_size=2)

        with pytest.raises(TimeoutError):
            cache.resolve(["a", "b", "c"], timeout=0.05)

    def test_expired_deadline_skips_provider(self, metadata_store, clock):
        client = FakeLookupClient()
        cache = _make_cache(metadata_store, client, clock)

        with pytest.raises(TimeoutError):
            cache.resolve(["a", "b"], timeout=0)
        assert client.calls == []

    def test_timeout_stops_outstanding_retries(self, metadata_store, clock):
        client = FakeLookupClient({"a": ["transient"]}, delay=0.2)
        cache = _make_cache(metadata_store, client, clock, batch_size=1, max_attempts=3)

        with pytest.raises(TimeoutError):
            cache.resolve(["a"], timeout=0.05)
        time.sleep(0.6)

        assert client.calls == ["a"]


class TestProjections:
    def test_categories_and_covers(self, metadata_store, clock):
        client = FakeLookupClient({"missing": ["permanent"]})
        cache = _make_cache(metadata_store, client, clock)

        categories = cache.categories(["a", "missing"])
        covers = cache.covers(["a", "missing"])
        dates = cache.publication_dates(["a"])

        assert categories == {"a": "Fiction", "missing": "Unknown"}
        assert covers == {"a": "https://covers/a.jpg", "missing": None}
        assert dates == {"a": "2024-05-01"}
        assert len(client.calls) == 2


class TestLifecycle:
    def test_invalidate_forces_refetch(self, metadata_store, lookup_client, clock):
        cache = _make_cache(metadata_store, lookup_client, clock)
        cache.resolve(["a"])
        cache.invalidate("a")
        assert "a" not in metadata_store.entries
        cache.resolve(["a"])
        assert lookup_client.calls == ["a", "a"]

    def test_prune_deletes_old_persistent_entries(
        self, metadata_store, lookup_client, clock
    ):
        metadata_store.entries["old"] = (BookMetadata(isbn="old"), NOW - timedelta(days=40))
        metadata_store.entries["new"] = (BookMetadata(isbn="new"), NOW - timedelta(days=1))
        cache = _make_cache(metadata_store, lookup_client, clock)

        assert cache.prune() == 1
        assert set(metadata_store.entries) == {"new"}

    def test_close_closes_client(self, metadata_store, lookup_client, clock):
        with _make_cache(metadata_store, lookup_client, clock) as cache:
            cache.resolve(["a"])
        assert lookup_client.closed is True
