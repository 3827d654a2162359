"""Three-tier metadata cache.

Lookup order for every identifier:

    1. MemoryCache (Layer-1): process-local, 30 minute TTL
    2. Persistent store (Layer-2): MongoDB, shared by all instances,
       30 day TTL (1 day for "not found" sentinels)
    3. Lookup client (Layer-3): the rate-limited provider, called in
       fixed-size parallel batches with a throttle delay between batches

Provider failures never escape: transient failures are retried with
exponential backoff, and permanent failures or exhausted retries
resolve to the BookMetadata "not found" sentinel, which is cached too.
A persistent store outage degrades resolution to Layer-1 plus Layer-3
instead of failing it.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, fields
from datetime import datetime, timedelta, timezone
from typing import Protocol

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_result,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
)

from bookcharts.config import CacheConfig, LookupConfig
from bookcharts.exceptions import CacheUnavailable, TransientLookupFailure
from bookcharts.models import BookMetadata, CacheEntry, LookupResult

logger = logging.getLogger(__name__)


class PersistentStore(Protocol):
    def get_many(self, isbns: list[str]) -> dict[str, tuple[BookMetadata, datetime]]: ...

    def put(self, isbn: str, value: BookMetadata, fetched_at: datetime) -> None: ...

    def delete(self, isbn: str) -> None: ...

    def delete_older_than(self, cutoff: datetime) -> int: ...


class LookupClient(Protocol):
    def lookup(self, isbn: str) -> LookupResult: ...

    def close(self) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryCache:
    """Layer-1: a TTL map guarded by a lock.

    Entries never outlive the process. Expired entries are dropped
    lazily on read and in bulk by sweep().
    """

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry[BookMetadata]] = {}
        self._lock = threading.Lock()

    def get(self, key: str, now: datetime) -> BookMetadata | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(now):
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: BookMetadata, ttl: timedelta, now: datetime) -> None:
        entry = CacheEntry(
            identifier=key, value=value, fetched_at=now, ttl=ttl, tier="memory"
        )
        with self._lock:
            self._entries[key] = entry

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def sweep(self, now: datetime) -> int:
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@dataclass
class CacheStats:
    memory_hits: int = 0
    persistent_hits: int = 0
    fetched: int = 0
    not_found: int = 0
    batches: int = 0
    store_errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


class MultiTierCache:
    """Single entry point for book metadata lookups.

    Args:
        store: Layer-2 persistent store.
        client: Layer-3 lookup client.
        config: TTLs for each tier.
        lookup_config: Batch size, throttle delay and retry policy.
        clock: Returns the current UTC time. Injected for tests.
        sleep: Used for the inter-batch throttle and retry backoff.
    """

    def __init__(
        self,
        store: PersistentStore,
        client: LookupClient,
        config: CacheConfig | None = None,
        lookup_config: LookupConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._client = client
        self._config = config or CacheConfig()
        self._lookup = lookup_config or LookupConfig()
        self._clock = clock
        self._sleep = sleep
        self._memory = MemoryCache()
        self._stats = CacheStats()
        self._stats_lock = threading.Lock()

    @property
    def stats(self) -> CacheStats:
        with self._stats_lock:
            return CacheStats(**self._stats.as_dict())

    def resolve(
        self,
        identifiers: Iterable[str],
        timeout: float | None = None,
    ) -> dict[str, BookMetadata]:
        """Resolve metadata for every identifier.

        Always returns an entry per distinct identifier: real metadata
        or the not-found sentinel.

        Args:
            identifiers: ISBNs to resolve. Duplicates are looked up once.
            timeout: Seconds allowed for the persistent read and the
                provider lookups together. None waits as long as the
                batches take.

        Raises:
            TimeoutError: If lookups are still outstanding when the
                timeout expires. No partial result is returned.
        """
        wanted = sorted(set(identifiers))
        if not wanted:
            return {}

        deadline = None if timeout is None else time.monotonic() + timeout
        now = self._clock()
        resolved: dict[str, BookMetadata] = {}

        memory_misses = []
        for isbn in wanted:
            cached = self._memory.get(isbn, now)
            if cached is None:
                memory_misses.append(isbn)
            else:
                resolved[isbn] = cached
        self._count("memory_hits", len(resolved))

        persisted = self._read_persistent(memory_misses, now) if memory_misses else {}
        resolved.update(persisted)
        provider_misses = [isbn for isbn in memory_misses if isbn not in persisted]

        if provider_misses:
            if deadline is not None and self._remaining(deadline) == 0:
                raise TimeoutError(
                    f"Metadata lookup timed out before {len(provider_misses)} "
                    "provider lookups started"
                )
            resolved.update(self._fetch_missing(provider_misses, deadline))

        logger.debug(
            "Resolved %d identifiers (%d from provider)",
            len(wanted), len(provider_misses),
        )
        return {isbn: resolved[isbn] for isbn in wanted}

    def resolve_one(self, isbn: str, timeout: float | None = None) -> BookMetadata:
        return self.resolve([isbn], timeout=timeout)[isbn]

    def categories(self, isbns: Iterable[str]) -> dict[str, str]:
        """Map isbn -> first category, "Unknown" when none is known."""
        return {isbn: meta.category for isbn, meta in self.resolve(isbns).items()}

    def covers(self, isbns: Iterable[str]) -> dict[str, str | None]:
        """Map isbn -> best https cover URL, None when there is no cover."""
        return {isbn: meta.cover_url for isbn, meta in self.resolve(isbns).items()}

    def publication_dates(self, isbns: Iterable[str]) -> dict[str, str | None]:
        return {isbn: meta.published_date for isbn, meta in self.resolve(isbns).items()}

    def invalidate(self, isbn: str) -> None:
        """Forget an identifier in both cache tiers."""
        self._memory.delete(isbn)
        try:
            self._store.delete(isbn)
        except CacheUnavailable as exc:
            self._count("store_errors")
            logger.warning("Could not invalidate %s in persistent cache: %s", isbn, exc)

    def sweep(self) -> int:
        """Evict expired Layer-1 entries. Returns the number evicted."""
        evicted = self._memory.sweep(self._clock())
        if evicted:
            logger.info("Evicted %d expired metadata entries", evicted)
        return evicted

    def prune(self, now: datetime | None = None) -> int:
        """Delete Layer-2 entries older than the persistent TTL."""
        now = now or self._clock()
        return self._store.delete_older_than(now - self._config.persistent_ttl)

    def close(self) -> None:
        self._memory.clear()
        self._client.close()

    def __enter__(self) -> MultiTierCache:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _count(self, name: str, amount: int = 1) -> None:
        if not amount:
            return
        with self._stats_lock:
            setattr(self._stats, name, getattr(self._stats, name) + amount)

    def _persistent_ttl(self, value: BookMetadata) -> timedelta:
        return self._config.not_found_ttl if value.not_found else self._config.persistent_ttl

    def _memory_ttl(self, value: BookMetadata) -> timedelta:
        return min(self._config.memory_ttl, self._persistent_ttl(value))

    def _read_persistent(self, isbns: list[str], now: datetime) -> dict[str, BookMetadata]:
        """Unexpired Layer-2 entries for isbns, promoted into Layer-1."""
        try:
            stored = self._store.get_many(isbns)
        except CacheUnavailable as exc:
            self._count("store_errors")
            logger.warning(
                "Persistent cache unavailable for %d identifiers: %s", len(isbns), exc
            )
            return {}

        hits: dict[str, BookMetadata] = {}
        for isbn, (value, fetched_at) in stored.items():
            expires_at = fetched_at + self._persistent_ttl(value)
            if now >= expires_at:
                continue
            # Promote, but never past the Layer-2 expiry.
            ttl = min(self._memory_ttl(value), expires_at - now)
            self._memory.set(isbn, value, ttl, now)
            hits[isbn] = value
        self._count("persistent_hits", len(hits))
        return hits

    def _remember(self, isbn: str, value: BookMetadata, now: datetime) -> None:
        self._memory.set(isbn, value, self._memory_ttl(value), now)
        try:
            self._store.put(isbn, value, now)
        except CacheUnavailable as exc:
            self._count("store_errors")
            logger.warning("Could not persist metadata for %s: %s", isbn, exc)

    def _fetch_missing(
        self,
        isbns: list[str],
        deadline: float | None,
    ) -> dict[str, BookMetadata]:
        batch_size = max(self._lookup.batch_size, 1)
        batches = [isbns[i:i + batch_size] for i in range(0, len(isbns), batch_size)]
        fetched: dict[str, BookMetadata] = {}

        logger.info(
            "Fetching %d identifiers from provider in %d batches",
            len(isbns), len(batches),
        )
        executor = ThreadPoolExecutor(
            max_workers=batch_size, thread_name_prefix="metadata-lookup"
        )
        abandoned = threading.Event()
        try:
            for index, batch in enumerate(batches):
                if index:
                    self._sleep(self._lookup.throttle_delay)

                futures: dict[Future[BookMetadata], str] = {
                    executor.submit(self._fetch_with_retry, isbn, abandoned): isbn
                    for isbn in batch
                }
                _, pending = wait(futures, timeout=self._remaining(deadline))
                if pending:
                    raise TimeoutError(
                        f"Metadata lookup timed out with {len(pending)} "
                        f"of {len(isbns)} identifiers outstanding"
                    )
                self._count("batches")

                now = self._clock()
                for future, isbn in futures.items():
                    exc = future.exception()
                    if exc is not None:
                        logger.error("Lookup for %s raised: %s", isbn, exc)
                        value = BookMetadata.missing(isbn)
                    else:
                        value = future.result()
                    self._count("not_found" if value.not_found else "fetched")
                    self._remember(isbn, value, now)
                    fetched[isbn] = value
        finally:
            # Workers still running stop at their next attempt.
            abandoned.set()
            executor.shutdown(wait=False, cancel_futures=True)

        return fetched

    def _fetch_with_retry(self, isbn: str, abandoned: threading.Event) -> BookMetadata:
        def attempt() -> LookupResult:
            if abandoned.is_set():
                return LookupResult(
                    identifier=isbn,
                    failure=TransientLookupFailure("Lookup abandoned", identifier=isbn),
                )
            return self._client.lookup(isbn)

        retrying = Retrying(
            stop=(
                stop_after_attempt(max(self._lookup.max_attempts, 1))
                | stop_when_event_set(abandoned)
            ),
            wait=wait_exponential(
                multiplier=self._lookup.backoff_initial,
                max=self._lookup.backoff_max,
            ),
            retry=retry_if_result(lambda result: result.transient),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            retry_error_callback=lambda state: state.outcome.result(),
        )
        result: LookupResult = retrying(attempt)
        if result.ok:
            return result.metadata
        logger.info("Resolving %s to not-found: %s", isbn, result.failure)
        return BookMetadata.missing(isbn)

    @staticmethod
    def _remaining(deadline: float | None) -> float | None:
        if deadline is None:
            return None
        return max(deadline - time.monotonic(), 0.0)
