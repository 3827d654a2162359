"""Exception hierarchy for bookcharts.

Exception Hierarchy:
    BookchartsError (base)
    ├── LookupFailure - metadata provider call failed
    │   ├── TransientLookupFailure - network error or rate limit, retried
    │   └── PermanentLookupFailure - not found or malformed, never retried
    ├── AggregationInputError - malformed weekly score row
    ├── CacheUnavailable - persistent store unreachable
    ├── SnapshotNotFound - no ingested snapshot for the requested week
    └── AggregationLocked - another aggregation run holds the year lock

Lookup failures are values as much as exceptions: the lookup client
returns them inside a LookupResult instead of raising, and the
metadata cache decides whether to retry or substitute the sentinel.
"""

from __future__ import annotations

from typing import Any


class BookchartsError(Exception):
    """Base exception for all bookcharts errors."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class LookupFailure(BookchartsError):
    """A single metadata lookup did not produce metadata."""

    def __init__(
        self,
        message: str,
        *,
        identifier: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.identifier = identifier
        self.status_code = status_code


class TransientLookupFailure(LookupFailure):
    """Rate limited, server error, or network failure. Worth retrying."""


class PermanentLookupFailure(LookupFailure):
    """Identifier not found or response malformed. Retrying won't help."""


class AggregationInputError(BookchartsError, ValueError):
    """A weekly score observation is outside its valid bounds.

    Raised by the scoring engine for out-of-range rank/list size. The
    aggregator logs it and drops that row's contribution.
    """


class CacheUnavailable(BookchartsError):
    """The persistent cache store could not be reached."""


class SnapshotNotFound(BookchartsError):
    """No snapshot has been ingested for the requested week pair."""

    def __init__(self, cache_key: str) -> None:
        super().__init__(
            "Bestseller data has not been fetched yet. Please try again later.",
            details={"cache_key": cache_key},
        )
        self.cache_key = cache_key


class AggregationLocked(BookchartsError):
    """An aggregation run for the same year is already in progress."""

    def __init__(self, year: int, holder: str | None = None) -> None:
        super().__init__(
            f"Aggregation for {year} is already running",
            details={"year": year, "holder": holder},
        )
        self.year = year
        self.holder = holder
