"""Immutable data models for bookcharts.

All dataclasses are frozen (immutable) to prevent accidental mutation.
Models that are persisted have a to_document() method that converts
them to a dict suitable for MongoDB insertion, and a from_document()
classmethod where they are read back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Generic, TypeVar

from bookcharts.exceptions import LookupFailure, SnapshotNotFound, TransientLookupFailure

T = TypeVar("T")

UNKNOWN_CATEGORY = "Unknown"
IMAGE_SIZES = ("large", "medium", "small", "thumbnail")


def _https(url: str | None) -> str | None:
    if url and url.startswith("http:"):
        return "https:" + url[len("http:"):]
    return url


@dataclass(frozen=True)
class BookMetadata:
    """Book metadata as returned by the provider.

    The "not found" sentinel is a BookMetadata with not_found=True and
    no other fields; it is cached like real metadata so known-missing
    identifiers are not looked up again until it expires.

    Attributes:
        isbn: ISBN-10 or ISBN-13 the lookup was made for.
        title: Volume title.
        authors: Author names in provider order.
        publisher: Publisher name.
        published_date: Provider date string (YYYY, YYYY-MM or YYYY-MM-DD).
        description: Volume description.
        page_count: Number of pages.
        categories: Provider categories, most specific first.
        image_links: Cover URLs keyed by size (thumbnail, small, ...).
        not_found: True for the sentinel.
    """

    isbn: str
    title: str | None = None
    authors: tuple[str, ...] = ()
    publisher: str | None = None
    published_date: str | None = None
    description: str | None = None
    page_count: int | None = None
    categories: tuple[str, ...] = ()
    image_links: dict[str, str] = field(default_factory=dict)
    not_found: bool = False

    @classmethod
    def missing(cls, isbn: str) -> BookMetadata:
        """Build the "not found" sentinel for an identifier."""
        return cls(isbn=isbn, not_found=True)

    @classmethod
    def from_volume_info(cls, isbn: str, volume_info: dict[str, Any]) -> BookMetadata:
        """Build metadata from a Google Books volumeInfo object.

        Image links are rewritten from http:// to https:// so covers
        don't trigger mixed content warnings.
        """
        links = volume_info.get("imageLinks") or {}
        image_links = {
            size: _https(url)
            for size, url in links.items()
            if size in IMAGE_SIZES and url
        }
        return cls(
            isbn=isbn,
            title=volume_info.get("title"),
            authors=tuple(volume_info.get("authors") or ()),
            publisher=volume_info.get("publisher"),
            published_date=volume_info.get("publishedDate"),
            description=volume_info.get("description"),
            page_count=volume_info.get("pageCount"),
            categories=tuple(volume_info.get("categories") or ()),
            image_links=image_links,
        )

    @property
    def category(self) -> str:
        if self.not_found or not self.categories:
            return UNKNOWN_CATEGORY
        return self.categories[0]

    @property
    def cover_url(self) -> str | None:
        """Best available cover, preferring larger images."""
        for size in IMAGE_SIZES:
            url = self.image_links.get(size)
            if url:
                return _https(url)
        return None

    def to_document(self) -> dict:
        """Convert to a MongoDB-ready dict. The sentinel stores only the flag."""
        if self.not_found:
            return {"isbn": self.isbn, "not_found": True}
        return {
            "isbn": self.isbn,
            "title": self.title,
            "authors": list(self.authors),
            "publisher": self.publisher,
            "published_date": self.published_date,
            "description": self.description,
            "page_count": self.page_count,
            "categories": list(self.categories),
            "image_links": dict(self.image_links),
        }

    @classmethod
    def from_document(cls, doc: dict) -> BookMetadata:
        if doc.get("not_found"):
            return cls.missing(doc["isbn"])
        return cls(
            isbn=doc["isbn"],
            title=doc.get("title"),
            authors=tuple(doc.get("authors") or ()),
            publisher=doc.get("publisher"),
            published_date=doc.get("published_date"),
            description=doc.get("description"),
            page_count=doc.get("page_count"),
            categories=tuple(doc.get("categories") or ()),
            image_links=dict(doc.get("image_links") or {}),
        )


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A cached value and when it stops being valid.

    Attributes:
        identifier: Cache key (an ISBN for metadata).
        value: The cached value.
        fetched_at: UTC timestamp of the fetch that produced the value.
        ttl: How long the value stays valid after fetched_at.
        tier: "memory" or "persistent".
    """

    identifier: str
    value: T
    fetched_at: datetime
    ttl: timedelta
    tier: str

    @property
    def expires_at(self) -> datetime:
        return self.fetched_at + self.ttl

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class LookupResult:
    """Outcome of one provider call: metadata or a classified failure."""

    identifier: str
    metadata: BookMetadata | None = None
    failure: LookupFailure | None = None

    @property
    def ok(self) -> bool:
        return self.metadata is not None

    @property
    def transient(self) -> bool:
        return isinstance(self.failure, TransientLookupFailure)


@dataclass(frozen=True)
class ListEntry:
    """One line of a regional weekly bestseller list, as ingested."""

    isbn: str
    rank: int
    title: str = ""
    author: str = ""
    category: str | None = None


@dataclass(frozen=True)
class WeeklyScore:
    """Points earned by one book on one region's list in one week.

    Attributes:
        isbn: Book identifier.
        region: Region code (e.g. "PNBA").
        week_date: ISO date of the list week (e.g. "2025-11-05").
        rank: Position on the category list, 1-based.
        category: List category ("General" when the list had none).
        list_size: Number of books on that category list.
        points: Score for rank within list_size.
    """

    isbn: str
    region: str
    week_date: str
    rank: int
    category: str | None
    list_size: int
    points: float

    @property
    def year(self) -> int:
        return int(self.week_date[:4])

    def to_document(self) -> dict:
        return {
            "isbn": self.isbn,
            "region": self.region,
            "week_date": self.week_date,
            "rank": self.rank,
            "category": self.category,
            "list_size": self.list_size,
            "points": self.points,
        }

    @classmethod
    def from_document(cls, doc: dict) -> WeeklyScore:
        return cls(
            isbn=doc["isbn"],
            region=doc["region"],
            week_date=doc["week_date"],
            rank=int(doc["rank"]),
            category=doc.get("category"),
            list_size=int(doc["list_size"]),
            points=float(doc.get("points", 0.0)),
        )


@dataclass(frozen=True)
class BookPerformanceMetrics:
    """One book's aggregate performance for one year."""

    isbn: str
    year: int
    total_score: float
    weeks_on_chart: int
    regions_appeared: int
    max_weekly_score: float
    avg_weekly_score: float
    avg_score_per_week: float
    rsi_variance: float

    def to_document(self) -> dict:
        return {
            "isbn": self.isbn,
            "year": self.year,
            "total_score": self.total_score,
            "weeks_on_chart": self.weeks_on_chart,
            "regions_appeared": self.regions_appeared,
            "max_weekly_score": self.max_weekly_score,
            "avg_weekly_score": self.avg_weekly_score,
            "avg_score_per_week": self.avg_score_per_week,
            "rsi_variance": self.rsi_variance,
        }

    @classmethod
    def from_document(cls, doc: dict) -> BookPerformanceMetrics:
        return cls(
            isbn=doc["isbn"],
            year=int(doc["year"]),
            total_score=float(doc["total_score"]),
            weeks_on_chart=int(doc["weeks_on_chart"]),
            regions_appeared=int(doc["regions_appeared"]),
            max_weekly_score=float(doc["max_weekly_score"]),
            avg_weekly_score=float(doc["avg_weekly_score"]),
            avg_score_per_week=float(doc["avg_score_per_week"]),
            rsi_variance=float(doc["rsi_variance"]),
        )


@dataclass(frozen=True)
class RegionalPerformance:
    """One book's performance in one region for one year.

    Attributes:
        rsi: Regional Strength Index, regional_score / total_score.
    """

    isbn: str
    region: str
    year: int
    regional_score: float
    rsi: float
    weeks_on_chart: int
    best_rank: int
    avg_rank: float
    avg_score_per_week: float

    def to_document(self) -> dict:
        return {
            "isbn": self.isbn,
            "region": self.region,
            "year": self.year,
            "regional_score": self.regional_score,
            "regional_strength_index": self.rsi,
            "weeks_on_chart": self.weeks_on_chart,
            "best_rank": self.best_rank,
            "avg_rank": self.avg_rank,
            "avg_score_per_week": self.avg_score_per_week,
        }

    @classmethod
    def from_document(cls, doc: dict) -> RegionalPerformance:
        return cls(
            isbn=doc["isbn"],
            region=doc["region"],
            year=int(doc["year"]),
            regional_score=float(doc["regional_score"]),
            rsi=float(doc["regional_strength_index"]),
            weeks_on_chart=int(doc["weeks_on_chart"]),
            best_rank=int(doc["best_rank"]),
            avg_rank=float(doc["avg_rank"]),
            avg_score_per_week=float(doc["avg_score_per_week"]),
        )


@dataclass(frozen=True)
class BookRanking:
    """A book's entry in one year-end ranking category."""

    isbn: str
    title: str
    author: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_document(self) -> dict:
        return {
            "isbn": self.isbn,
            "title": self.title,
            "author": self.author,
            "score": self.score,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_document(cls, doc: dict) -> BookRanking:
        return cls(
            isbn=doc["isbn"],
            title=doc.get("title", "Unknown"),
            author=doc.get("author", "Unknown"),
            score=float(doc["score"]),
            metadata=dict(doc.get("metadata") or {}),
        )


@dataclass(frozen=True)
class YearEndRankings:
    """All four ranking categories for one year."""

    year: int
    regional_top: dict[str, tuple[BookRanking, ...]]
    most_regional: tuple[BookRanking, ...]
    most_national: tuple[BookRanking, ...]
    most_efficient: tuple[BookRanking, ...]
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_document(self) -> dict:
        return {
            "year": self.year,
            "generated_at": self.generated_at,
            "regional_top": {
                region: [r.to_document() for r in rankings]
                for region, rankings in sorted(self.regional_top.items())
            },
            "most_regional": [r.to_document() for r in self.most_regional],
            "most_national": [r.to_document() for r in self.most_national],
            "most_efficient": [r.to_document() for r in self.most_efficient],
        }

    @classmethod
    def from_document(cls, doc: dict) -> YearEndRankings:
        def _rankings(key: str) -> tuple[BookRanking, ...]:
            return tuple(BookRanking.from_document(d) for d in doc.get(key) or ())

        return cls(
            year=int(doc["year"]),
            regional_top={
                region: tuple(BookRanking.from_document(d) for d in docs)
                for region, docs in (doc.get("regional_top") or {}).items()
            },
            most_regional=_rankings("most_regional"),
            most_national=_rankings("most_national"),
            most_efficient=_rankings("most_efficient"),
            generated_at=doc.get("generated_at") or datetime.now(timezone.utc),
        )


@dataclass(frozen=True)
class SnapshotCacheRecord:
    """A cached weekly bestseller payload, written by the ingestion job."""

    cache_key: str
    payload: Any
    last_fetched_at: datetime

    def to_document(self) -> dict:
        return {
            "cache_key": self.cache_key,
            "data": self.payload,
            "last_fetched": self.last_fetched_at,
        }

    @classmethod
    def from_document(cls, doc: dict) -> SnapshotCacheRecord:
        last_fetched = doc["last_fetched"]
        if last_fetched.tzinfo is None:
            # pymongo returns naive UTC datetimes by default
            last_fetched = last_fetched.replace(tzinfo=timezone.utc)
        return cls(
            cache_key=doc["cache_key"],
            payload=doc.get("data"),
            last_fetched_at=last_fetched,
        )


@dataclass(frozen=True)
class ListMetadata:
    """Ingestion-time facts about one week's list."""

    week_date: str
    book_count: int | None = None
    category_count: int | None = None
    source_url: str | None = None
    is_current_week: bool = False

    def to_document(self) -> dict:
        return {
            "week_date": self.week_date,
            "book_count": self.book_count,
            "category_count": self.category_count,
            "source_url": self.source_url,
            "is_current_week": self.is_current_week,
        }

    @classmethod
    def from_document(cls, doc: dict) -> ListMetadata:
        return cls(
            week_date=doc["week_date"],
            book_count=doc.get("book_count"),
            category_count=doc.get("category_count"),
            source_url=doc.get("source_url"),
            is_current_week=bool(doc.get("is_current_week", False)),
        )


@dataclass(frozen=True)
class SnapshotMetadata:
    """Freshness information returned alongside a snapshot payload."""

    current_week: str
    comparison_week: str
    cache_status: str
    next_refresh: datetime
    last_fetched: datetime | None = None
    list_metadata: ListMetadata | None = None

    def to_dict(self) -> dict:
        """Serialize for the read endpoint (camelCase keys, ISO timestamps)."""
        listing = self.list_metadata
        return {
            "currentWeek": self.current_week,
            "comparisonWeek": self.comparison_week,
            "lastFetched": self.last_fetched.isoformat() if self.last_fetched else None,
            "nextRefresh": self.next_refresh.isoformat(),
            "cacheStatus": self.cache_status,
            "bookCount": listing.book_count if listing else None,
            "categoryCount": listing.category_count if listing else None,
            "sourceUrl": listing.source_url if listing else None,
            "isCurrentWeek": listing.is_current_week if listing else False,
        }


@dataclass(frozen=True)
class SnapshotResult:
    """Result of a snapshot read.

    Attributes:
        status: "fresh", "stale", "unavailable", "not_modified" or "not_found".
        cache_key: Store key derived from the two week dates.
        etag: Quoted entity tag derived from the two week dates.
        payload: Snapshot data; None for not_modified and not_found.
        metadata: Freshness metadata; None for not_modified.
    """

    status: str
    cache_key: str
    etag: str
    payload: Any = None
    metadata: SnapshotMetadata | None = None

    @property
    def found(self) -> bool:
        return self.status not in ("not_found", "not_modified")

    def require_payload(self) -> Any:
        """Return the payload, raising SnapshotNotFound on a cache miss."""
        if self.status == "not_found":
            raise SnapshotNotFound(self.cache_key)
        return self.payload


@dataclass(frozen=True)
class AggregationResult:
    """Output of folding one year's weekly scores.

    Attributes:
        year: Calendar year aggregated.
        metrics: Per-book metrics, sorted by isbn.
        regional: Per-(book, region) rows, sorted by (isbn, region).
        rows_read: Weekly score rows loaded for the year.
        rows_rejected: Rows dropped as malformed.
        errors: Messages for each rejected row.
    """

    year: int
    metrics: tuple[BookPerformanceMetrics, ...]
    regional: tuple[RegionalPerformance, ...]
    rows_read: int = 0
    rows_rejected: int = 0
    errors: tuple[str, ...] = ()

    @property
    def books_processed(self) -> int:
        return len(self.metrics)


@dataclass(frozen=True)
class AggregationRun:
    """Audit record for one aggregation invocation.

    Stored in the aggregation_runs collection so every execution is
    traceable.
    """

    run_id: str
    year: int
    started_at: datetime
    completed_at: datetime
    status: str
    metrics_written: int = 0
    regional_written: int = 0
    rows_rejected: int = 0
    errors: tuple[str, ...] = ()

    def to_document(self) -> dict:
        return {
            "run_id": self.run_id,
            "year": self.year,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "status": self.status,
            "metrics_written": self.metrics_written,
            "regional_written": self.regional_written,
            "rows_rejected": self.rows_rejected,
            "errors": list(self.errors),
        }
