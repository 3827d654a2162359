"""AWS Lambda entry points for bookcharts.

Thin adapters over the core operations:

    snapshot_handler     GET weekly bestseller snapshot (API Gateway)
    metadata_handler     GET book metadata for a set of ISBNs (API Gateway)
    aggregation_handler  nightly aggregation + year-end rankings (EventBridge)

The aggregation run is:

    1. Load config from environment variables
    2. Take the per-year job lock
    3. Rebuild book and regional aggregates for the year, within the
       Lambda's remaining time
    4. Build and store the year-end rankings
    5. Prune expired metadata cache entries
    6. Log an audit record of the run

All logging is structured JSON for CloudWatch readability.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import date, datetime, timezone
from email.utils import format_datetime
from typing import Any

from pymongo.errors import PyMongoError

from bookcharts.cache.metadata_cache import MultiTierCache
from bookcharts.cache.snapshot_cache import (
    NOT_FOUND,
    NOT_MODIFIED,
    BestsellerSnapshotCache,
)
from bookcharts.config import AppConfig, MongoConfig, load_config
from bookcharts.exceptions import AggregationLocked, CacheUnavailable
from bookcharts.lookup.google_books import GoogleBooksClient
from bookcharts.models import AggregationResult, AggregationRun
from bookcharts.scoring.aggregator import MetricsAggregator
from bookcharts.scoring.rankings import RankingCategorizer
from bookcharts.storage.cache_store import MetadataCacheStore, SnapshotStore
from bookcharts.storage.locks import JobLock
from bookcharts.storage.mongo_client import get_database
from bookcharts.storage.repository import ScoresRepository

logger = logging.getLogger()
logger.setLevel(logging.INFO)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, content-type, if-none-match",
}
MAX_METADATA_ISBNS = 100
METADATA_TIMEOUT_SECONDS = 25.0
# Left for the rankings write and the audit record.
AGGREGATION_TIMEOUT_MARGIN_SECONDS = 10.0


class _JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON for CloudWatch."""

    def format(self, record: logging.LogRecord) -> str:
        """Serialize the log record to a JSON string."""
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


_handler = logging.StreamHandler()
_handler.setFormatter(_JSONFormatter())
if not logger.handlers:
    logger.addHandler(_handler)

_metadata_cache: MultiTierCache | None = None


def _response(
    status_code: int,
    body: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> dict[str, Any]:
    response: dict[str, Any] = {
        "statusCode": status_code,
        "headers": {**CORS_HEADERS, **(headers or {})},
    }
    if body is not None:
        response["headers"]["Content-Type"] = "application/json"
        response["body"] = json.dumps(body, default=str)
    else:
        response["body"] = ""
    return response


def _parse_week(value: str | None, name: str) -> date | None:
    if not value or value == "current":
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValueError(f"{name} must be YYYY-MM-DD, got '{value}'") from None


def snapshot_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """Serve the weekly bestseller snapshot.

    Query parameters:
        week: List week (YYYY-MM-DD or "current"; default current).
        compare: Comparison week (default: one week before `week`).

    Honors If-None-Match: a matching ETag gets a 304 with no body.
    A week that was never ingested gets a 404 with a "try again later"
    message.
    """
    if event.get("httpMethod") == "OPTIONS":
        return _response(200, headers={})

    params = event.get("queryStringParameters") or {}
    headers = {k.lower(): v for k, v in (event.get("headers") or {}).items()}

    try:
        week = _parse_week(params.get("week"), "week")
        compare = _parse_week(params.get("compare"), "compare")
    except ValueError as exc:
        return _response(400, {"error": "Invalid parameters", "message": str(exc)})

    try:
        config = load_config()
    except ValueError as exc:
        logger.error("Configuration error: %s", exc)
        return _response(500, {"error": str(exc)})

    try:
        store = SnapshotStore(get_database(config.mongo), config.mongo)
        cache = BestsellerSnapshotCache(store, config.snapshot)
        result = cache.get_snapshot(week, compare, headers.get("if-none-match"))
    except CacheUnavailable as exc:
        logger.error("Snapshot read failed: %s", exc)
        return _response(500, {"error": "Internal server error", "message": exc.message})

    if result.status == NOT_MODIFIED:
        return _response(304, headers={"ETag": result.etag})

    if result.status == NOT_FOUND:
        return _response(404, {
            "error": "Data not available",
            "message": "Bestseller data has not been fetched yet. Please try again later.",
            "cacheKey": result.cache_key,
        })

    response_headers = {
        "Cache-Control": "public, max-age=3600",
        "ETag": result.etag,
    }
    if result.metadata.last_fetched is not None:
        response_headers["Last-Modified"] = format_datetime(
            result.metadata.last_fetched.astimezone(timezone.utc), usegmt=True
        )
    return _response(
        200,
        {"data": result.payload, "metadata": result.metadata.to_dict()},
        headers=response_headers,
    )


def _get_metadata_cache(config: AppConfig) -> MultiTierCache:
    """Build the metadata cache once per Lambda container."""
    global _metadata_cache
    if _metadata_cache is None:
        store = MetadataCacheStore(get_database(config.mongo), config.mongo)
        try:
            store.ensure_indexes()
        except CacheUnavailable as exc:
            logger.warning("Metadata cache indexes not ensured: %s", exc)
        _metadata_cache = MultiTierCache(
            store,
            GoogleBooksClient(config.lookup),
            config=config.cache,
            lookup_config=config.lookup,
        )
    return _metadata_cache


def metadata_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """Resolve category, cover and publication date for a set of ISBNs.

    Query parameters:
        isbns: Comma-separated ISBNs (at most 100).

    Every requested ISBN gets an entry; ISBNs the provider doesn't know
    come back with notFound=true.
    """
    params = event.get("queryStringParameters") or {}
    isbns = [i.strip() for i in (params.get("isbns") or "").split(",") if i.strip()]
    if not isbns:
        return _response(400, {"error": "isbns parameter is required"})
    if len(set(isbns)) > MAX_METADATA_ISBNS:
        return _response(
            400, {"error": f"At most {MAX_METADATA_ISBNS} isbns per request"}
        )

    try:
        config = load_config()
    except ValueError as exc:
        logger.error("Configuration error: %s", exc)
        return _response(500, {"error": str(exc)})

    cache = _get_metadata_cache(config)
    cache.sweep()
    try:
        resolved = cache.resolve(isbns, timeout=METADATA_TIMEOUT_SECONDS)
    except TimeoutError as exc:
        logger.error("Metadata resolve timed out: %s", exc)
        return _response(504, {"error": "Metadata lookup timed out"})

    return _response(200, {
        "books": {
            isbn: {
                "category": meta.category,
                "coverUrl": meta.cover_url,
                "publishedDate": meta.published_date,
                "title": meta.title,
                "authors": list(meta.authors),
                "notFound": meta.not_found,
            }
            for isbn, meta in resolved.items()
        },
    })


def _requested_year(event: dict[str, Any]) -> int:
    """Year from the event (or a JSON body), defaulting to the current year."""
    payload = dict(event)
    body = event.get("body")
    if isinstance(body, str) and body:
        try:
            parsed = json.loads(body)
        except ValueError:
            raise ValueError("Request body must be JSON") from None
        if isinstance(parsed, dict):
            payload.update(parsed)

    year = payload.get("year")
    if year is None:
        return datetime.now(timezone.utc).year
    try:
        year = int(year)
    except (TypeError, ValueError):
        raise ValueError(f"year must be an integer, got '{year}'") from None
    if not 1900 <= year <= 2100:
        raise ValueError(f"year out of range: {year}")
    return year


def aggregation_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """AWS Lambda handler - entry point for the nightly aggregation job.

    Called by EventBridge on a nightly cron schedule, or manually with
    {"year": 2025} to rebuild a past year.

    Pipeline: load config -> lock year -> aggregate -> rank -> store -> prune -> audit log

    Returns:
        Dict with statusCode and JSON body containing run_id, year,
        status, write counts, and any errors.
    """
    run_id = str(uuid.uuid4())
    started_at = datetime.now(timezone.utc)

    try:
        year = _requested_year(event)
    except ValueError as exc:
        return _response(400, {"error": str(exc)})

    logger.info("Starting aggregation run %s for %d", run_id, year)

    try:
        config = load_config()
    except ValueError as exc:
        logger.error("Configuration error: %s", exc)
        return _response(500, {"error": str(exc)})

    try:
        db = get_database(config.mongo)
        repo = ScoresRepository(db, config.mongo)
        repo.ensure_indexes()
        aggregator = MetricsAggregator(repo, JobLock(db, config.mongo))
        result = aggregator.aggregate(
            year, owner=run_id, timeout=_aggregation_timeout(context)
        )
    except AggregationLocked as exc:
        logger.warning("Aggregation skipped: %s", exc)
        return _finish_run(
            run_id, started_at, year, "skipped", None, [exc.message], config.mongo,
        )
    except PyMongoError as exc:
        logger.error("Aggregation failed: %s", exc)
        return _finish_run(
            run_id, started_at, year, "failure", None,
            [f"Aggregation failed: {exc}"], config.mongo,
        )
    except TimeoutError as exc:
        logger.error("Aggregation timed out: %s", exc)
        return _finish_run(
            run_id, started_at, year, "failure", None, [str(exc)], config.mongo,
        )

    errors = list(result.errors)
    try:
        titles = repo.load_book_details(m.isbn for m in result.metrics)
        rankings = RankingCategorizer(config.ranking).categorize(
            year, result.metrics, result.regional, titles
        )
        repo.save_year_end_rankings(rankings)
    except PyMongoError as exc:
        logger.error("Ranking storage failed: %s", exc)
        errors.append(f"Ranking storage failed: {exc}")
        return _finish_run(
            run_id, started_at, year, "failure", result, errors, config.mongo,
        )

    _prune_metadata_cache(config)

    status = "partial_failure" if errors else "success"
    return _finish_run(run_id, started_at, year, status, result, errors, config.mongo)


def _aggregation_timeout(context: Any) -> float | None:
    """Seconds the aggregation may take, from the Lambda context."""
    remaining = getattr(context, "get_remaining_time_in_millis", None)
    if remaining is None:
        return None
    return max(remaining() / 1000 - AGGREGATION_TIMEOUT_MARGIN_SECONDS, 0.0)


def _prune_metadata_cache(config: AppConfig) -> None:
    try:
        _get_metadata_cache(config).prune()
    except CacheUnavailable as exc:
        logger.warning("Metadata cache prune skipped: %s", exc)


def _finish_run(
    run_id: str,
    started_at: datetime,
    year: int,
    status: str,
    result: AggregationResult | None,
    errors: list[str],
    mongo_config: MongoConfig,
) -> dict[str, Any]:
    """Record the aggregation run to MongoDB and return the Lambda response.

    Called at every exit point after config has loaded so the audit
    trail is always written. If the audit write itself fails, it's
    logged but doesn't change the response.
    """
    metrics_written = len(result.metrics) if result else 0
    regional_written = len(result.regional) if result else 0

    run = AggregationRun(
        run_id=run_id,
        year=year,
        started_at=started_at,
        completed_at=datetime.now(timezone.utc),
        status=status,
        metrics_written=metrics_written,
        regional_written=regional_written,
        rows_rejected=result.rows_rejected if result else 0,
        errors=tuple(errors),
    )

    try:
        db = get_database(mongo_config)
        ScoresRepository(db, mongo_config).save_aggregation_run(run)
    except PyMongoError as exc:
        logger.error("Failed to save aggregation run: %s", exc)

    logger.info(
        "Run %s completed: year=%d, status=%s, books=%d, errors=%d",
        run_id, year, status, metrics_written, len(errors),
    )

    status_codes = {"success": 200, "partial_failure": 200, "skipped": 409}
    return _response(status_codes.get(status, 500), {
        "run_id": run_id,
        "year": year,
        "status": status,
        "books_processed": metrics_written,
        "metrics_updated": metrics_written,
        "regional_updated": regional_written,
        "rows_rejected": run.rows_rejected,
        "errors": list(errors),
    })
