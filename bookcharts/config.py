"""Configuration for bookcharts.

Centralizes all configuration: tracked regions, metadata provider
settings, cache TTLs, snapshot freshness windows, ranking thresholds,
and MongoDB connection parameters. All config is loaded from
environment variables at runtime (no hardcoded secrets).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from urllib.parse import urlparse

TRACKED_REGIONS: dict[str, str] = {
    "PNBA": "Pacific Northwest",
    "CALIBAN": "Northern California",
    "CALIBAS": "Southern California",
    "GLIBA": "Great Lakes",
    "MPIBA": "Mountains & Plains",
    "MIBA": "Midwest",
    "NAIBA": "New Atlantic",
    "NEIBA": "New England",
    "SIBA": "Southern",
}


@dataclass(frozen=True)
class LookupConfig:
    base_url: str = "https://www.googleapis.com/books/v1/volumes"
    api_key: str = ""
    user_agent: str = "BookchartsMetadata/1.0"
    request_timeout: int = 10
    batch_size: int = 3
    throttle_delay: float = 1.0
    max_attempts: int = 3
    backoff_initial: float = 1.0
    backoff_max: float = 4.0


@dataclass(frozen=True)
class CacheConfig:
    memory_ttl: timedelta = timedelta(minutes=30)
    persistent_ttl: timedelta = timedelta(days=30)
    not_found_ttl: timedelta = timedelta(days=1)


@dataclass(frozen=True)
class SnapshotConfig:
    fresh_window: timedelta = timedelta(hours=4)
    stale_window: timedelta = timedelta(hours=24)
    list_weekday: int = 2  # Wednesday
    ingestion_hour_utc: int = 16


@dataclass(frozen=True)
class RankingConfig:
    top_n: int = 20
    regional_top_n: int = 10
    min_regions_regional: int = 2
    min_regions_national: int = 5
    min_weeks_efficient: int = 1


@dataclass(frozen=True)
class MongoConfig:
    uri: str = ""
    database: str = "bookcharts"
    metadata_cache_collection: str = "metadata_cache"
    snapshot_collection: str = "fetch_cache"
    list_metadata_collection: str = "bestseller_list_metadata"
    scores_collection: str = "weekly_scores"
    metrics_collection: str = "book_performance_metrics"
    regional_collection: str = "book_regional_performance"
    books_collection: str = "books"
    rankings_collection: str = "year_end_rankings"
    runs_collection: str = "aggregation_runs"
    locks_collection: str = "job_locks"
    max_pool_size: int = 4


@dataclass(frozen=True)
class AppConfig:
    mongo: MongoConfig
    lookup: LookupConfig = field(default_factory=LookupConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)
    ranking: RankingConfig = field(default_factory=RankingConfig)


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{raw}'") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got '{raw}'") from None
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {value}")
    return value


def load_config() -> AppConfig:
    """Load and validate configuration from environment variables.

    Reads MONGODB_URI from the environment, validates it has a valid
    MongoDB scheme (mongodb:// or mongodb+srv://), then applies the
    optional lookup and ranking overrides.

    Returns:
        AppConfig with validated, frozen settings.

    Raises:
        ValueError: If MONGODB_URI is missing or has an invalid scheme,
            or if a numeric override does not parse.
    """
    mongo_uri = os.environ.get("MONGODB_URI", "")
    if not mongo_uri:
        raise ValueError("MONGODB_URI environment variable is required")

    parsed = urlparse(mongo_uri)
    if parsed.scheme not in ("mongodb", "mongodb+srv"):
        raise ValueError(
            f"Invalid MongoDB URI scheme: '{parsed.scheme}'. "
            "Expected 'mongodb' or 'mongodb+srv'."
        )

    defaults = LookupConfig()
    lookup = LookupConfig(
        api_key=os.environ.get("GOOGLE_BOOKS_API_KEY", ""),
        batch_size=_env_int("LOOKUP_BATCH_SIZE", defaults.batch_size),
        throttle_delay=_env_float("LOOKUP_THROTTLE_DELAY", defaults.throttle_delay),
        max_attempts=_env_int("LOOKUP_MAX_ATTEMPTS", defaults.max_attempts),
    )

    ranking_defaults = RankingConfig()
    ranking = RankingConfig(
        top_n=_env_int("RANKING_TOP_N", ranking_defaults.top_n),
        min_regions_regional=_env_int(
            "RANKING_MIN_REGIONS_REGIONAL",
            ranking_defaults.min_regions_regional,
            minimum=2,
        ),
        min_regions_national=_env_int(
            "RANKING_MIN_REGIONS_NATIONAL",
            ranking_defaults.min_regions_national,
            minimum=2,
        ),
    )

    return AppConfig(
        mongo=MongoConfig(
            uri=mongo_uri,
            database=os.environ.get("MONGODB_DATABASE", "") or "bookcharts",
        ),
        lookup=lookup,
        ranking=ranking,
    )
