"""MongoDB connection management.

The read endpoint and the nightly aggregation job both run as AWS
Lambda functions. Lambda reuses the execution environment between
invocations, so a module-level MongoClient keeps the TCP/TLS
connection warm across invocations.

The pool is larger than one because a metadata resolve writes cache
entries while a lookup batch is still in flight. Datetimes come back
timezone-aware (UTC) so freshness math never mixes naive and aware
values.
"""

from __future__ import annotations

import logging

from pymongo import MongoClient
from pymongo.database import Database

from bookcharts.config import MongoConfig

logger = logging.getLogger(__name__)

_client: MongoClient | None = None


def get_client(config: MongoConfig) -> MongoClient:
    """Return the shared MongoClient, connecting on first use."""
    global _client
    if _client is None:
        logger.info("Creating new MongoDB connection")
        _client = MongoClient(
            config.uri,
            maxPoolSize=config.max_pool_size,
            serverSelectionTimeoutMS=5000,
            tz_aware=True,
        )
    return _client


def get_database(config: MongoConfig) -> Database:
    """Get the configured database handle on the shared client.

    Args:
        config: MongoDB configuration with URI, database and pool settings.

    Returns:
        A pymongo Database object for the configured database name.
    """
    return get_client(config)[config.database]


def close_connection() -> None:
    """Close the MongoDB connection and reset the singleton.

    Safe to call even if no connection exists.
    """
    global _client
    if _client is not None:
        _client.close()
        _client = None
        logger.info("MongoDB connection closed")
