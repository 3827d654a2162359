"""MongoDB repository for weekly scores and yearly aggregates.

Weekly score rows are owned by the ingestion job: re-ingesting a
(region, week) replaces that week's rows, it never patches them.
Yearly aggregates are owned by the aggregation job and are always
rebuilt wholesale: replace_year_aggregates deletes and inserts inside
one transaction so readers see either the previous run or the new one,
never a mix. (Transactions need a replica set or sharded cluster;
Atlas clusters qualify.)

Also stores audit records (aggregation_runs) so every nightly run is
traceable.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from pymongo import ASCENDING, IndexModel, UpdateOne
from pymongo.database import Database

from bookcharts.config import MongoConfig
from bookcharts.models import (
    AggregationRun,
    BookPerformanceMetrics,
    ListEntry,
    RegionalPerformance,
    WeeklyScore,
    YearEndRankings,
)

logger = logging.getLogger(__name__)


def _year_bounds(year: int) -> dict:
    return {"$gte": f"{year:04d}-01-01", "$lt": f"{year + 1:04d}-01-01"}


class ScoresRepository:
    """Repository for weekly scores, aggregates and year-end rankings.

    Wraps these MongoDB collections:
    - weekly_scores: one row per (isbn, region, week_date)
    - book_performance_metrics: one row per (isbn, year)
    - book_regional_performance: one row per (isbn, region, year)
    - books: title/author per isbn, for ranking display
    - year_end_rankings: one document per year
    - aggregation_runs: audit trail of aggregation invocations (appended)
    """

    def __init__(self, db: Database, config: MongoConfig) -> None:
        self._client = db.client
        self._scores = db[config.scores_collection]
        self._metrics = db[config.metrics_collection]
        self._regional = db[config.regional_collection]
        self._books = db[config.books_collection]
        self._rankings = db[config.rankings_collection]
        self._runs = db[config.runs_collection]

    def ensure_indexes(self) -> None:
        """Create the uniqueness indexes the replace semantics rely on."""
        self._scores.create_indexes([
            IndexModel(
                [("isbn", ASCENDING), ("region", ASCENDING), ("week_date", ASCENDING)],
                unique=True,
                name="isbn_region_week_unique",
            ),
            IndexModel([("week_date", ASCENDING)], name="week_date"),
        ])
        self._metrics.create_indexes([
            IndexModel(
                [("isbn", ASCENDING), ("year", ASCENDING)],
                unique=True,
                name="isbn_year_unique",
            ),
        ])
        self._regional.create_indexes([
            IndexModel(
                [("isbn", ASCENDING), ("region", ASCENDING), ("year", ASCENDING)],
                unique=True,
                name="isbn_region_year_unique",
            ),
        ])
        self._books.create_indexes([
            IndexModel([("isbn", ASCENDING)], unique=True, name="isbn_unique"),
        ])
        self._rankings.create_indexes([
            IndexModel([("year", ASCENDING)], unique=True, name="year_unique"),
        ])
        logger.info("Ensured indexes on score and aggregate collections")

    def save_weekly_scores(
        self,
        region: str,
        week_date: str,
        scores: Sequence[WeeklyScore],
    ) -> int:
        """Replace all score rows for one region's week.

        Returns:
            Number of rows written.
        """
        with self._client.start_session() as session:
            with session.start_transaction():
                self._scores.delete_many(
                    {"region": region, "week_date": week_date},
                    session=session,
                )
                if scores:
                    self._scores.insert_many(
                        [score.to_document() for score in scores],
                        session=session,
                    )
        logger.info(
            "Saved %d weekly scores for %s week %s",
            len(scores), region, week_date,
        )
        return len(scores)

    def load_weekly_score_documents(self, year: int) -> list[dict]:
        """Load the raw weekly score documents for one calendar year.

        Documents are returned unparsed so the aggregator can reject
        malformed rows one at a time.
        """
        cursor = self._scores.find(
            {"week_date": _year_bounds(year)},
            {"_id": 0},
        ).sort([
            ("isbn", ASCENDING),
            ("region", ASCENDING),
            ("week_date", ASCENDING),
        ])
        return list(cursor)

    def replace_year_aggregates(
        self,
        year: int,
        metrics: Sequence[BookPerformanceMetrics],
        regional: Sequence[RegionalPerformance],
    ) -> tuple[int, int]:
        """Atomically replace every aggregate row for a year.

        Returns:
            (metrics rows written, regional rows written)
        """
        with self._client.start_session() as session:
            with session.start_transaction():
                self._metrics.delete_many({"year": year}, session=session)
                self._regional.delete_many({"year": year}, session=session)
                if metrics:
                    self._metrics.insert_many(
                        [m.to_document() for m in metrics], session=session
                    )
                if regional:
                    self._regional.insert_many(
                        [r.to_document() for r in regional], session=session
                    )
        logger.info(
            "Replaced aggregates for %d: %d books, %d regional rows",
            year, len(metrics), len(regional),
        )
        return len(metrics), len(regional)

    def load_year_aggregates(
        self, year: int
    ) -> tuple[tuple[BookPerformanceMetrics, ...], tuple[RegionalPerformance, ...]]:
        metrics = tuple(
            BookPerformanceMetrics.from_document(doc)
            for doc in self._metrics.find({"year": year}, {"_id": 0}).sort("isbn", ASCENDING)
        )
        regional = tuple(
            RegionalPerformance.from_document(doc)
            for doc in self._regional.find({"year": year}, {"_id": 0}).sort(
                [("isbn", ASCENDING), ("region", ASCENDING)]
            )
        )
        return metrics, regional

    def upsert_books(self, entries: Iterable[ListEntry]) -> int:
        """Record title/author for ranking display. Blank values are skipped."""
        operations = [
            UpdateOne(
                {"isbn": entry.isbn},
                {"$set": {"isbn": entry.isbn, "title": entry.title, "author": entry.author}},
                upsert=True,
            )
            for entry in entries
            if entry.title
        ]
        if not operations:
            return 0
        result = self._books.bulk_write(operations, ordered=False)
        return result.upserted_count + result.modified_count

    def load_book_details(self, isbns: Iterable[str]) -> dict[str, tuple[str, str]]:
        """Map isbn -> (title, author) for the given books."""
        wanted = sorted(set(isbns))
        if not wanted:
            return {}
        return {
            doc["isbn"]: (doc.get("title") or "Unknown", doc.get("author") or "Unknown")
            for doc in self._books.find({"isbn": {"$in": wanted}}, {"_id": 0})
        }

    def save_year_end_rankings(self, rankings: YearEndRankings) -> None:
        self._rankings.replace_one(
            {"year": rankings.year},
            rankings.to_document(),
            upsert=True,
        )
        logger.info("Saved year-end rankings for %d", rankings.year)

    def load_year_end_rankings(self, year: int) -> YearEndRankings | None:
        doc = self._rankings.find_one({"year": year}, {"_id": 0})
        if doc is None:
            return None
        return YearEndRankings.from_document(doc)

    def save_aggregation_run(self, run: AggregationRun) -> None:
        """Insert an audit record for this aggregation invocation."""
        self._runs.insert_one(run.to_document())
        logger.info("Saved aggregation run %s", run.run_id)
