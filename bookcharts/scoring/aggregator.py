"""Yearly aggregation of weekly scores.

Folds every WeeklyScore row of a calendar year into:

- BookPerformanceMetrics, one per book: total score, distinct weeks
  and regions, max/mean weekly points, points per week, and the
  population variance of the book's regional strength indexes
- RegionalPerformance, one per (book, region): regional score, RSI
  (regional score / total score), weeks, best and mean rank

Points are recomputed from (rank, list_size) rather than trusted from
storage. Rows are folded in (isbn, region, week_date) order with
math.fsum, so two runs over the same rows produce identical output.
Results replace the year's previous aggregates wholesale; nothing is
patched incrementally.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import time
import uuid
from collections import defaultdict
from collections.abc import Iterable, Sequence
from typing import Protocol

from bookcharts.exceptions import AggregationInputError, AggregationLocked
from bookcharts.models import (
    AggregationResult,
    BookPerformanceMetrics,
    RegionalPerformance,
    WeeklyScore,
)
from bookcharts.scoring.engine import score
from bookcharts.validation.validators import validate_weekly_score

logger = logging.getLogger(__name__)


class AggregateStore(Protocol):
    def load_weekly_score_documents(self, year: int) -> list[dict]: ...

    def replace_year_aggregates(
        self,
        year: int,
        metrics: Sequence[BookPerformanceMetrics],
        regional: Sequence[RegionalPerformance],
    ) -> tuple[int, int]: ...


class YearLock(Protocol):
    def acquire(self, name: str, owner: str) -> bool: ...

    def holder(self, name: str) -> str | None: ...

    def release(self, name: str, owner: str) -> None: ...


def population_variance(values: Sequence[float]) -> float:
    """Population variance; 0 for fewer than two values."""
    if len(values) < 2:
        return 0.0
    mean = math.fsum(values) / len(values)
    return math.fsum((v - mean) ** 2 for v in values) / len(values)


def parse_score_row(doc: dict, year: int) -> WeeklyScore:
    """Turn a stored document into a validated, re-scored row.

    Raises:
        AggregationInputError: If the document is malformed, outside
            the year, or fails validation.
    """
    try:
        row = WeeklyScore.from_document(doc)
    except (KeyError, TypeError, ValueError) as exc:
        raise AggregationInputError(
            f"malformed weekly score document: {exc!r}", details={"doc": doc}
        ) from exc

    result = validate_weekly_score(row)
    if not result.valid:
        raise AggregationInputError("; ".join(result.errors), details={"doc": doc})
    if row.year != year:
        raise AggregationInputError(
            f"{row.isbn}/{row.region}/week={row.week_date}: outside {year}"
        )
    return dataclasses.replace(row, points=score(row.rank, row.list_size))


def parse_score_rows(
    docs: Iterable[dict],
    year: int,
) -> tuple[tuple[WeeklyScore, ...], tuple[str, ...]]:
    """Parse documents, dropping and reporting bad or duplicate rows."""
    rows: dict[tuple[str, str, str], WeeklyScore] = {}
    errors: list[str] = []

    for doc in docs:
        try:
            row = parse_score_row(doc, year)
        except AggregationInputError as exc:
            logger.warning("Skipping weekly score row: %s", exc)
            errors.append(str(exc))
            continue

        key = (row.isbn, row.region, row.week_date)
        if key in rows:
            msg = f"{row.isbn}/{row.region}/week={row.week_date}: duplicate observation"
            logger.warning("Skipping weekly score row: %s", msg)
            errors.append(msg)
            continue
        rows[key] = row

    return tuple(rows[key] for key in sorted(rows)), tuple(errors)


def _fold_region(
    isbn: str,
    region: str,
    year: int,
    rows: list[WeeklyScore],
    total_score: float,
) -> RegionalPerformance:
    regional_score = math.fsum(r.points for r in rows)
    weeks = len({r.week_date for r in rows})
    return RegionalPerformance(
        isbn=isbn,
        region=region,
        year=year,
        regional_score=regional_score,
        rsi=regional_score / total_score if total_score > 0 else 0.0,
        weeks_on_chart=weeks,
        best_rank=min(r.rank for r in rows),
        avg_rank=math.fsum(r.rank for r in rows) / len(rows),
        avg_score_per_week=regional_score / weeks,
    )


def fold_scores(
    year: int,
    rows: Iterable[WeeklyScore],
) -> tuple[tuple[BookPerformanceMetrics, ...], tuple[RegionalPerformance, ...]]:
    """Fold validated rows into per-book and per-region aggregates.

    Pure function: no I/O, and the output only depends on the set of
    input rows, not their order.
    """
    by_book: dict[str, dict[str, list[WeeklyScore]]] = defaultdict(lambda: defaultdict(list))
    for row in sorted(rows, key=lambda r: (r.isbn, r.region, r.week_date)):
        by_book[row.isbn][row.region].append(row)

    metrics: list[BookPerformanceMetrics] = []
    regional: list[RegionalPerformance] = []

    for isbn in sorted(by_book):
        regions = by_book[isbn]
        book_rows = [row for region in sorted(regions) for row in regions[region]]
        points = [row.points for row in book_rows]
        total_score = math.fsum(points)
        weeks = len({row.week_date for row in book_rows})

        book_regional = [
            _fold_region(isbn, region, year, regions[region], total_score)
            for region in sorted(regions)
        ]
        regional.extend(book_regional)

        metrics.append(
            BookPerformanceMetrics(
                isbn=isbn,
                year=year,
                total_score=total_score,
                weeks_on_chart=weeks,
                regions_appeared=len(regions),
                max_weekly_score=max(points),
                avg_weekly_score=total_score / len(points),
                avg_score_per_week=total_score / weeks,
                rsi_variance=population_variance([r.rsi for r in book_regional]),
            )
        )

    return tuple(metrics), tuple(regional)


class MetricsAggregator:
    """Runs one year's aggregation against the store, under the year lock."""

    def __init__(self, store: AggregateStore, lock: YearLock | None = None) -> None:
        self._store = store
        self._lock = lock

    def aggregate(
        self,
        year: int,
        owner: str | None = None,
        timeout: float | None = None,
    ) -> AggregationResult:
        """Rebuild every aggregate row for a year.

        Args:
            year: Calendar year to aggregate.
            owner: Lock owner id; a fresh uuid when not given.
            timeout: Seconds allowed before the aggregates are written.
                None waits as long as the run takes.

        Returns:
            AggregationResult with the rows that were written.

        Raises:
            AggregationLocked: If another run for the year holds the lock.
            PyMongoError: If the store fails; nothing is replaced.
            TimeoutError: If the timeout expires before the write;
                nothing is replaced.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        owner = owner or str(uuid.uuid4())
        lock_name = f"aggregate:{year}"

        if self._lock is not None and not self._lock.acquire(lock_name, owner):
            raise AggregationLocked(year, self._lock.holder(lock_name))

        try:
            docs = self._store.load_weekly_score_documents(year)
            _check_deadline(deadline, year, "loading weekly scores")
            rows, errors = parse_score_rows(docs, year)
            metrics, regional = fold_scores(year, rows)
            _check_deadline(deadline, year, "folding weekly scores")
            self._store.replace_year_aggregates(year, metrics, regional)
        finally:
            if self._lock is not None:
                self._lock.release(lock_name, owner)

        logger.info(
            "Aggregated %d: %d rows read, %d rejected, %d books, %d regional rows",
            year, len(docs), len(errors), len(metrics), len(regional),
        )
        return AggregationResult(
            year=year,
            metrics=metrics,
            regional=regional,
            rows_read=len(docs),
            rows_rejected=len(errors),
            errors=errors,
        )


def _check_deadline(deadline: float | None, year: int, stage: str) -> None:
    if deadline is not None and time.monotonic() >= deadline:
        raise TimeoutError(f"Aggregation for {year} timed out after {stage}")
