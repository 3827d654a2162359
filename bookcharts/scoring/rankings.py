"""Year-end ranking categories.

Partitions one year's aggregates into four lists:

- regional top-N: per region, highest regional score
- most regional: highest regional_score * RSI in the book's strongest
  region, for books seen in at least min_regions_regional regions
  (never fewer than two)
- most national: lowest RSI variance, for books seen in at least
  min_regions_national regions (never fewer than two)
- most efficient: highest points per week on chart

Every sort ends with isbn ascending, so equal scores always come out
in the same order.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone

from bookcharts.config import RankingConfig
from bookcharts.models import (
    BookPerformanceMetrics,
    BookRanking,
    RegionalPerformance,
    YearEndRankings,
)

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"

# Single-region books never qualify, whatever the configured thresholds.
MIN_MULTI_REGION = 2


class RankingCategorizer:
    def __init__(self, config: RankingConfig | None = None) -> None:
        self._config = config or RankingConfig()

    def categorize(
        self,
        year: int,
        metrics: Sequence[BookPerformanceMetrics],
        regional: Sequence[RegionalPerformance],
        titles: Mapping[str, tuple[str, str]] | None = None,
        generated_at: datetime | None = None,
    ) -> YearEndRankings:
        """Build all four categories from one year's aggregates.

        Args:
            year: Year the aggregates belong to.
            metrics: Per-book metrics for the year.
            regional: Per-(book, region) rows for the year.
            titles: isbn -> (title, author); missing books show "Unknown".
            generated_at: Timestamp stored with the rankings.
        """
        titles = titles or {}
        rankings = YearEndRankings(
            year=year,
            regional_top=self.regional_top(regional, titles),
            most_regional=self.most_regional(metrics, regional, titles),
            most_national=self.most_national(metrics, titles),
            most_efficient=self.most_efficient(metrics, titles),
            generated_at=generated_at or datetime.now(timezone.utc),
        )
        logger.info(
            "Ranked %d: %d regions, %d regional, %d national, %d efficient",
            year,
            len(rankings.regional_top),
            len(rankings.most_regional),
            len(rankings.most_national),
            len(rankings.most_efficient),
        )
        return rankings

    def regional_top(
        self,
        regional: Sequence[RegionalPerformance],
        titles: Mapping[str, tuple[str, str]],
    ) -> dict[str, tuple[BookRanking, ...]]:
        by_region: dict[str, list[RegionalPerformance]] = defaultdict(list)
        for row in regional:
            by_region[row.region].append(row)

        result = {}
        for region in sorted(by_region):
            ordered = sorted(
                by_region[region],
                key=lambda r: (-r.regional_score, r.best_rank, r.isbn),
            )
            result[region] = tuple(
                _ranking(
                    row.isbn,
                    row.regional_score,
                    titles,
                    region=row.region,
                    weeksOnChart=row.weeks_on_chart,
                    bestRank=row.best_rank,
                    avgScorePerWeek=row.avg_score_per_week,
                    rsi=row.rsi,
                )
                for row in ordered[:self._config.regional_top_n]
            )
        return result

    def most_regional(
        self,
        metrics: Sequence[BookPerformanceMetrics],
        regional: Sequence[RegionalPerformance],
        titles: Mapping[str, tuple[str, str]],
    ) -> tuple[BookRanking, ...]:
        floor = max(self._config.min_regions_regional, MIN_MULTI_REGION)
        eligible = {m.isbn: m for m in metrics if m.regions_appeared >= floor}

        strongest: dict[str, RegionalPerformance] = {}
        for row in regional:
            if row.isbn not in eligible:
                continue
            best = strongest.get(row.isbn)
            if best is None or _strength_key(row) < _strength_key(best):
                strongest[row.isbn] = row

        ordered = sorted(
            strongest.values(),
            key=lambda r: (-(r.regional_score * r.rsi), r.isbn),
        )
        return tuple(
            _ranking(
                row.isbn,
                row.regional_score * row.rsi,
                titles,
                region=row.region,
                rsi=row.rsi,
                regionalScore=row.regional_score,
                totalScore=eligible[row.isbn].total_score,
                weeksOnChart=row.weeks_on_chart,
            )
            for row in ordered[:self._config.top_n]
        )

    def most_national(
        self,
        metrics: Sequence[BookPerformanceMetrics],
        titles: Mapping[str, tuple[str, str]],
    ) -> tuple[BookRanking, ...]:
        floor = max(self._config.min_regions_national, MIN_MULTI_REGION)
        eligible = [m for m in metrics if m.regions_appeared >= floor]
        ordered = sorted(eligible, key=lambda m: (m.rsi_variance, m.isbn))
        return tuple(
            _ranking(
                m.isbn,
                m.total_score,
                titles,
                rsiVariance=m.rsi_variance,
                regionsAppeared=m.regions_appeared,
                weeksOnChart=m.weeks_on_chart,
            )
            for m in ordered[:self._config.top_n]
        )

    def most_efficient(
        self,
        metrics: Sequence[BookPerformanceMetrics],
        titles: Mapping[str, tuple[str, str]],
    ) -> tuple[BookRanking, ...]:
        eligible = [
            m for m in metrics
            if m.weeks_on_chart >= self._config.min_weeks_efficient
        ]
        ordered = sorted(eligible, key=lambda m: (-m.avg_score_per_week, m.isbn))
        return tuple(
            _ranking(
                m.isbn,
                m.avg_score_per_week,
                titles,
                totalScore=m.total_score,
                weeksOnChart=m.weeks_on_chart,
            )
            for m in ordered[:self._config.top_n]
        )


def _strength_key(row: RegionalPerformance) -> tuple[float, float, str]:
    # Highest RSI wins, then higher regional score, then region code.
    return (-row.rsi, -row.regional_score, row.region)


def _ranking(
    isbn: str,
    score: float,
    titles: Mapping[str, tuple[str, str]],
    **metadata: object,
) -> BookRanking:
    title, author = titles.get(isbn, (UNKNOWN, UNKNOWN))
    return BookRanking(
        isbn=isbn,
        title=title,
        author=author,
        score=score,
        metadata=metadata,
    )
