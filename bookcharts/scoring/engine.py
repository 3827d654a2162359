"""Weekly performance scoring.

A list position is worth

    points = 100 * (1 - ln(rank) / ln(list_size + 1))

clamped to [0, 100]. Rank 1 is always worth 100; the last rank of a
list is worth close to 0. Dividing by ln(list_size + 1) normalizes
across lists of different lengths, and the logarithm weights the top
positions more heavily than the tail.
"""

from __future__ import annotations

import math
from collections import Counter
from collections.abc import Iterable

from bookcharts.exceptions import AggregationInputError
from bookcharts.models import ListEntry, WeeklyScore

MAX_POINTS = 100.0
DEFAULT_CATEGORY = "General"


def score(rank: int, list_size: int) -> float:
    """Points for holding rank on a list of list_size books.

    Raises:
        AggregationInputError: If list_size < 1 or rank is outside
            [1, list_size]. Bad input is the ingester's bug and is
            never silently corrected here.
    """
    if list_size < 1:
        raise AggregationInputError(
            f"list_size must be >= 1, got {list_size}",
            details={"rank": rank, "list_size": list_size},
        )
    if rank < 1 or rank > list_size:
        raise AggregationInputError(
            f"rank {rank} outside list bounds [1-{list_size}]",
            details={"rank": rank, "list_size": list_size},
        )
    points = MAX_POINTS * (1 - math.log(rank) / math.log(list_size + 1))
    return min(max(points, 0.0), MAX_POINTS)


def score_weekly_list(
    region: str,
    week_date: str,
    entries: Iterable[ListEntry],
) -> tuple[WeeklyScore, ...]:
    """Score one region's weekly list.

    Each category on the list is its own ranking, so list_size is the
    number of entries sharing the entry's category. Entries without a
    category count toward "General".

    Returns:
        WeeklyScore rows sorted by (category, rank, isbn).
    """
    entries = tuple(entries)
    sizes = Counter(entry.category or DEFAULT_CATEGORY for entry in entries)

    scores = []
    for entry in entries:
        category = entry.category or DEFAULT_CATEGORY
        list_size = sizes[category]
        scores.append(
            WeeklyScore(
                isbn=entry.isbn,
                region=region,
                week_date=week_date,
                rank=entry.rank,
                category=category,
                list_size=list_size,
                points=score(entry.rank, list_size),
            )
        )
    return tuple(sorted(scores, key=lambda s: (s.category, s.rank, s.isbn)))
