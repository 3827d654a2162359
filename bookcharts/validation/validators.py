"""Data validation for weekly lists and weekly score rows.

Weekly lists are validated at ingestion, before they are scored and
stored. Catches issues like:
- Ranks below 1 or beyond the size of their category list
- Blank ISBNs (indicates a parsing error upstream)
- The same ISBN twice on one region's week
- Duplicate ranks within one category

Weekly score rows are validated again at aggregation time, one row at
a time, so a single malformed row is dropped instead of aborting the
whole yearly run.

Errors prevent storage (or aggregation of that row). Warnings are
logged but don't block the pipeline.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date

from bookcharts.config import TRACKED_REGIONS
from bookcharts.models import ListEntry, WeeklyScore

logger = logging.getLogger(__name__)

MIN_RANK = 1
DEFAULT_CATEGORY = "General"


@dataclass(frozen=True)
class ValidationResult:
    """Result of validating a list or a score row.

    Attributes:
        valid: True if no errors (warnings are OK).
        errors: Issues that should prevent storage.
        warnings: Unusual data that's still acceptable.
    """

    valid: bool
    errors: tuple[str, ...]
    warnings: tuple[str, ...]


def _is_iso_date(value: str) -> bool:
    try:
        date.fromisoformat(value)
    except (TypeError, ValueError):
        return False
    return True


def validate_weekly_list(
    region: str,
    week_date: str,
    entries: Sequence[ListEntry],
) -> ValidationResult:
    """Validate one region's weekly list before scoring.

    Checks:
    - List is non-empty
    - Region is tracked (warns otherwise)
    - week_date is an ISO date
    - Each ISBN is non-blank and appears once
    - Each rank is between 1 and its category's list size
    - No duplicate ranks within a category
    - Blank titles (warns)

    Returns:
        ValidationResult with valid=True if no errors found.
    """
    errors: list[str] = []
    warnings: list[str] = []
    context = f"{region}/week={week_date}"

    if not entries:
        errors.append(f"{context}: no list entries")
        return ValidationResult(
            valid=False,
            errors=tuple(errors),
            warnings=tuple(warnings),
        )

    if region not in TRACKED_REGIONS:
        warnings.append(f"{context}: untracked region '{region}'")

    if not _is_iso_date(week_date):
        errors.append(f"{context}: week_date is not an ISO date")

    sizes = Counter(entry.category or DEFAULT_CATEGORY for entry in entries)
    seen_isbns: set[str] = set()
    seen_ranks: set[tuple[str, int]] = set()

    for entry in entries:
        category = entry.category or DEFAULT_CATEGORY
        entry_ctx = f"{context}/{category}/rank={entry.rank}"

        if not entry.isbn or not entry.isbn.strip():
            errors.append(f"{entry_ctx}: empty isbn")
        elif entry.isbn in seen_isbns:
            errors.append(f"{entry_ctx}: duplicate isbn {entry.isbn}")
        seen_isbns.add(entry.isbn)

        if entry.rank < MIN_RANK or entry.rank > sizes[category]:
            errors.append(
                f"{entry_ctx}: rank out of range [{MIN_RANK}-{sizes[category]}]"
            )

        if (category, entry.rank) in seen_ranks:
            errors.append(f"{entry_ctx}: duplicate rank")
        seen_ranks.add((category, entry.rank))

        if not entry.title or not entry.title.strip():
            warnings.append(f"{entry_ctx}: empty title")

    return ValidationResult(
        valid=len(errors) == 0,
        errors=tuple(errors),
        warnings=tuple(warnings),
    )


def validate_weekly_score(row: WeeklyScore) -> ValidationResult:
    """Validate one stored weekly score row before aggregation."""
    errors: list[str] = []
    context = f"{row.isbn or '?'}/{row.region or '?'}/week={row.week_date}"

    if not row.isbn:
        errors.append(f"{context}: empty isbn")
    if not row.region:
        errors.append(f"{context}: empty region")
    if not _is_iso_date(row.week_date):
        errors.append(f"{context}: week_date is not an ISO date")
    if row.list_size < 1:
        errors.append(f"{context}: list_size {row.list_size} below 1")
    elif row.rank < MIN_RANK or row.rank > row.list_size:
        errors.append(
            f"{context}: rank {row.rank} out of range [{MIN_RANK}-{row.list_size}]"
        )

    return ValidationResult(
        valid=len(errors) == 0,
        errors=tuple(errors),
        warnings=(),
    )
