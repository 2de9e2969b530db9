"""Completion statistics over a downtime period grid.

Nothing here touches the spreadsheet: callers pass the header row and the
full value grid (header included) and get raw counts back.  Percentages are
derived with :func:`percent`.
"""

from __future__ import annotations

import logging
import statistics
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

from modules.downtime.schema import (
    DOWNTIME_KEYWORDS,
    Category,
    RowPair,
    detect_schema,
    match_keywords,
    parse_row_pairs,
    truncate,
    word_count,
)

log = logging.getLogger("dtm.downtime.stats")

MISSING_TEXT_LIMIT = 100


def percent(completed: int, total: int) -> float:
    return (completed / total) * 100 if total else 0.0


@dataclass(frozen=True, slots=True)
class WordStats:
    count: int = 0
    average: float = 0.0
    median: float = 0.0
    minimum: int = 0
    maximum: int = 0
    min_cell: str = ""
    max_cell: str = ""

    @classmethod
    def from_samples(cls, samples: Sequence[tuple[int, str]]) -> "WordStats":
        """Build stats from ``(word_count, cell_address)`` samples in scan order."""

        if not samples:
            return cls()
        values = [count for count, _ in samples]
        low = high = samples[0]
        for sample in samples[1:]:
            if sample[0] < low[0]:
                low = sample
            if sample[0] > high[0]:
                high = sample
        return cls(
            count=len(values),
            average=statistics.fmean(values),
            median=float(statistics.median(values)),
            minimum=low[0],
            maximum=high[0],
            min_cell=low[1],
            max_cell=high[1],
        )


@dataclass(frozen=True, slots=True)
class MissingItem:
    character: str
    header: str
    text: str
    cell: str
    subcategory: Optional[str] = None


@dataclass(slots=True)
class CompletionReport:
    category: Category
    character_count: int = 0
    total_cells: int = 0
    completed_cells: int = 0
    keyword_counts: dict[str, int] = field(default_factory=dict)
    keyword_completed_counts: dict[str, int] = field(default_factory=dict)
    submission_words: WordStats = field(default_factory=WordStats)
    response_words: WordStats = field(default_factory=WordStats)
    missing: list[MissingItem] = field(default_factory=list)

    @property
    def completion_pct(self) -> float:
        return percent(self.completed_cells, self.total_cells)


@dataclass(slots=True)
class CategoryBreakdown:
    category: Category
    subcategories: tuple[str, ...]
    character_count: int = 0
    totals: dict[str, int] = field(default_factory=dict)
    completed: dict[str, int] = field(default_factory=dict)
    missing: list[MissingItem] = field(default_factory=list)
    unmatched_headers: list[str] = field(default_factory=list)


def _character(pair: RowPair) -> str:
    return pair.character or "Unknown"


def compute_completion(
    header_row: Sequence[Any],
    grid: Sequence[Sequence[Any]],
    category: Category = Category.DOWNTIME,
    *,
    keywords: Mapping[str, Sequence[str]] | None = None,
) -> CompletionReport:
    """Scan every row pair and count submissions and responses in *category* columns.

    Keyword buckets default to :data:`DOWNTIME_KEYWORDS` for downtime columns
    and are not used for the other categories.
    """

    if keywords is None:
        keywords = DOWNTIME_KEYWORDS if category is Category.DOWNTIME else {}
    schema = detect_schema(header_row)
    columns = schema.columns_for(category)
    pairs = parse_row_pairs(grid)

    report = CompletionReport(
        category=category,
        character_count=len(pairs),
        keyword_counts={name: 0 for name in keywords},
        keyword_completed_counts={name: 0 for name in keywords},
    )
    submission_samples: list[tuple[int, str]] = []
    response_samples: list[tuple[int, str]] = []

    for pair in pairs:
        for column in columns:
            submitted = pair.submission_text(column.index)
            if not submitted:
                continue
            answered = pair.response_text(column.index)
            report.total_cells += 1
            submission_samples.append((word_count(submitted), pair.submission_cell(column.index)))
            for name in match_keywords(submitted, keywords):
                report.keyword_counts[name] += 1
                if answered:
                    report.keyword_completed_counts[name] += 1
            if answered:
                report.completed_cells += 1
                response_samples.append((word_count(answered), pair.response_cell(column.index)))
            else:
                report.missing.append(
                    MissingItem(
                        character=_character(pair),
                        header=column.header,
                        text=truncate(submitted, MISSING_TEXT_LIMIT),
                        cell=pair.response_cell(column.index),
                    )
                )

    report.submission_words = WordStats.from_samples(submission_samples)
    report.response_words = WordStats.from_samples(response_samples)
    log.debug(
        "completion computed",
        extra={
            "category": category.value,
            "total": report.total_cells,
            "completed": report.completed_cells,
            "missing": len(report.missing),
        },
    )
    return report


def find_missing(
    header_row: Sequence[Any], grid: Sequence[Sequence[Any]], category: Category
) -> list[MissingItem]:
    return compute_completion(header_row, grid, category, keywords={}).missing


def compute_breakdown(
    header_row: Sequence[Any],
    grid: Sequence[Sequence[Any]],
    category: Category,
    subcategories: Sequence[str],
) -> CategoryBreakdown:
    """Count submissions per sub-category named in the column header.

    A column belongs to the first sub-category whose name appears in its
    lowercased header; columns matching none are listed in
    ``unmatched_headers`` and not counted.
    """

    schema = detect_schema(header_row)
    pairs = parse_row_pairs(grid)
    subs = tuple(str(sub).lower() for sub in subcategories)
    breakdown = CategoryBreakdown(
        category=category,
        subcategories=subs,
        character_count=len(pairs),
        totals={sub: 0 for sub in subs},
        completed={sub: 0 for sub in subs},
    )

    column_subs: list[tuple[int, str, str]] = []
    for column in schema.columns_for(category):
        lowered = column.header.lower()
        matched = next((sub for sub in subs if sub in lowered), None)
        if matched is None:
            breakdown.unmatched_headers.append(column.header)
            continue
        column_subs.append((column.index, column.header, matched))

    for pair in pairs:
        for index, header, sub in column_subs:
            submitted = pair.submission_text(index)
            if not submitted:
                continue
            breakdown.totals[sub] += 1
            if pair.response_text(index):
                breakdown.completed[sub] += 1
            else:
                breakdown.missing.append(
                    MissingItem(
                        character=_character(pair),
                        header=header,
                        text=truncate(submitted, MISSING_TEXT_LIMIT),
                        cell=pair.response_cell(index),
                        subcategory=sub,
                    )
                )
    if breakdown.unmatched_headers:
        log.info(
            "columns without a sub-category",
            extra={"category": category.value, "headers": ", ".join(breakdown.unmatched_headers)},
        )
    return breakdown
