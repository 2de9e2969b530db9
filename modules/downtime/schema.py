"""Column categories and validated submission/response row pairs."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Sequence

from gspread.utils import rowcol_to_a1

from shared.sheets.downtime import (
    COL_CHARACTER,
    COL_SEND_DISCORD,
    COL_SEND_EMAIL,
    COL_STATUS,
    COL_TIMESTAMP,
)

DOWNTIME_HEADER_RE = re.compile(r"downtime", re.I)
INFLUENCE_HEADER_RE = re.compile(r"influence", re.I)
RESOURCES_HEADER_RE = re.compile(r"resources", re.I)

# Keyword buckets are non-exclusive: one submission may land in several.
DOWNTIME_KEYWORDS: Mapping[str, tuple[str, ...]] = {
    "feed": ("feed",),
    "patrol": ("patrol",),
    "investigate": ("investigate",),
    "beyond your means": ("beyond your means",),
    "quest": ("quest",),
    "eternal struggle": ("eternal struggle", "elder game", "elder downtime"),
    "learn disciplines": ("learn", "learn disciplines"),
    "rhetorical": ("rhetorical",),
    "narrative": ("narrative",),
    "observe": ("observe", "spy"),
    "cancel": ("cancel", "block"),
}

INFLUENCE_SUBCATEGORIES = ("elite", "underworld")
RESOURCE_SUBCATEGORIES = ("resources",)


class Category(str, Enum):
    DOWNTIME = "downtime"
    INFLUENCE = "influence"
    RESOURCES = "resources"
    OTHER = "other"

    @classmethod
    def from_header(cls, header: object) -> "Category":
        text = str(header or "")
        if DOWNTIME_HEADER_RE.search(text):
            return cls.DOWNTIME
        if INFLUENCE_HEADER_RE.search(text):
            return cls.INFLUENCE
        if RESOURCES_HEADER_RE.search(text):
            return cls.RESOURCES
        return cls.OTHER

    @property
    def label(self) -> str:
        return self.value.capitalize()


class Status(str, Enum):
    INPUT = "input"
    UNPROCESSED = "unprocessed"
    PROCESSED_PENDING = "processed/pending"
    PROCESS_HOLD = "process/hold"
    SENT = "sent"

    @classmethod
    def parse(cls, value: object) -> Optional["Status"]:
        text = cell_text(value).lower()
        for status in cls:
            if status.value == text:
                return status
        return None


def cell_text(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return ""
    return str(value).strip()


def is_checked(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().upper() == "TRUE"


def word_count(text: str) -> int:
    return len(text.split())


def match_keywords(text: str, keywords: Mapping[str, Sequence[str]] = DOWNTIME_KEYWORDS) -> list[str]:
    lowered = text.lower()
    return [name for name, terms in keywords.items() if any(term in lowered for term in terms)]


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


@dataclass(frozen=True, slots=True)
class ColumnSpec:
    index: int
    header: str
    category: Category

    @property
    def col(self) -> int:
        return self.index + 1


@dataclass(frozen=True, slots=True)
class SheetSchema:
    header: tuple[str, ...]
    columns: tuple[ColumnSpec, ...]

    def columns_for(self, category: Category) -> list[ColumnSpec]:
        return [column for column in self.columns if column.category is category]


def detect_schema(header_row: Sequence[Any]) -> SheetSchema:
    """Classify every answer column (sixth column onward) once."""

    header = tuple(cell_text(cell) for cell in header_row)
    columns = tuple(
        ColumnSpec(index=index, header=name, category=Category.from_header(name))
        for index, name in enumerate(header)
        if index >= COL_CHARACTER
    )
    return SheetSchema(header=header, columns=columns)


class PairingError(ValueError):
    """The submission/response alternation is broken at ``row``."""

    def __init__(self, message: str, *, row: int) -> None:
        super().__init__(message)
        self.row = row


def _get(row: Sequence[Any], index: int) -> Any:
    return row[index] if index < len(row) else ""


@dataclass(frozen=True, slots=True)
class RowPair:
    submission_row: int
    submission: tuple[Any, ...]
    response: tuple[Any, ...]

    @property
    def response_row(self) -> int:
        return self.submission_row + 1

    @property
    def character(self) -> str:
        return cell_text(_get(self.response, COL_CHARACTER - 1))

    @property
    def status(self) -> Optional[Status]:
        return Status.parse(_get(self.response, COL_STATUS - 1))

    @property
    def discord_checked(self) -> bool:
        return is_checked(_get(self.response, COL_SEND_DISCORD - 1))

    @property
    def email_checked(self) -> bool:
        return is_checked(_get(self.response, COL_SEND_EMAIL - 1))

    def submission_text(self, index: int) -> str:
        return cell_text(_get(self.submission, index))

    def response_text(self, index: int) -> str:
        return cell_text(_get(self.response, index))

    def submission_cell(self, index: int) -> str:
        return rowcol_to_a1(self.submission_row, index + 1)

    def response_cell(self, index: int) -> str:
        return rowcol_to_a1(self.response_row, index + 1)


_SUBMISSION_STATUSES = {"", Status.INPUT.value}


def make_pair(grid: Sequence[Sequence[Any]], submission_index: int) -> RowPair:
    """Validate and build the pair whose submission is ``grid[submission_index]``."""

    submission = grid[submission_index]
    sheet_row = submission_index + 1
    sub_status = cell_text(_get(submission, COL_STATUS - 1)).lower()
    if sub_status not in _SUBMISSION_STATUSES:
        raise PairingError(
            f"row {sheet_row} has status {sub_status!r}; expected a submission row",
            row=sheet_row,
        )
    if submission_index + 1 >= len(grid):
        raise PairingError(f"submission row {sheet_row} has no response row below it", row=sheet_row)
    response = grid[submission_index + 1]
    if Status.parse(_get(response, COL_STATUS - 1)) is Status.INPUT:
        raise PairingError(
            f"row {sheet_row + 1} below submission row {sheet_row} is another submission",
            row=sheet_row + 1,
        )
    return RowPair(submission_row=sheet_row, submission=tuple(submission), response=tuple(response))


def parse_row_pairs(grid: Sequence[Sequence[Any]]) -> list[RowPair]:
    """Return every timestamped pair, raising :class:`PairingError` on misalignment.

    The header is row 1, so submissions sit at grid indexes 1, 3, 5 and the
    scan always advances by two.  Pairs whose submission has no timestamp are
    skipped.
    """

    pairs: list[RowPair] = []
    for index in range(1, len(grid), 2):
        row = grid[index]
        if not cell_text(_get(row, COL_TIMESTAMP - 1)):
            # An untimestamped response row in a submission slot still means
            # the alternation has shifted.
            if cell_text(_get(row, COL_STATUS - 1)).lower() not in _SUBMISSION_STATUSES:
                raise PairingError(
                    f"row {index + 1} holds a response where a submission was expected",
                    row=index + 1,
                )
            continue
        pairs.append(make_pair(grid, index))
    return pairs
