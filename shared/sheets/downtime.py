"""Worksheet access for one downtime period tab (e.g. ``March 2025``).

A period tab holds a header row followed by row pairs: the player's
submission on the even sheet row and the narrator's response directly below
it on the odd sheet row.  Only the response row carries the status, the send
checkboxes and the character name.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Optional, Sequence

from gspread import Worksheet
from gspread.utils import a1_to_rowcol

from shared.sheets import core

log = logging.getLogger("dtm.sheets.downtime")

COL_TIMESTAMP = 1
COL_STATUS = 2
COL_SEND_DISCORD = 3
COL_SEND_EMAIL = 4
COL_CHARACTER = 5

BASE_HEADERS = ("Timestamp", "Status", "Send Discord", "Send Email")

SENT_COLOR = "#E5FFCC"
NEW_RESPONSE_COLOR = "#FFCCCC"

PERIOD_TAB_RE = re.compile(r"^\w+ \d{4}$")


def is_period_tab(name: str) -> bool:
    return bool(PERIOD_TAB_RE.match(str(name or "")))


def response_row_for(row: int) -> int:
    """Map any selected data row to the response row of its pair."""

    if row <= 1:
        raise ValueError("row 1 is the header row")
    if row % 2:
        return row
    return row - 1 if row > 2 else 3


def appended_start_row(updated_range: str) -> int:
    """First row of an A1 range such as ``'March 2025'!A7:J8``."""

    cells = updated_range.rsplit("!", 1)[-1]
    row, _col = a1_to_rowcol(cells.split(":", 1)[0])
    return row


class DowntimeTab:
    """Read and stamp cells on a downtime period worksheet."""

    def __init__(self, worksheet: Worksheet) -> None:
        self.worksheet = worksheet

    @property
    def name(self) -> str:
        return str(getattr(self.worksheet, "title", ""))

    def grid(self) -> list[list[Any]]:
        return core.read_grid(self.worksheet)

    def set_status(self, row: int, status: str) -> None:
        core.write_cell(self.worksheet, row, COL_STATUS, status)

    def set_checkbox(self, row: int, col: int, checked: bool) -> None:
        core.write_cell(self.worksheet, row, col, bool(checked))

    def set_timestamp(self, row: int, when: datetime) -> None:
        core.write_cell(self.worksheet, row, COL_TIMESTAMP, core.format_timestamp(when))

    def shade(self, row: int, col: int, color: str, *, width: int = 1) -> None:
        core.shade_cell(self.worksheet, row, col, color, width=width)

    def mark_sent(self, row: int, when: datetime, *, checkbox_col: int) -> None:
        """Stamp a delivered response row: timestamp, ``sent`` status, ticked box."""

        self.set_timestamp(row, when)
        self.shade(row, COL_TIMESTAMP, SENT_COLOR)
        self.set_status(row, "sent")
        self.set_checkbox(row, checkbox_col, True)
        self.shade(row, checkbox_col, SENT_COLOR)

    def append_pair(self, submission: Sequence[Any], response: Sequence[Any]) -> int:
        """Append a submission/response pair and return the response row number.

        The row is read from the ``updates.updatedRange`` of the append
        response, so concurrent appends cannot hand back each other's rows.
        """

        result = core.with_backoff(
            lambda: self.worksheet.append_rows(
                [list(submission), list(response)], value_input_option="USER_ENTERED"
            )
        )
        updated = ((result or {}).get("updates") or {}).get("updatedRange")
        if not updated:
            raise RuntimeError(f"append to {self.name!r} returned no updated range")
        return appended_start_row(updated) + 1


def open_downtime_tab(name: Optional[str] = None, *, sheet_id: Optional[str] = None) -> DowntimeTab:
    """Open *name*, or the active-period tab when no name is given."""

    from shared.config import get_downtime_sheet_id, load_settings

    tab_name = name or load_settings().active_sheet_name
    worksheet = core.get_worksheet(sheet_id or get_downtime_sheet_id(), tab_name)
    return DowntimeTab(worksheet)


def ensure_downtime_tab(name: str, questions: Sequence[str], *, sheet_id: Optional[str] = None) -> DowntimeTab:
    """Open *name*, creating it with base headers plus *questions* when missing."""

    from shared.config import get_downtime_sheet_id

    headers = list(BASE_HEADERS) + [str(title) for title in questions]
    worksheet = core.ensure_worksheet(sheet_id or get_downtime_sheet_id(), name, headers)
    return DowntimeTab(worksheet)

