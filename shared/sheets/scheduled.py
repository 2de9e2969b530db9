"""Access to the ``Scheduled Messages`` tab."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Any, Optional, Sequence

from gspread import Worksheet

from shared.sheets import core

log = logging.getLogger("dtm.sheets.scheduled")

SCHEDULED_TAB = "Scheduled Messages"

COL_SENT = 1
COL_SEND_AFTER = 2
COL_CHANNEL = 3
COL_SENDER = 4
COL_BODY = 5
COL_LOG = 6

SCHEDULED_HEADERS = ("Sent", "Send After", "Channel", "Sender", "Message", "Log")


@dataclass(frozen=True, slots=True)
class ScheduledMessage:
    row: int
    sent: bool
    send_after: Optional[datetime]
    channel: str
    sender: str
    body: str
    log: str = ""


def _value(row: Sequence[Any], col: int) -> Any:
    return row[col - 1] if col - 1 < len(row) else ""


def _text(row: Sequence[Any], col: int) -> str:
    value = _value(row, col)
    return "" if value is None else str(value).strip()


def _is_checked(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().upper() == "TRUE"


def parse_scheduled_messages(grid: Sequence[Sequence[Any]], tz: tzinfo) -> list[ScheduledMessage]:
    messages: list[ScheduledMessage] = []
    for index, row in enumerate(grid):
        if index == 0:
            continue
        body = _value(row, COL_BODY)
        messages.append(
            ScheduledMessage(
                row=index + 1,
                sent=_is_checked(_value(row, COL_SENT)),
                send_after=core.serial_to_datetime(_value(row, COL_SEND_AFTER), tz),
                channel=_text(row, COL_CHANNEL),
                sender=_text(row, COL_SENDER),
                body="" if body is None else str(body),
                log=_text(row, COL_LOG),
            )
        )
    return messages


class ScheduledMessagesTab:
    """Thin wrapper over the scheduled-messages worksheet."""

    def __init__(self, worksheet: Worksheet) -> None:
        self.worksheet = worksheet

    @property
    def name(self) -> str:
        return getattr(self.worksheet, "title", SCHEDULED_TAB)

    def read(self, tz: tzinfo) -> list[ScheduledMessage]:
        return parse_scheduled_messages(core.read_grid(self.worksheet), tz)

    def write_log(self, row: int, note: str) -> None:
        core.write_cell(self.worksheet, row, COL_LOG, note)

    def mark_sent(self, row: int, note: str) -> None:
        core.write_cell(self.worksheet, row, COL_SENT, True)
        self.write_log(row, note)


def open_scheduled_tab(sheet_id: Optional[str] = None) -> Optional[ScheduledMessagesTab]:
    """Return the tab wrapper, or ``None`` when the tab does not exist."""

    from shared.config import get_downtime_sheet_id

    worksheet = core.find_worksheet(sheet_id or get_downtime_sheet_id(), SCHEDULED_TAB)
    if worksheet is None:
        log.warning("scheduled messages tab not found", extra={"tab": SCHEDULED_TAB})
        return None
    return ScheduledMessagesTab(worksheet)
