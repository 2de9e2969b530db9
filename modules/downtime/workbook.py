"""First-run setup: create the tabs the bot reads and writes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from shared.config import get_config_tab, get_downtime_sheet_id
from shared.sheets import core
from shared.sheets.audit import AUDIT_HEADERS, AUDIT_TAB
from shared.sheets.downtime import BASE_HEADERS
from shared.sheets.scheduled import SCHEDULED_HEADERS, SCHEDULED_TAB

log = logging.getLogger("dtm.downtime.workbook")

CONFIG_HEADERS = ("Key", "Value")


@dataclass(slots=True)
class WorkbookSetup:
    created: list[str] = field(default_factory=list)
    existing: list[str] = field(default_factory=list)

    def summary(self) -> str:
        parts = []
        if self.created:
            parts.append(f"Created {len(self.created)} tabs: {', '.join(self.created)}.")
        if self.existing:
            parts.append(f"{len(self.existing)} tabs already existed.")
        return " ".join(parts) or "Nothing to do."


def required_tabs(period_tab: str) -> list[tuple[str, Sequence[str]]]:
    return [
        (get_config_tab(), CONFIG_HEADERS),
        (AUDIT_TAB, AUDIT_HEADERS),
        (SCHEDULED_TAB, SCHEDULED_HEADERS),
        (period_tab, (*BASE_HEADERS, "Character Name")),
    ]


def initialise_workbook(period_tab: str, *, sheet_id: Optional[str] = None) -> WorkbookSetup:
    """Create every missing tab with its header row; existing tabs are left alone.

    The roster tabs (characters, NPCs, narrators) belong to the character
    database and are not created here.
    """

    sheet_id = sheet_id or get_downtime_sheet_id()
    result = WorkbookSetup()
    for name, headers in required_tabs(period_tab):
        if core.find_worksheet(sheet_id, name) is not None:
            result.existing.append(name)
            continue
        core.ensure_worksheet(sheet_id, name, headers)
        result.created.append(name)
    log.info("workbook initialised", extra={"created": result.created, "existing": len(result.existing)})
    return result
