"""Audit trail rows in the spreadsheet ``Log`` tab."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from shared.sheets import core
from shared.sheets.async_adapter import arun

log = logging.getLogger("dtm.sheets.audit")

AUDIT_TAB = "Log"
AUDIT_HEADERS = ("Timestamp", "User", "Action", "Sheet Name", "Details")


def log_audit(
    action: str,
    sheet_name: str,
    details: str = "",
    *,
    user: str = "bot",
    sheet_id: Optional[str] = None,
) -> bool:
    """Append one audit row; failures are logged and reported as ``False``."""

    from shared.config import get_downtime_sheet_id, get_timezone

    try:
        worksheet = core.ensure_worksheet(sheet_id or get_downtime_sheet_id(), AUDIT_TAB, AUDIT_HEADERS)
        stamp = core.format_timestamp(datetime.now(get_timezone()))
        core.with_backoff(
            lambda: worksheet.append_row(
                [stamp, user, action, sheet_name, details],
                value_input_option="USER_ENTERED",
            )
        )
    except Exception:
        log.warning(
            "audit write failed",
            exc_info=True,
            extra={"action": action, "sheet": sheet_name},
        )
        return False
    return True


async def alog_audit(
    action: str,
    sheet_name: str,
    details: str = "",
    *,
    user: str = "bot",
) -> bool:
    return await arun(log_audit, action, sheet_name, details, user=user)
