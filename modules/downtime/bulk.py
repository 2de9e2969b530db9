"""Sequential bulk Discord send over one period tab.

A job is steered by a :class:`JobControl` handed in by the caller; progress
rows and the final summary are mirrored into the progress cache so another
command can report on a running job.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Optional, Sequence

from modules.downtime.dispatch import DowntimeDispatcher
from modules.downtime.outcomes import Sent, Skipped
from modules.downtime.schema import (
    Category,
    PairingError,
    cell_text,
    detect_schema,
    make_pair,
    word_count,
)
from shared.cache.progress import ProgressCache, get_progress_cache
from shared.sheets.async_adapter import arun
from shared.sheets.downtime import COL_CHARACTER, COL_TIMESTAMP, DowntimeTab

log = logging.getLogger("dtm.downtime.bulk")

BULK_STATUS_KEY = "bulk_send_status"
BULK_SUMMARY_KEY = "bulk_send_summary"

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in-progress"
STATUS_SENT = "sent"
STATUS_SKIPPED = "skipped"
STATUS_ERROR = "error"


@dataclass(slots=True)
class BulkRow:
    row: int
    character: str
    response_count: int
    st_word_count: int
    player_word_count: int
    is_sent: bool
    status: str = STATUS_PENDING
    note: str = ""


@dataclass(frozen=True, slots=True)
class BulkSummary:
    success_count: int
    failure_count: int
    stopped: bool = False


class JobControl:
    """Cooperative pause/resume/stop switch for one bulk job."""

    def __init__(self) -> None:
        self._running = asyncio.Event()
        self._running.set()
        self._stopped = False

    @property
    def paused(self) -> bool:
        return not self._running.is_set()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def pause(self) -> None:
        if not self._stopped:
            self._running.clear()

    def resume(self) -> None:
        self._running.set()

    def stop(self) -> None:
        self._stopped = True
        self._running.set()

    async def checkpoint(self) -> bool:
        """Wait while paused; ``False`` once the job should stop."""

        await self._running.wait()
        return not self._stopped


def list_downtimes(grid: Sequence[Sequence[Any]]) -> list[BulkRow]:
    """One :class:`BulkRow` per valid pair; broken pairs are logged and skipped."""

    if not grid:
        return []
    schema = detect_schema(grid[0])
    downtime_cols = [column.index for column in schema.columns_for(Category.DOWNTIME)]
    rows: list[BulkRow] = []
    for index in range(1, len(grid), 2):
        submission = grid[index]
        if not cell_text(submission[COL_TIMESTAMP - 1] if submission else ""):
            continue
        try:
            pair = make_pair(grid, index)
        except PairingError as exc:
            log.warning("bulk row skipped: %s", exc, extra={"row": exc.row})
            continue
        answers = [pair.response_text(i) for i in range(COL_CHARACTER, len(pair.response))]
        answers = [text for text in answers if text]
        rows.append(
            BulkRow(
                row=pair.response_row,
                character=pair.character or "Unknown",
                response_count=len(answers),
                st_word_count=sum(word_count(text) for text in answers),
                player_word_count=sum(word_count(pair.submission_text(i)) for i in downtime_cols),
                is_sent=pair.discord_checked,
                status=STATUS_SENT if pair.discord_checked else STATUS_PENDING,
            )
        )
    return rows


def _publish(cache: ProgressCache, rows: list[BulkRow]) -> None:
    cache.put(BULK_STATUS_KEY, [asdict(row) for row in rows])


async def run_bulk_send(
    tab: DowntimeTab,
    dispatcher: DowntimeDispatcher,
    control: JobControl,
    cache: Optional[ProgressCache] = None,
    *,
    actor: str = "bot",
) -> BulkSummary:
    """Send every unsent row of *tab* in order, honouring *control*."""

    cache = cache or get_progress_cache()
    cache.delete(BULK_SUMMARY_KEY)
    rows = list_downtimes(await arun(tab.grid))
    _publish(cache, rows)
    log.info("bulk send started", extra={"sheet": tab.name, "rows": len(rows)})

    success = failure = 0
    for item in rows:
        if item.is_sent:
            continue
        if not await control.checkpoint():
            log.info("bulk send stopped", extra={"sheet": tab.name, "row": item.row})
            break
        item.status = STATUS_IN_PROGRESS
        _publish(cache, rows)
        try:
            outcome = await dispatcher.send_discord(tab, item.row, bulk=True, actor=actor)
        except Exception as exc:
            log.exception("bulk row failed", extra={"sheet": tab.name, "row": item.row})
            item.status = STATUS_ERROR
            item.note = str(exc)
            failure += 1
        else:
            if isinstance(outcome, Sent):
                item.status = STATUS_SENT
                item.is_sent = True
                success += 1
            elif isinstance(outcome, Skipped):
                item.status = STATUS_SKIPPED
                item.note = outcome.reason
                failure += 1
            else:
                item.status = STATUS_ERROR
                item.note = outcome.error
                failure += 1
        _publish(cache, rows)

    summary = BulkSummary(success_count=success, failure_count=failure, stopped=control.stopped)
    cache.put(BULK_SUMMARY_KEY, asdict(summary))
    log.info(
        "bulk send finished",
        extra={"sheet": tab.name, "success": success, "failure": failure, "stopped": control.stopped},
    )
    return summary


def read_progress(cache: Optional[ProgressCache] = None) -> tuple[list[dict[str, Any]], Optional[dict[str, Any]]]:
    cache = cache or get_progress_cache()
    return cache.get(BULK_STATUS_KEY, []), cache.get(BULK_SUMMARY_KEY)
