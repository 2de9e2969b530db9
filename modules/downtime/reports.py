"""Storyteller reports posted to the ST webhook."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional, Sequence

from modules.downtime.outcomes import Failed, Outcome, Sent
from modules.downtime.schema import (
    DOWNTIME_KEYWORDS,
    INFLUENCE_SUBCATEGORIES,
    RESOURCE_SUBCATEGORIES,
    Category,
    PairingError,
    truncate,
)
from modules.downtime.stats import (
    CategoryBreakdown,
    CompletionReport,
    MissingItem,
    WordStats,
    compute_breakdown,
    compute_completion,
    find_missing,
    percent,
)
from shared.config import ConfigError, DowntimeSettings, get_timezone, load_settings
from shared.sheets import roster
from shared.sheets.async_adapter import arun
from shared.sheets.audit import alog_audit
from shared.sheets.downtime import DowntimeTab
from shared.webhooks import WebhookSender, get_sender

log = logging.getLogger("dtm.downtime.reports")

MISSING_DISPLAY_LIMIT = 150

BREAKDOWN_SUBCATEGORIES = {
    Category.INFLUENCE: INFLUENCE_SUBCATEGORIES,
    Category.RESOURCES: RESOURCE_SUBCATEGORIES,
}


def _num(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"


def _word_line(stats: WordStats) -> str:
    return (
        f"  Avg: {stats.average:.1f}, Median: {_num(stats.median)}, "
        f"Min: {stats.minimum} ({stats.min_cell}), Max: {stats.maximum} ({stats.max_cell})\n"
    )


def build_completion_message(sheet_name: str, report: CompletionReport) -> str:
    lines = [f"📊 **Downtime Report ({sheet_name})** 📊\n\n"]
    lines.append(
        f"**Overall Completion:** {report.completion_pct:.1f}% "
        f"({report.completed_cells}/{report.total_cells})\n"
    )
    lines.append(f"**Characters Submitted:** {report.character_count}\n\n")
    lines.append("**Word Count Stats (Submissions):**\n")
    lines.append(_word_line(report.submission_words))
    lines.append("**Word Count Stats (Responses):**\n")
    lines.append(_word_line(report.response_words))
    lines.append("\n**Keyword Breakdown:**\n")

    if not report.keyword_counts:
        lines.append("  _(No keyword data available)_\n")
    for key, total in report.keyword_counts.items():
        if total <= 0:
            continue
        completed = report.keyword_completed_counts.get(key, 0)
        share = percent(total, report.total_cells)
        lines.append(
            f"  • **{key}:** {percent(completed, total):.1f}% ({completed}/{total}) "
            f"_({share:.1f}% of total)_\n"
        )
    return "".join(lines)


def build_missing_message(
    sheet_name: str,
    category: Category,
    items: Sequence[MissingItem],
    sheet_url: Optional[str] = None,
) -> str:
    label = category.label
    if not items:
        return f"✅ All {category.value} responses filled out for sheet: {sheet_name}!"
    lines = [f"📝 **Missing {label} Responses ({sheet_name})** 📝\n\n"]
    for item in items:
        text = truncate(item.text, MISSING_DISPLAY_LIMIT)
        lines.append(f'• **{item.character}** ({item.header} - Cell: {item.cell}): "{text}"\n')
    if sheet_url:
        lines.append(f"\nSheet Link: {sheet_url}")
    return "".join(lines)


def build_breakdown_message(sheet_name: str, breakdown: CategoryBreakdown) -> str:
    lines = [f"📊 **{breakdown.category.label} Report ({sheet_name})** 📊\n\n"]
    overall_total = sum(breakdown.totals.values())
    overall_done = sum(breakdown.completed.values())
    lines.append(
        f"**Overall Completion:** {percent(overall_done, overall_total):.1f}% "
        f"({overall_done}/{overall_total})\n"
    )
    lines.append(f"**Characters Submitted:** {breakdown.character_count}\n\n")
    for sub in breakdown.subcategories:
        total = breakdown.totals.get(sub, 0)
        done = breakdown.completed.get(sub, 0)
        lines.append(f"  • **{sub}:** {percent(done, total):.1f}% ({done}/{total})\n")
    if breakdown.missing:
        lines.append(f"\n**Missing:** {len(breakdown.missing)}\n")
        for item in breakdown.missing:
            text = truncate(item.text, MISSING_DISPLAY_LIMIT)
            lines.append(f'• **{item.character}** ({item.header} - Cell: {item.cell}): "{text}"\n')
    return "".join(lines)


def build_character_count_message(count: int) -> str:
    return (
        f"ℹ️ Character Count Check: There are currently **{count}** approved characters "
        f"in the '{roster.CHARACTERS_TAB}' sheet."
    )


def build_test_message(spreadsheet_title: str, now: datetime) -> str:
    return (
        f"👋 This is a test message from the downtime bot ({spreadsheet_title}) at "
        f"{now.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}. If you see this, the webhook "
        "configuration is being read correctly!"
    )


class ReportPublisher:
    """Builds reports from a period tab and posts them to the ST webhook."""

    def __init__(
        self,
        *,
        sender: WebhookSender | None = None,
        settings_provider: Callable[[], DowntimeSettings] | None = None,
        audit: bool = True,
    ) -> None:
        self._sender = sender or get_sender()
        self._settings_provider = settings_provider or load_settings
        self._audit = audit

    async def _post(self, message: str, context: str, sheet_name: str) -> Outcome:
        try:
            settings = await arun(self._settings_provider)
            url = settings.require_st_webhook()
        except ConfigError as exc:
            log.warning("report not sent: %s", exc, extra={"context": context})
            return Failed(str(exc))
        ok = await self._sender.send(url, message, context)
        if self._audit:
            await alog_audit(context if ok else f"{context} FAILED", sheet_name)
        if ok:
            return Sent(context)
        return Failed(f"{context} could not be delivered after retries; check the logs.")

    async def completion(self, tab: DowntimeTab) -> Outcome:
        grid = await arun(tab.grid)
        if not grid:
            return Failed(f"sheet {tab.name!r} is empty")
        try:
            report = compute_completion(grid[0], grid, Category.DOWNTIME, keywords=DOWNTIME_KEYWORDS)
        except PairingError as exc:
            return Failed(f"row pairing broken on {tab.name!r}: {exc}")
        return await self._post(build_completion_message(tab.name, report), "Downtime Report", tab.name)

    async def missing(self, tab: DowntimeTab, category: Category = Category.DOWNTIME) -> Outcome:
        grid = await arun(tab.grid)
        if not grid:
            return Failed(f"sheet {tab.name!r} is empty")
        try:
            items = find_missing(grid[0], grid, category)
        except PairingError as exc:
            return Failed(f"row pairing broken on {tab.name!r}: {exc}")
        url = getattr(tab.worksheet, "url", None)
        message = build_missing_message(tab.name, category, items, url)
        return await self._post(message, f"Missing {category.label} Report", tab.name)

    async def breakdown(self, tab: DowntimeTab, category: Category) -> Outcome:
        subcategories = BREAKDOWN_SUBCATEGORIES.get(category)
        if subcategories is None:
            return Failed(f"no breakdown defined for {category.value}")
        grid = await arun(tab.grid)
        if not grid:
            return Failed(f"sheet {tab.name!r} is empty")
        try:
            breakdown = compute_breakdown(grid[0], grid, category, subcategories)
        except PairingError as exc:
            return Failed(f"row pairing broken on {tab.name!r}: {exc}")
        message = build_breakdown_message(tab.name, breakdown)
        return await self._post(message, f"{category.label} Breakdown", tab.name)

    async def character_count(self) -> Outcome:
        characters = await arun(roster.load_characters)
        count = roster.count_approved(characters)
        outcome = await self._post(
            build_character_count_message(count), "Character Count", roster.CHARACTERS_TAB
        )
        if isinstance(outcome, Sent):
            return Sent(f"{count} approved characters")
        return outcome

    async def test_message(self, spreadsheet_title: str) -> Outcome:
        message = build_test_message(spreadsheet_title, datetime.now(get_timezone()))
        return await self._post(message, "ST Test Message", spreadsheet_title)
