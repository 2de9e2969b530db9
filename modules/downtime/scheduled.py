"""Scheduled-message poll: post every due, unsent row of the scheduled tab."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from shared.config import CHANNEL_PROPERTIES, DowntimeSettings, get_timezone, load_settings
from shared.sheets import core, roster
from shared.sheets.async_adapter import arun
from shared.sheets.audit import alog_audit
from shared.sheets.scheduled import ScheduledMessage, ScheduledMessagesTab, open_scheduled_tab
from shared.webhooks import WebhookSender, get_sender

log = logging.getLogger("dtm.downtime.scheduled")

ROW_DELAY_SEC = 0.5


@dataclass(slots=True)
class ScheduledRunResult:
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    pending: int = 0
    aborted: Optional[str] = None


class _PersonaCache:
    """NPC roster loaded at most once per scan."""

    def __init__(self, loader: Callable[[], list[roster.NpcProfile]]) -> None:
        self._loader = loader
        self._npcs: Optional[list[roster.NpcProfile]] = None

    async def resolve(self, name: str) -> tuple[Optional[str], Optional[str]]:
        if not name:
            return None, None
        if self._npcs is None:
            self._npcs = await arun(self._loader)
        npc = roster.find_npc(name, self._npcs)
        if npc is None:
            log.info("sender not in NPC list; using default appearance", extra={"sender": name})
            return None, None
        return npc.name, npc.avatar_url or None


async def run_scheduled_messages(
    *,
    tab_opener: Callable[[], Optional[ScheduledMessagesTab]] = open_scheduled_tab,
    sender: WebhookSender | None = None,
    settings_provider: Callable[[], DowntimeSettings] | None = None,
    npcs_loader: Callable[[], list[roster.NpcProfile]] | None = None,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
    clock: Callable[[], datetime] | None = None,
) -> ScheduledRunResult:
    """Scan the scheduled tab once.

    Rows are checked in order: a real due date, not yet sent, a body, a known
    channel with a configured webhook, and finally the due time itself.  A
    failed send leaves the row unsent so the next poll retries it.  An error
    raised while handling one row is noted on that row and the scan moves on.
    """

    sender = sender or get_sender()
    settings = await arun(settings_provider or load_settings)
    sleep = sleep or asyncio.sleep
    tz = get_timezone()
    clock = clock or (lambda: datetime.now(tz))
    result = ScheduledRunResult()

    if not settings.configured_channels():
        log.warning("scheduled run aborted: no channel webhooks configured")
        result.aborted = "no channel webhooks configured"
        return result

    tab = await arun(tab_opener)
    if tab is None:
        result.aborted = "scheduled messages tab not found"
        return result

    messages = await arun(tab.read, tz)
    personas = _PersonaCache(npcs_loader or roster.load_npcs)
    for message in messages:
        try:
            outcome = await _process(tab, message, settings, sender, personas, clock)
        except Exception as exc:
            log.exception("scheduled row failed", extra={"row": message.row})
            await _record_row_error(tab, message, exc, clock)
            outcome = "failed"
        if outcome == "sent":
            result.sent += 1
        elif outcome == "failed":
            result.failed += 1
        elif outcome == "pending":
            result.pending += 1
        else:
            result.skipped += 1
        if outcome in ("sent", "failed"):
            await sleep(ROW_DELAY_SEC)

    log.info(
        "scheduled run finished",
        extra={
            "sent": result.sent,
            "failed": result.failed,
            "pending": result.pending,
            "skipped": result.skipped,
        },
    )
    return result


async def _process(
    tab: ScheduledMessagesTab,
    message: ScheduledMessage,
    settings: DowntimeSettings,
    sender: WebhookSender,
    personas: _PersonaCache,
    clock: Callable[[], datetime],
) -> str:
    if message.send_after is None or message.sent:
        return "skipped"
    if not message.body.strip():
        log.info("scheduled row has no body", extra={"row": message.row})
        return "skipped"

    channel = message.channel.strip().lower()
    now = clock()
    stamp = core.format_timestamp(now)
    if channel not in CHANNEL_PROPERTIES:
        await arun(tab.write_log, message.row, f'Error: Invalid channel "{message.channel}" ({stamp})')
        return "skipped"
    url = settings.channel_webhook(channel)
    if url is None:
        await arun(tab.write_log, message.row, f"Error: Webhook not configured for {channel} ({stamp})")
        return "skipped"
    if now < message.send_after:
        return "pending"

    username, avatar_url = await personas.resolve(message.sender)
    await alog_audit(
        "Scheduled Message Send Attempt", tab.name, f"Row: {message.row}, Channel: {channel}"
    )
    ok = await sender.send(url, message.body, f"Scheduled {channel}", username, avatar_url)
    if ok:
        persona = f" as {username}" if username else ""
        await arun(tab.mark_sent, message.row, f"{stamp} - Sent successfully to {channel}{persona}.")
        await alog_audit("Scheduled Message Sent", tab.name, f"Row: {message.row}, Channel: {channel}")
        return "sent"

    await arun(
        tab.write_log,
        message.row,
        f"{stamp} - SEND FAILED to {channel}. Delivery failed after retries; see bot logs.",
    )
    await alog_audit("Scheduled Message FAILED", tab.name, f"Row: {message.row}, Channel: {channel}")
    return "failed"


async def _record_row_error(
    tab: ScheduledMessagesTab,
    message: ScheduledMessage,
    exc: Exception,
    clock: Callable[[], datetime],
) -> None:
    stamp = core.format_timestamp(clock())
    try:
        await arun(tab.write_log, message.row, f"{stamp} - ERROR: {type(exc).__name__}: {exc}")
    except Exception:
        log.warning("scheduled row log note failed", exc_info=True, extra={"row": message.row})
    await alog_audit(
        "Scheduled Message FAILED",
        tab.name,
        f"Row: {message.row}, Channel: {message.channel}, Error: {exc}",
    )
