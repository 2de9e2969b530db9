"""Narrator commands for the downtime workflow (``!dt ...``)."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import discord
from discord.ext import commands
from gspread.exceptions import WorksheetNotFound

from modules.downtime.bulk import JobControl, read_progress, run_bulk_send
from modules.downtime.dispatch import DowntimeDispatcher
from modules.downtime.outcomes import Outcome, describe
from modules.downtime.reports import ReportPublisher
from modules.downtime.scheduled import run_scheduled_messages
from modules.downtime.schema import Category
from modules.downtime.workbook import initialise_workbook
from shared.config import (
    PROP_TEST_MODE,
    PROPERTY_KEYS,
    ConfigError,
    get_config_snapshot,
    get_downtime_sheet_id,
    get_narrator_role_ids,
    load_settings,
    set_property,
)
from shared.redaction import sanitize_text
from shared.sheets import core, roster
from shared.sheets.async_adapter import arun
from shared.sheets.audit import alog_audit
from shared.sheets.downtime import DowntimeTab, open_downtime_tab

log = logging.getLogger("dtm.cogs.downtime")

CONFIRM_TIMEOUT_SEC = 60
_YES = {"y", "yes"}
_NO = {"n", "no"}

MISSING_CATEGORIES = {
    "downtime": Category.DOWNTIME,
    "influence": Category.INFLUENCE,
    "resources": Category.RESOURCES,
}
BREAKDOWN_CATEGORIES = {
    "influence": Category.INFLUENCE,
    "resources": Category.RESOURCES,
}


def narrator_only():
    """Allow members holding a narrator role; everyone when no roles are configured."""

    async def predicate(ctx: commands.Context) -> bool:
        role_ids = get_narrator_role_ids()
        if not role_ids:
            return True
        roles = getattr(ctx.author, "roles", None) or []
        if any(getattr(role, "id", None) in role_ids for role in roles):
            return True
        raise commands.CheckFailure("Narrator role required.")

    return commands.check(predicate)


def _actor(ctx: commands.Context) -> str:
    author = ctx.author
    return f"{getattr(author, 'name', 'unknown')} ({getattr(author, 'id', '?')})"


class Downtime(commands.Cog):
    """Reports, sends and scheduling for downtime periods."""

    def __init__(
        self,
        bot: commands.Bot,
        *,
        dispatcher: DowntimeDispatcher | None = None,
        reports: ReportPublisher | None = None,
    ) -> None:
        self.bot = bot
        self.dispatcher = dispatcher or DowntimeDispatcher()
        self.reports = reports or ReportPublisher()
        self._bulk_control: Optional[JobControl] = None
        self._bulk_task: Optional[asyncio.Task] = None

    async def cog_unload(self) -> None:
        if self._bulk_control is not None:
            self._bulk_control.stop()

    async def _reply(self, ctx: commands.Context, text: str) -> None:
        await ctx.reply(sanitize_text(text), mention_author=False)

    async def _confirm(self, ctx: commands.Context, prompt: str) -> bool:
        await self._reply(ctx, f"{prompt}\nReply `yes` or `no` within {CONFIRM_TIMEOUT_SEC}s.")

        def check(message: discord.Message) -> bool:
            if message.author.id != ctx.author.id or message.channel.id != ctx.channel.id:
                return False
            return message.content.strip().lower() in _YES | _NO

        try:
            reply = await self.bot.wait_for("message", check=check, timeout=CONFIRM_TIMEOUT_SEC)
        except asyncio.TimeoutError:
            await self._reply(ctx, "No answer; cancelled.")
            return False
        return reply.content.strip().lower() in _YES

    async def _open_tab(self, ctx: commands.Context, tab: str) -> Optional[DowntimeTab]:
        try:
            return await arun(open_downtime_tab, tab.strip() or None)
        except WorksheetNotFound:
            name = tab.strip() or "the active period"
            await self._reply(ctx, f"❌ Sheet for {name} not found.")
            return None

    async def _report_outcome(self, ctx: commands.Context, outcome: Outcome) -> None:
        await self._reply(ctx, describe(outcome))

    @commands.group(
        name="dt",
        invoke_without_command=True,
        help="Downtime tools: reports, sends, bulk sends and scheduled messages.",
    )
    @narrator_only()
    async def dt(self, ctx: commands.Context) -> None:
        if ctx.invoked_subcommand is not None:
            return
        await self._reply(
            ctx,
            "Usage: !dt report|missing|breakdown|send|resend|email|bulk|scheduled|"
            "testmode|config|setup|ping-st|count|check",
        )

    @dt.command(name="report", help="Post the completion report for a sheet to the ST channel.")
    @narrator_only()
    async def report(self, ctx: commands.Context, *, tab: str = "") -> None:
        sheet = await self._open_tab(ctx, tab)
        if sheet is not None:
            await self._report_outcome(ctx, await self.reports.completion(sheet))

    @dt.command(name="missing", help="Post unanswered submissions: !dt missing [downtime|influence|resources] [sheet]")
    @narrator_only()
    async def missing(self, ctx: commands.Context, category: str = "downtime", *, tab: str = "") -> None:
        resolved = MISSING_CATEGORIES.get(category.lower())
        if resolved is None:
            # No category given; the first word belongs to the sheet name.
            resolved = Category.DOWNTIME
            tab = f"{category} {tab}".strip()
        sheet = await self._open_tab(ctx, tab)
        if sheet is not None:
            await self._report_outcome(ctx, await self.reports.missing(sheet, resolved))

    @dt.command(name="breakdown", help="Post a sub-category breakdown: !dt breakdown influence|resources [sheet]")
    @narrator_only()
    async def breakdown(self, ctx: commands.Context, category: str, *, tab: str = "") -> None:
        resolved = BREAKDOWN_CATEGORIES.get(category.lower())
        if resolved is None:
            await self._reply(ctx, "Usage: !dt breakdown influence|resources [sheet]")
            return
        sheet = await self._open_tab(ctx, tab)
        if sheet is not None:
            await self._report_outcome(ctx, await self.reports.breakdown(sheet, resolved))

    async def _send(self, ctx: commands.Context, row: int, tab: str, *, force: bool) -> None:
        sheet = await self._open_tab(ctx, tab)
        if sheet is None:
            return
        outcome = await self.dispatcher.send_discord(
            sheet,
            row,
            confirm=lambda prompt: self._confirm(ctx, prompt),
            force=force,
            actor=_actor(ctx),
        )
        await self._report_outcome(ctx, outcome)

    @dt.command(name="send", help="Send one row's results to the character's Discord webhook.")
    @narrator_only()
    async def send(self, ctx: commands.Context, row: int, *, tab: str = "") -> None:
        await self._send(ctx, row, tab, force=False)

    @dt.command(name="resend", help="Send one row again even if it is already marked sent.")
    @narrator_only()
    async def resend(self, ctx: commands.Context, row: int, *, tab: str = "") -> None:
        await self._send(ctx, row, tab, force=True)

    @dt.command(name="email", help="Email one row's results: !dt email <row> <address> [sheet]")
    @narrator_only()
    async def email(self, ctx: commands.Context, row: int, address: str, *, tab: str = "") -> None:
        sheet = await self._open_tab(ctx, tab)
        if sheet is None:
            return
        outcome = await self.dispatcher.send_email(
            sheet,
            row,
            address,
            confirm=lambda prompt: self._confirm(ctx, prompt),
            actor=_actor(ctx),
        )
        await self._report_outcome(ctx, outcome)

    @dt.command(name="bulk", help="Bulk Discord send: !dt bulk start|pause|resume|stop|status [sheet]")
    @narrator_only()
    async def bulk(self, ctx: commands.Context, action: str = "status", *, tab: str = "") -> None:
        action = action.lower()
        running = self._bulk_task is not None and not self._bulk_task.done()
        control = self._bulk_control

        if action == "start":
            if running:
                await self._reply(ctx, "A bulk send is already running.")
                return
            sheet = await self._open_tab(ctx, tab)
            if sheet is None:
                return
            if not await self._confirm(ctx, f"Send every unsent downtime on '{sheet.name}' via Discord?"):
                await self._reply(ctx, "Bulk send cancelled.")
                return
            self._bulk_control = JobControl()
            self._bulk_task = asyncio.create_task(
                self._run_bulk(ctx, sheet, self._bulk_control), name="downtime_bulk_send"
            )
            await self._reply(ctx, f"Bulk send started on '{sheet.name}'.")
            return

        if action in {"pause", "resume", "stop"}:
            if not running or control is None:
                await self._reply(ctx, "No bulk send is running.")
                return
            getattr(control, action)()
            await self._reply(ctx, f"Bulk send {action} requested.")
            return

        if action == "status":
            await self._reply(ctx, self._bulk_status_text(running))
            return

        await self._reply(ctx, "Usage: !dt bulk start|pause|resume|stop|status [sheet]")

    async def _run_bulk(self, ctx: commands.Context, sheet: DowntimeTab, control: JobControl) -> None:
        try:
            summary = await run_bulk_send(sheet, self.dispatcher, control, actor=_actor(ctx))
        except Exception as exc:
            log.exception("bulk send crashed", extra={"sheet": sheet.name})
            await self._reply(ctx, f"❌ Bulk send stopped with an error: {exc}")
            return
        state = "stopped" if summary.stopped else "finished"
        await self._reply(
            ctx,
            f"Bulk send {state}: {summary.success_count} sent, {summary.failure_count} failed or skipped.",
        )

    def _bulk_status_text(self, running: bool) -> str:
        rows, summary = read_progress()
        if not rows:
            return "No bulk send has run recently."
        counts: dict[str, int] = {}
        for row in rows:
            counts[row["status"]] = counts.get(row["status"], 0) + 1
        parts = ", ".join(f"{name}={count}" for name, count in sorted(counts.items()))
        state = "running"
        if running and self._bulk_control is not None and self._bulk_control.paused:
            state = "paused"
        elif not running:
            state = "idle"
        text = f"Bulk send {state} • {len(rows)} rows • {parts}"
        if summary:
            text += f"\nLast summary: {summary['success_count']} sent, {summary['failure_count']} failed."
        return text

    @dt.command(name="scheduled", help="Run the scheduled-messages scan now.")
    @narrator_only()
    async def scheduled(self, ctx: commands.Context) -> None:
        result = await run_scheduled_messages()
        if result.aborted:
            await self._reply(ctx, f"Scheduled scan skipped: {result.aborted}.")
            return
        await self._reply(
            ctx,
            f"Scheduled scan done: {result.sent} sent, {result.failed} failed, "
            f"{result.pending} pending, {result.skipped} skipped.",
        )

    @dt.command(name="testmode", help="Show or toggle Discord test mode: !dt testmode [on|off]")
    @narrator_only()
    async def testmode(self, ctx: commands.Context, state: str = "") -> None:
        state = state.lower()
        if state not in {"", "on", "off"}:
            await self._reply(ctx, "Usage: !dt testmode [on|off]")
            return
        if state:
            await arun(set_property, PROP_TEST_MODE, "true" if state == "on" else "false")
        settings = await arun(load_settings, force=True)
        if settings.test_mode and settings.active_test_webhook() is None:
            await self._reply(ctx, "⚠️ Test mode is ON but TEST_WEBHOOK is not set; sends will be refused.")
            return
        await self._reply(ctx, f"Test mode is {'ON' if settings.test_mode else 'OFF'}.")

    @dt.command(name="config", help="Show or update operator properties: !dt config [KEY] [value]")
    @narrator_only()
    async def config_cmd(self, ctx: commands.Context, key: str = "", *, value: str = "") -> None:
        key = key.strip().upper()
        if key and key not in PROPERTY_KEYS:
            await self._reply(ctx, f"Unknown property '{key}'. Known: {', '.join(PROPERTY_KEYS)}")
            return
        if key and value.strip():
            await arun(set_property, key, value.strip())
            await alog_audit("Config Property Updated", "N/A", f"'{key}' changed", user=_actor(ctx))
        settings = await arun(load_settings, force=True)
        snapshot = get_config_snapshot(settings)
        lines = [f"{name} = {snapshot[name]}" for name in ([key] if key else PROPERTY_KEYS)]
        await self._reply(ctx, "\n".join(lines))

    @dt.command(name="setup", help="Create any missing Config, Log, Scheduled Messages and period tabs.")
    @narrator_only()
    async def setup_tabs(self, ctx: commands.Context) -> None:
        settings = await arun(load_settings)
        period = settings.active_sheet_name
        if not await self._confirm(ctx, f"Create any missing bot tabs, including '{period}'?"):
            await self._reply(ctx, "Setup cancelled.")
            return
        result = await arun(initialise_workbook, period)
        await alog_audit("Project Initialised", "N/A", result.summary(), user=_actor(ctx))
        await self._reply(ctx, f"Setup complete. {result.summary()}")

    @dt.command(name="ping-st", help="Post a test message to the ST webhook.")
    @narrator_only()
    async def ping_st(self, ctx: commands.Context) -> None:
        spreadsheet = await arun(core.open_spreadsheet, get_downtime_sheet_id())
        await self._report_outcome(ctx, await self.reports.test_message(spreadsheet.title))

    @dt.command(name="count", help="Post the approved character count to the ST channel.")
    @narrator_only()
    async def count(self, ctx: commands.Context) -> None:
        await self._report_outcome(ctx, await self.reports.character_count())

    @dt.command(name="check", help="Check a character name against the roster.")
    @narrator_only()
    async def check(self, ctx: commands.Context, *, name: str) -> None:
        characters = await arun(roster.load_characters)
        result = roster.validate_character_name(name, characters)
        if not result.is_match:
            await self._reply(ctx, f"🟠 No character named '{name}' in the roster.")
        elif not result.has_webhook:
            await self._reply(ctx, f"🔴 '{name}' exists but has no valid Discord webhook.")
        else:
            await self._reply(ctx, f"🟢 '{name}' matches and has a webhook.")

    async def cog_command_error(self, ctx: commands.Context, error: commands.CommandError) -> None:
        original = getattr(error, "original", error)
        if isinstance(error, commands.CheckFailure):
            await self._reply(ctx, str(error) or "You are not allowed to use this command.")
        elif isinstance(error, (commands.MissingRequiredArgument, commands.BadArgument)):
            await self._reply(ctx, f"⚠️ {error}")
        elif isinstance(original, ConfigError):
            await self._reply(ctx, f"⚙️ {original}")
        else:
            log.error(
                "downtime command failed",
                exc_info=(type(original), original, original.__traceback__),
                extra={"command": getattr(ctx.command, "qualified_name", "-")},
            )
            await self._reply(ctx, f"❌ {type(original).__name__}: {original}")


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(Downtime(bot))
