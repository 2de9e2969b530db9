"""Per-character delivery of narrator responses by Discord or email."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Sequence

from modules.downtime.outcomes import Failed, Outcome, Sent, Skipped
from modules.downtime.schema import RowPair, Status, cell_text, make_pair
from shared.config import (
    PROP_DOWNTIME_MONTH,
    PROP_DOWNTIME_YEAR,
    DowntimeSettings,
    get_timezone,
    load_settings,
)
from shared.mailer import asend_email, html_text, is_valid_email
from shared.redaction import mask_email, sanitize_text
from shared.sheets import roster
from shared.sheets.async_adapter import arun
from shared.sheets.audit import alog_audit
from shared.sheets.downtime import (
    COL_CHARACTER,
    COL_SEND_DISCORD,
    COL_SEND_EMAIL,
    DowntimeTab,
    is_period_tab,
    response_row_for,
)
from shared.webhooks import WebhookSender, get_sender

log = logging.getLogger("dtm.downtime.dispatch")

ConfirmFunc = Callable[[str], Awaitable[bool]]
MailFunc = Callable[..., Awaitable[None]]

NO_SUBMISSION_TEXT = "(No submission text found)"


def _sections(header: Sequence[Any], submission: Sequence[Any], response: Sequence[Any]) -> list[tuple[str, str, str]]:
    """``(header, action, result)`` for every answer column with a response."""

    sections = []
    for index in range(COL_CHARACTER, len(header)):
        result = cell_text(response[index]) if index < len(response) else ""
        if not result:
            continue
        action = cell_text(submission[index]) if index < len(submission) else ""
        sections.append((cell_text(header[index]), action or NO_SUBMISSION_TEXT, result))
    return sections


def period_label(tab_name: str, settings: DowntimeSettings) -> str:
    """``"March, 2025"`` from the tab name, or from the configured period."""

    if is_period_tab(tab_name):
        month, year = tab_name.rsplit(" ", 1)
        return f"{month}, {year}"
    month = settings.get(PROP_DOWNTIME_MONTH)
    year = settings.get(PROP_DOWNTIME_YEAR)
    if month and year:
        return f"{month}, {year}"
    return tab_name


def build_discord_message(
    name: str,
    period: str,
    header: Sequence[Any],
    submission: Sequence[Any],
    response: Sequence[Any],
) -> Optional[str]:
    sections = _sections(header, submission, response)
    if not sections:
        return None
    parts = [f"**Downtime Results for {name} ({period})**\n\n"]
    for title, action, result in sections:
        parts.append(f"**{title}**\n*Your Action:* {action}\n*Result:* {result}\n\n")
    return "".join(parts).rstrip() + "\n"


def build_email(
    name: str,
    period: str,
    header: Sequence[Any],
    submission: Sequence[Any],
    response: Sequence[Any],
) -> Optional[tuple[str, str]]:
    """Return ``(subject, html_body)``, or ``None`` when nothing has been answered."""

    sections = _sections(header, submission, response)
    if not sections:
        return None
    subject = f"Downtime Results for {name} ({period})"
    parts = [f"<h2>{html_text(subject)}</h2><hr>"]
    for title, action, result in sections:
        parts.append(
            f"<h3>{html_text(title)}</h3>"
            f"<p><b>Your Action:</b><br>{html_text(action)}</p>"
            f"<p><b>Result:</b><br>{html_text(result)}</p><hr>"
        )
    return subject, "".join(parts)


class DowntimeDispatcher:
    """Sends one response row to its character and stamps the sheet."""

    def __init__(
        self,
        *,
        sender: WebhookSender | None = None,
        settings_provider: Callable[[], DowntimeSettings] | None = None,
        characters_loader: Callable[[], list[roster.CharacterProfile]] | None = None,
        mailer: MailFunc | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._sender = sender or get_sender()
        self._settings_provider = settings_provider or load_settings
        self._characters_loader = characters_loader or roster.load_characters
        self._mailer = mailer or asend_email
        self._clock = clock or (lambda: datetime.now(get_timezone()))

    async def _load_pair(self, tab: DowntimeTab, row: int) -> tuple[list[Any], RowPair]:
        response_row = response_row_for(row)
        grid = await arun(tab.grid)
        if response_row > len(grid):
            raise IndexError(f"row {response_row} is outside the data range of {tab.name!r}")
        return list(grid[0]), make_pair(grid, response_row - 2)

    async def _uncheck(self, tab: DowntimeTab, row: int, col: int) -> None:
        try:
            await arun(tab.set_checkbox, row, col, False)
        except Exception:
            log.warning(
                "checkbox revert failed",
                exc_info=True,
                extra={"sheet": tab.name, "row": row, "col": col},
            )

    async def _stamp(self, tab: DowntimeTab, row: int, col: int, detail: str, actor: str) -> bool:
        """Mark a delivered row sent; a failed stamp is audited, not raised."""

        try:
            await arun(tab.mark_sent, row, self._clock(), checkbox_col=col)
        except Exception as exc:
            log.error(
                "row delivered but not stamped",
                exc_info=True,
                extra={"sheet": tab.name, "row": row, "col": col},
            )
            await alog_audit(
                "Sent Status Update FAILED", tab.name, f"Row: {row}, {detail}, Error: {exc}", user=actor
            )
            return False
        return True

    async def _confirm_sheet(self, tab: DowntimeTab, settings: DowntimeSettings, channel: str, confirm: Optional[ConfirmFunc]) -> bool:
        if confirm is None or tab.name == settings.active_sheet_name:
            return True
        return await confirm(
            f"You are triggering {channel} send on an OLDER month's sheet ('{tab.name}'). "
            f"The active sheet is '{settings.active_sheet_name}'. Continue?"
        )

    async def send_discord(
        self,
        tab: DowntimeTab,
        row: int,
        *,
        confirm: Optional[ConfirmFunc] = None,
        bulk: bool = False,
        force: bool = False,
        actor: str = "bot",
    ) -> Outcome:
        """Post the answered sections of one pair to the character's webhook.

        Rows already marked ``sent`` are skipped unless *force* is set.  Bulk
        sends never prompt.  Any failure after the checkbox could have been
        ticked reverts it.
        """

        try:
            header, pair = await self._load_pair(tab, row)
        except (ValueError, IndexError) as exc:
            # PairingError is a ValueError.
            return Failed(str(exc))
        response_row = pair.response_row

        if pair.status is Status.SENT and not force:
            return Skipped(f"row {response_row} is already marked sent")
        name = pair.character
        if not name:
            return Failed(f"row {response_row} has no character name")

        settings = await arun(self._settings_provider)
        if settings.test_mode and not settings.active_test_webhook():
            await self._uncheck(tab, response_row, COL_SEND_DISCORD)
            return Failed("Test mode is on but TEST_WEBHOOK is not a valid URL; nothing was sent.")

        characters = await arun(self._characters_loader)
        profile = roster.find_character(name, characters)
        webhook = profile.webhook if profile else ""
        if not webhook and not settings.test_mode:
            await self._uncheck(tab, response_row, COL_SEND_DISCORD)
            return Failed(
                f"No valid Discord webhook found for '{name}'. "
                f"Check column {roster.CHAR_WEBHOOK_COL} of the '{roster.CHARACTERS_TAB}' sheet."
            )
        target = webhook or settings.test_webhook

        if not bulk:
            await alog_audit(
                "Manual Send Discord Triggered", tab.name, f"Row: {response_row}, Char: {name}", user=actor
            )
            if not await self._confirm_sheet(tab, settings, "Discord", confirm):
                await self._uncheck(tab, response_row, COL_SEND_DISCORD)
                return Skipped("cancelled by operator")
            recipient = f"TEST WEBHOOK (for {name})" if settings.test_mode else name
            if confirm is not None and not await confirm(f"Send Downtimes to {recipient} via Discord?"):
                await self._uncheck(tab, response_row, COL_SEND_DISCORD)
                return Skipped("cancelled by operator")

        message = build_discord_message(
            name, period_label(tab.name, settings), header, pair.submission, pair.response
        )
        if message is None:
            await self._uncheck(tab, response_row, COL_SEND_DISCORD)
            return Skipped(f"No completed downtime results found for {name} to send.")

        try:
            ok = await self._sender.send(target, message, f"Downtime {name}")
        except Exception as exc:
            log.exception("discord send raised", extra={"sheet": tab.name, "row": response_row})
            await alog_audit(
                "Sent Discord FAILED", tab.name, f"Row: {response_row}, Char: {name}, Error: {exc}", user=actor
            )
            await self._uncheck(tab, response_row, COL_SEND_DISCORD)
            return Failed(f"Discord delivery to {name} failed: {exc}")
        if not ok:
            await alog_audit(
                "Sent Discord FAILED", tab.name, f"Row: {response_row}, Char: {name}", user=actor
            )
            await self._uncheck(tab, response_row, COL_SEND_DISCORD)
            return Failed(f"Discord delivery to {name} failed after retries; check the logs.")

        stamped = await self._stamp(tab, response_row, COL_SEND_DISCORD, f"Char: {name}", actor)
        await alog_audit(
            "Sent Discord",
            tab.name,
            f"Row: {response_row}, Char: {name}, Target: {sanitize_text(target)}",
            user=actor,
        )
        log.info("downtime sent", extra={"sheet": tab.name, "row": response_row, "character": name})
        return Sent(name, stamped=stamped)

    async def send_email(
        self,
        tab: DowntimeTab,
        row: int,
        address: str,
        *,
        confirm: Optional[ConfirmFunc] = None,
        actor: str = "bot",
    ) -> Outcome:
        """Email the answered sections of one pair to *address*.

        The row's status is not checked, so already-sent rows can be emailed.
        """

        try:
            header, pair = await self._load_pair(tab, row)
        except (ValueError, IndexError) as exc:
            return Failed(str(exc))
        response_row = pair.response_row
        name = pair.character or "Unknown"

        if not is_valid_email(address):
            await self._uncheck(tab, response_row, COL_SEND_EMAIL)
            return Failed(f"{address!r} is not a valid email address")

        settings = await arun(self._settings_provider)
        if not await self._confirm_sheet(tab, settings, "Email", confirm):
            await self._uncheck(tab, response_row, COL_SEND_EMAIL)
            return Skipped("cancelled by operator")

        built = build_email(name, period_label(tab.name, settings), header, pair.submission, pair.response)
        if built is None:
            await self._uncheck(tab, response_row, COL_SEND_EMAIL)
            return Skipped(f"No completed downtime results found for {name} to send.")
        subject, html_body = built

        try:
            await self._mailer(address, subject, html_body)
        except Exception as exc:
            log.error(
                "email send failed",
                exc_info=True,
                extra={"sheet": tab.name, "row": response_row, "to": mask_email(address)},
            )
            await alog_audit(
                "Sent Email FAILED", tab.name, f"Row: {response_row}, Char: {name}, Error: {exc}", user=actor
            )
            await self._uncheck(tab, response_row, COL_SEND_EMAIL)
            return Failed(f"Email to {address} failed: {exc}")

        stamped = await self._stamp(tab, response_row, COL_SEND_EMAIL, f"Char: {name}", actor)
        await alog_audit(
            "Sent Email", tab.name, f"Row: {response_row}, Char: {name}, To: {address}", user=actor
        )
        return Sent(address, stamped=stamped)
