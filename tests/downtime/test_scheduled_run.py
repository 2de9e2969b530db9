import asyncio
from datetime import datetime, timezone

from modules.downtime.scheduled import ROW_DELAY_SEC, run_scheduled_messages
from shared.sheets.roster import NpcProfile
from shared.sheets.scheduled import ScheduledMessagesTab
from shared.testing.fakes import FakeWorksheet, RecordingSender, RecordingSleep, make_settings

NOW = datetime(2025, 1, 2, 12, 0, tzinfo=timezone.utc)
DUE = 45658.5  # 2025-01-01 12:00
LATER = 45700.0
ANNOUNCE = "https://discord.com/api/webhooks/2/announce"


def _grid():
    return [
        ["Sent", "Send After", "Channel", "Sender", "Message", "Log"],
        [False, DUE, "#announcements", "The Sheriff", "Curfew tonight", ""],
        [False, LATER, "#announcements", "", "Later", ""],
        [False, DUE, "#ooc", "", "Wrong channel", ""],
        [False, DUE, "#ic-chat", "", "No hook", ""],
        [True, DUE, "#announcements", "", "Old news", "done"],
        [False, "", "#announcements", "", "No date", ""],
        [False, DUE, "#Announcements", "Unknown NPC", "Hello", ""],
    ]


class NpcLoader:
    def __init__(self):
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return [NpcProfile("The Sheriff", "https://img/sheriff.png")]


def _run(worksheet, settings, sender, sleep=None, npcs=None):
    return asyncio.run(
        run_scheduled_messages(
            tab_opener=lambda: ScheduledMessagesTab(worksheet),
            sender=sender,
            settings_provider=lambda: settings,
            npcs_loader=npcs or NpcLoader(),
            sleep=sleep or RecordingSleep(),
            clock=lambda: NOW,
        )
    )


def test_due_rows_are_sent_once(settings, no_audit):
    worksheet = FakeWorksheet(_grid(), title="Scheduled Messages")
    sender = RecordingSender()
    sleep = RecordingSleep()
    npcs = NpcLoader()

    first = _run(worksheet, settings, sender, sleep, npcs)

    assert (first.sent, first.pending, first.failed, first.skipped) == (2, 1, 0, 4)
    assert [m.message for m in sender.sent] == ["Curfew tonight", "Hello"]
    assert sender.sent[0].url == ANNOUNCE
    assert (sender.sent[0].username, sender.sent[0].avatar_url) == ("The Sheriff", "https://img/sheriff.png")
    assert (sender.sent[1].username, sender.sent[1].avatar_url) == (None, None)
    assert npcs.calls == 1
    assert sleep.delays == [ROW_DELAY_SEC, ROW_DELAY_SEC]

    assert worksheet.cell(2, 1) is True
    assert worksheet.cell(2, 6) == "2025-01-02 12:00:00 - Sent successfully to #announcements as The Sheriff."
    assert worksheet.cell(3, 1) is False
    assert worksheet.cell(4, 6) == 'Error: Invalid channel "#ooc" (2025-01-02 12:00:00)'
    assert worksheet.cell(5, 6) == "Error: Webhook not configured for #ic-chat (2025-01-02 12:00:00)"
    assert "Scheduled Message Sent" in [call[0] for call in no_audit]

    second = _run(worksheet, settings, sender)

    assert second.sent == 0
    assert len(sender.sent) == 2


def test_failed_send_stays_unsent(settings, no_audit):
    worksheet = FakeWorksheet(_grid()[:2], title="Scheduled Messages")
    sleep = RecordingSleep()

    result = _run(worksheet, settings, RecordingSender(ok=False), sleep)

    assert result.failed == 1
    assert worksheet.cell(2, 1) is False
    assert "SEND FAILED to #announcements" in worksheet.cell(2, 6)
    assert sleep.delays == [ROW_DELAY_SEC]
    assert [call[0] for call in no_audit] == ["Scheduled Message Send Attempt", "Scheduled Message FAILED"]


def test_no_channels_aborts_before_reading(no_audit):
    opened = []
    result = asyncio.run(
        run_scheduled_messages(
            tab_opener=lambda: opened.append(True),
            sender=RecordingSender(),
            settings_provider=lambda: make_settings(ANNOUNCEMENT_WEBHOOK="YOUR_WEBHOOK"),
            sleep=RecordingSleep(),
        )
    )

    assert result.aborted == "no channel webhooks configured"
    assert opened == []


def test_missing_tab_aborts(settings, no_audit):
    result = asyncio.run(
        run_scheduled_messages(
            tab_opener=lambda: None,
            sender=RecordingSender(),
            settings_provider=lambda: settings,
            sleep=RecordingSleep(),
        )
    )
    assert result.aborted == "scheduled messages tab not found"


class ExplodingSender(RecordingSender):
    """Raises on the first message body it is given."""

    def __init__(self, explode_on):
        super().__init__()
        self.explode_on = explode_on

    async def send(self, url, message, context="General", username=None, avatar_url=None):
        if message == self.explode_on:
            raise RuntimeError("settings sheet unreachable")
        return await super().send(url, message, context, username, avatar_url)


def test_row_error_does_not_stop_the_scan(settings, no_audit):
    grid = [
        ["Sent", "Send After", "Channel", "Sender", "Message", "Log"],
        [False, DUE, "#announcements", "", "first", ""],
        [False, DUE, "#announcements", "", "second", ""],
    ]
    worksheet = FakeWorksheet(grid, title="Scheduled Messages")
    sender = ExplodingSender("first")
    sleep = RecordingSleep()

    result = _run(worksheet, settings, sender, sleep)

    assert (result.sent, result.failed) == (1, 1)
    assert [m.message for m in sender.sent] == ["second"]
    assert worksheet.cell(2, 1) is False
    assert worksheet.cell(2, 6) == "2025-01-02 12:00:00 - ERROR: RuntimeError: settings sheet unreachable"
    assert worksheet.cell(3, 1) is True
    assert sleep.delays == [ROW_DELAY_SEC, ROW_DELAY_SEC]
    failures = [call for call in no_audit if call[0] == "Scheduled Message FAILED"]
    assert len(failures) == 1
    assert "Row: 2" in failures[0][2]


def test_unknown_sender_uses_default_appearance(settings, no_audit):
    grid = [
        ["Sent", "Send After", "Channel", "Sender", "Message", "Log"],
        [False, DUE, "#announcements", "Nobody", "hello", ""],
    ]
    worksheet = FakeWorksheet(grid, title="Scheduled Messages")
    sender = RecordingSender()

    _run(worksheet, settings, sender, npcs=lambda: [])

    assert (sender.sent[0].username, sender.sent[0].avatar_url) == (None, None)
    assert worksheet.cell(2, 6) == "2025-01-02 12:00:00 - Sent successfully to #announcements."
