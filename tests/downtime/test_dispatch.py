import asyncio
import smtplib
from datetime import datetime, timezone

from modules.downtime import dispatch
from modules.downtime.outcomes import Failed, Sent, Skipped
from shared.sheets.downtime import DowntimeTab
from shared.sheets.roster import CharacterProfile
from shared.testing.fakes import RecordingSender, make_settings

ALICE_HOOK = "https://discord.com/api/webhooks/10/alice-token"
NOW = datetime(2025, 3, 20, 18, 30, tzinfo=timezone.utc)


class Prompts:
    def __init__(self, answer=True):
        self.answer = answer
        self.questions = []

    async def __call__(self, question):
        self.questions.append(question)
        return self.answer


class Mailbox:
    def __init__(self, error=None):
        self.error = error
        self.sent = []

    async def __call__(self, to, subject, html_body):
        if self.error is not None:
            raise self.error
        self.sent.append((to, subject, html_body))


def _dispatcher(settings, sender=None, characters=None, mailer=None):
    roster = characters if characters is not None else [CharacterProfile("Alice", "Approved", ALICE_HOOK)]
    return dispatch.DowntimeDispatcher(
        sender=sender or RecordingSender(),
        settings_provider=lambda: settings,
        characters_loader=lambda: roster,
        mailer=mailer or Mailbox(),
        clock=lambda: NOW,
    )


def _unchecked(worksheet, address):
    return (address, [[False]], "USER_ENTERED") in worksheet.updates


def test_discord_message_covers_answered_columns(period_rows):
    message = dispatch.build_discord_message("Alice", "March, 2025", period_rows[0], period_rows[1], period_rows[2])

    assert message == (
        "**Downtime Results for Alice (March, 2025)**\n\n"
        "**Downtime 2**\n*Your Action:* Feed at the club\n*Result:* You fed well.\n\n"
        "**Influence: Elite**\n*Your Action:* Lean on the mayor\n*Result:* The mayor listens.\n"
    )


def test_missing_submission_text_is_labelled(period_rows):
    message = dispatch.build_discord_message("Bob", "March, 2025", period_rows[0], period_rows[3], period_rows[4])
    assert "**Downtime 1**\n*Your Action:* Investigate the murders\n*Result:* You find a clue." in message
    period_rows[3][5] = ""
    message = dispatch.build_discord_message("Bob", "March, 2025", period_rows[0], period_rows[3], period_rows[4])
    assert f"*Your Action:* {dispatch.NO_SUBMISSION_TEXT}" in message


def test_no_answers_means_no_message(period_rows):
    blank = ["", "unprocessed", False, False, "Alice"]
    assert dispatch.build_discord_message("Alice", "x", period_rows[0], period_rows[1], blank) is None
    assert dispatch.build_email("Alice", "x", period_rows[0], period_rows[1], blank) is None


def test_period_label():
    settings = make_settings(DOWNTIME_MONTH="April", DOWNTIME_YEAR="2025")
    assert dispatch.period_label("March 2025", settings) == "March, 2025"
    assert dispatch.period_label("Current Downtime", settings) == "April, 2025"
    assert dispatch.period_label("Current Downtime", make_settings()) == "Current Downtime"


def test_send_discord_delivers_and_stamps(worksheet, settings, no_audit):
    sender = RecordingSender()
    prompts = Prompts()

    outcome = asyncio.run(
        _dispatcher(settings, sender).send_discord(DowntimeTab(worksheet), 2, confirm=prompts, actor="st")
    )

    assert outcome == Sent("Alice")
    assert prompts.questions == ["Send Downtimes to Alice via Discord?"]
    assert sender.sent[0].url == ALICE_HOOK
    assert sender.sent[0].context == "Downtime Alice"
    assert worksheet.cell(3, 1) == "2025-03-20 18:30:00"
    assert worksheet.cell(3, 2) == "sent"
    assert worksheet.cell(3, 3) is True
    assert [call[0] for call in no_audit] == ["Manual Send Discord Triggered", "Sent Discord"]
    assert no_audit[0][2] == "Row: 3, Char: Alice"
    assert no_audit[1][3] == "st"
    assert "alice-token" not in no_audit[1][2]


def test_sent_rows_are_skipped_unless_forced(worksheet, settings, no_audit):
    bob = [CharacterProfile("Bob", "Approved", "https://discord.com/api/webhooks/11/bob")]
    sender = RecordingSender()
    dispatcher = _dispatcher(settings, sender, characters=bob)

    skipped = asyncio.run(dispatcher.send_discord(DowntimeTab(worksheet), 5))
    forced = asyncio.run(dispatcher.send_discord(DowntimeTab(worksheet), 5, force=True))

    assert skipped == Skipped("row 5 is already marked sent")
    assert forced == Sent("Bob")
    assert len(sender.sent) == 1


def test_missing_webhook_unchecks(worksheet, settings, no_audit):
    sender = RecordingSender()
    outcome = asyncio.run(_dispatcher(settings, sender, characters=[]).send_discord(DowntimeTab(worksheet), 3))

    assert isinstance(outcome, Failed)
    assert outcome.error.startswith("No valid Discord webhook found for 'Alice'")
    assert _unchecked(worksheet, "C3")
    assert sender.sent == []


def test_declined_confirmation_unchecks(worksheet, settings, no_audit):
    sender = RecordingSender()
    outcome = asyncio.run(
        _dispatcher(settings, sender).send_discord(DowntimeTab(worksheet), 3, confirm=Prompts(False))
    )

    assert isinstance(outcome, Skipped)
    assert _unchecked(worksheet, "C3")
    assert sender.sent == []


def test_older_sheet_needs_extra_confirmation(worksheet, no_audit):
    settings = make_settings(DOWNTIME_MONTH="April", DOWNTIME_YEAR="2025")
    prompts = Prompts()

    asyncio.run(_dispatcher(settings).send_discord(DowntimeTab(worksheet), 3, confirm=prompts))

    assert len(prompts.questions) == 2
    assert "OLDER month" in prompts.questions[0]
    assert "'April 2025'" in prompts.questions[0]


def test_bulk_sends_never_prompt(worksheet, settings, no_audit):
    prompts = Prompts(False)
    outcome = asyncio.run(_dispatcher(settings).send_discord(DowntimeTab(worksheet), 3, confirm=prompts, bulk=True))

    assert outcome == Sent("Alice")
    assert prompts.questions == []
    assert [call[0] for call in no_audit] == ["Sent Discord"]


def test_delivery_failure_reverts_checkbox(worksheet, settings, no_audit):
    outcome = asyncio.run(_dispatcher(settings, RecordingSender(ok=False)).send_discord(DowntimeTab(worksheet), 3))

    assert isinstance(outcome, Failed)
    assert _unchecked(worksheet, "C3")
    assert worksheet.cell(3, 2) == "processed/pending"
    assert no_audit[-1][0] == "Sent Discord FAILED"


def test_test_mode_requires_valid_test_webhook(worksheet, no_audit):
    settings = make_settings(DISCORD_TEST_MODE="true", TEST_WEBHOOK="YOUR_TEST_WEBHOOK")
    sender = RecordingSender()

    outcome = asyncio.run(_dispatcher(settings, sender).send_discord(DowntimeTab(worksheet), 3))

    assert isinstance(outcome, Failed)
    assert "TEST_WEBHOOK" in outcome.error
    assert sender.sent == []


def test_test_mode_sends_without_player_webhook(worksheet, no_audit):
    test_hook = "https://discord.com/api/webhooks/99/test"
    settings = make_settings(DISCORD_TEST_MODE="true", TEST_WEBHOOK=test_hook)
    sender = RecordingSender()

    outcome = asyncio.run(_dispatcher(settings, sender, characters=[]).send_discord(DowntimeTab(worksheet), 3))

    assert outcome == Sent("Alice")
    assert sender.sent[0].url == test_hook


def test_broken_pair_fails_cleanly(worksheet, settings, no_audit):
    worksheet.rows[2][1] = "input"
    outcome = asyncio.run(_dispatcher(settings).send_discord(DowntimeTab(worksheet), 3))
    assert isinstance(outcome, Failed)


def test_send_email_delivers_and_stamps(worksheet, settings, no_audit):
    mailbox = Mailbox()

    outcome = asyncio.run(
        _dispatcher(settings, mailer=mailbox).send_email(DowntimeTab(worksheet), 5, "bob@example.com")
    )

    assert outcome == Sent("bob@example.com")
    to, subject, body = mailbox.sent[0]
    assert to == "bob@example.com"
    assert subject == "Downtime Results for Bob (March, 2025)"
    assert "<h3>Influence: Underworld</h3>" in body
    assert worksheet.cell(5, 4) is True
    assert no_audit[-1][0] == "Sent Email"


def test_send_email_rejects_bad_address(worksheet, settings, no_audit):
    mailbox = Mailbox()
    outcome = asyncio.run(_dispatcher(settings, mailer=mailbox).send_email(DowntimeTab(worksheet), 3, "not-an-email"))

    assert isinstance(outcome, Failed)
    assert mailbox.sent == []
    assert _unchecked(worksheet, "D3")


def test_send_email_failure_is_reported(worksheet, settings, no_audit):
    mailbox = Mailbox(error=smtplib.SMTPException("relay refused"))
    outcome = asyncio.run(_dispatcher(settings, mailer=mailbox).send_email(DowntimeTab(worksheet), 3, "a@example.com"))

    assert isinstance(outcome, Failed)
    assert "relay refused" in outcome.error
    assert no_audit[-1][0] == "Sent Email FAILED"
    assert _unchecked(worksheet, "D3")


class RaisingSender(RecordingSender):
    async def send(self, url, message, context="General", username=None, avatar_url=None):
        raise RuntimeError("settings sheet unreachable")


class UnstampableTab(DowntimeTab):
    def mark_sent(self, row, when, *, checkbox_col):
        raise ConnectionError("sheet write timed out")


def test_sender_exception_reverts_checkbox(worksheet, settings, no_audit):
    outcome = asyncio.run(_dispatcher(settings, RaisingSender()).send_discord(DowntimeTab(worksheet), 3))

    assert isinstance(outcome, Failed)
    assert "settings sheet unreachable" in outcome.error
    assert _unchecked(worksheet, "C3")
    assert no_audit[-1][0] == "Sent Discord FAILED"


def test_stamp_failure_after_delivery_is_reported(worksheet, settings, no_audit):
    sender = RecordingSender()

    outcome = asyncio.run(_dispatcher(settings, sender).send_discord(UnstampableTab(worksheet), 3))

    assert outcome == Sent("Alice", stamped=False)
    assert len(sender.sent) == 1
    assert worksheet.cell(3, 2) == "processed/pending"
    actions = [call[0] for call in no_audit]
    assert actions[-2:] == ["Sent Status Update FAILED", "Sent Discord"]
    assert "sheet write timed out" in no_audit[-2][2]


def test_email_stamp_failure_is_reported(worksheet, settings, no_audit):
    outcome = asyncio.run(
        _dispatcher(settings).send_email(UnstampableTab(worksheet), 3, "a@example.com")
    )

    assert outcome == Sent("a@example.com", stamped=False)
    assert [call[0] for call in no_audit][-2:] == ["Sent Status Update FAILED", "Sent Email"]


def test_test_mode_prompt_names_the_test_webhook(worksheet, no_audit):
    settings = make_settings(
        DISCORD_TEST_MODE="true",
        TEST_WEBHOOK="https://discord.com/api/webhooks/99/test",
        DOWNTIME_MONTH="March",
        DOWNTIME_YEAR="2025",
    )
    prompts = Prompts()

    asyncio.run(_dispatcher(settings).send_discord(DowntimeTab(worksheet), 3, confirm=prompts))

    assert prompts.questions == ["Send Downtimes to TEST WEBHOOK (for Alice) via Discord?"]


def test_unstamped_send_is_flagged_to_the_operator():
    from modules.downtime.outcomes import describe

    assert describe(Sent("Alice")) == "✅ Sent: Alice"
    assert "could not be marked sent" in describe(Sent("Alice", stamped=False))
