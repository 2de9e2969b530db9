import asyncio
from datetime import datetime, timezone

import pytest

from modules.downtime import intake
from shared.config import SmtpSettings
from shared.sheets.downtime import DowntimeTab
from shared.sheets.roster import COLOR_NO_MATCH, COLOR_VALID, CharacterProfile, NarratorProfile
from shared.testing.fakes import FakeWorksheet, RecordingSender

WHEN = datetime(2025, 3, 5, 20, 15, tzinfo=timezone.utc)
SMTP = SmtpSettings("smtp.example.com", 587, "", "", "bot@example.com", True)
PAYLOAD = {
    "email": "player@example.com",
    "answers": [
        {"title": "Character Name", "response": "Alice"},
        {"title": "Downtime 1", "response": "Patrol the docks"},
        {"title": "Downtime 2", "response": "Feed <quietly>"},
    ],
}


class Tabs:
    def __init__(self):
        self.worksheet = FakeWorksheet([["Timestamp", "Status", "Send Discord", "Send Email", "Character Name"]])
        self.opened = []

    def __call__(self, name, titles):
        self.opened.append((name, list(titles)))
        self.worksheet.title = name
        return DowntimeTab(self.worksheet)


class Mailbox:
    def __init__(self, error=None):
        self.error = error
        self.sent = []

    async def __call__(self, to, subject, body, **kwargs):
        if self.error is not None:
            raise self.error
        self.sent.append((to, subject, body))


def _record(settings, tabs, *, characters=(), narrators=(), mailer=None, sender=None, smtp=SMTP):
    submission = intake.FormSubmission.from_payload(PAYLOAD)
    return asyncio.run(
        intake.record_submission(
            submission,
            settings_provider=lambda: settings,
            tab_factory=tabs,
            characters_loader=lambda: list(characters),
            narrators_loader=lambda: list(narrators),
            sender=sender or RecordingSender(),
            mailer=mailer or Mailbox(),
            smtp_provider=lambda: smtp,
            clock=lambda: WHEN,
        )
    )


def test_payload_parsing():
    submission = intake.FormSubmission.from_payload(PAYLOAD)
    assert submission.character == "Alice"
    assert submission.respondent_email == "player@example.com"
    assert submission.answers[1] == intake.FormAnswer("Downtime 1", "Patrol the docks")


@pytest.mark.parametrize("payload", [{}, {"answers": []}, {"answers": [{"response": "x"}]}, {"answers": "nope"}])
def test_payload_rejects_bad_shapes(payload):
    with pytest.raises(intake.IntakeError):
        intake.FormSubmission.from_payload(payload)


def test_rows_pair_submission_and_response():
    submission = intake.FormSubmission.from_payload(PAYLOAD)
    sub, resp = intake.build_submission_rows(submission, WHEN)

    assert sub == ["2025-03-05 20:15:00", "input", "", "", "Alice", "Patrol the docks", "Feed <quietly>"]
    assert resp == ["", "unprocessed", False, False, "Alice", "", ""]


def test_notice_escapes_answers():
    subject, body = intake.build_submission_notice(intake.FormSubmission.from_payload(PAYLOAD))
    assert subject == "New Downtime Form Submitted - player@example.com"
    assert "<li><b>Downtime 2:</b> Feed &lt;quietly&gt;</li>" in body


def test_record_appends_pair_and_shades(settings, no_audit, monkeypatch):
    monkeypatch.delenv("SUBMISSIONS_EMAIL", raising=False)
    tabs = Tabs()
    alice = CharacterProfile("Alice", "Approved", "https://discord.com/api/webhooks/1/a")

    result = _record(settings, tabs, characters=[alice])

    assert tabs.opened == [("March 2025", ["Character Name", "Downtime 1", "Downtime 2"])]
    assert result.sheet == "March 2025"
    assert result.response_row == 3
    assert result.name_color == COLOR_VALID
    assert result.notice_sent is False
    assert tabs.worksheet.rows[1][4] == "Alice"
    assert tabs.worksheet.rows[2][1] == "unprocessed"
    assert [address for address, _ in tabs.worksheet.formats] == ["F3:G3", "E3"]
    assert no_audit[0][0] == "Form Submission"
    assert no_audit[0][3] == "player@example.com"


def test_unknown_character_gets_warning_colour(settings, no_audit, monkeypatch):
    monkeypatch.delenv("SUBMISSIONS_EMAIL", raising=False)
    assert _record(settings, Tabs()).name_color == COLOR_NO_MATCH


def test_notice_email_goes_to_submissions_inbox(settings, no_audit, monkeypatch):
    monkeypatch.setenv("SUBMISSIONS_EMAIL", "st@example.com")
    mailbox = Mailbox()

    result = _record(settings, Tabs(), mailer=mailbox)

    assert result.notice_sent is True
    assert mailbox.sent[0][0] == "st@example.com"


def test_notice_failure_is_a_warning(settings, no_audit, monkeypatch):
    monkeypatch.setenv("SUBMISSIONS_EMAIL", "st@example.com")

    result = _record(settings, Tabs(), mailer=Mailbox(error=OSError("connection refused")))

    assert result.notice_sent is False
    assert result.warnings == ["notice email failed: connection refused"]


def test_sheet_failure_is_reported_and_raised(settings, no_audit):
    sender = RecordingSender()

    def broken(_name, _titles):
        raise RuntimeError("quota exceeded")

    with pytest.raises(RuntimeError):
        _record(settings, broken, sender=sender)

    assert sender.sent[0].url == "https://discord.com/api/webhooks/1/st-token"
    assert "Downtime intake failed" in sender.sent[0].message
    assert no_audit == []


def test_narrator_submissions_are_audited_by_name(settings, no_audit, monkeypatch):
    monkeypatch.delenv("SUBMISSIONS_EMAIL", raising=False)

    _record(settings, Tabs(), narrators=[NarratorProfile(name="Morgan", email="Player@Example.com")])

    assert no_audit[0][3] == "Morgan"
