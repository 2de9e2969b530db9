"""Form intake: record a new downtime submission on the active period tab."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Sequence

from modules.downtime.schema import Status, cell_text
from shared.config import (
    ConfigError,
    DowntimeSettings,
    SmtpSettings,
    get_smtp_settings,
    get_submissions_email,
    get_timezone,
    is_placeholder,
    load_settings,
)
from shared.mailer import asend_email, html_text
from shared.sheets import core, roster
from shared.sheets.async_adapter import arun
from shared.sheets.audit import alog_audit
from shared.sheets.downtime import (
    COL_CHARACTER,
    NEW_RESPONSE_COLOR,
    DowntimeTab,
    ensure_downtime_tab,
)
from shared.webhooks import WebhookSender, get_sender

log = logging.getLogger("dtm.downtime.intake")


class IntakeError(ValueError):
    """The submitted payload cannot be recorded."""


@dataclass(frozen=True, slots=True)
class FormAnswer:
    title: str
    response: str


@dataclass(frozen=True, slots=True)
class FormSubmission:
    """One form response.  The first answer is the character name."""

    respondent_email: str
    answers: tuple[FormAnswer, ...]
    submitted_at: Optional[datetime] = None

    @property
    def character(self) -> str:
        return self.answers[0].response.strip() if self.answers else ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "FormSubmission":
        """Build from ``{"email": ..., "answers": [{"title": ..., "response": ...}]}``."""

        raw_answers = payload.get("answers")
        if not isinstance(raw_answers, list) or not raw_answers:
            raise IntakeError("payload must carry a non-empty 'answers' list")
        answers = []
        for entry in raw_answers:
            if not isinstance(entry, Mapping) or not cell_text(entry.get("title")):
                raise IntakeError("every answer needs a 'title'")
            answers.append(FormAnswer(cell_text(entry.get("title")), cell_text(entry.get("response"))))
        return cls(respondent_email=cell_text(payload.get("email")), answers=tuple(answers))


@dataclass(slots=True)
class IntakeResult:
    sheet: str
    response_row: int
    character: str
    name_color: str
    notice_sent: bool = False
    warnings: list[str] = field(default_factory=list)


def build_submission_rows(submission: FormSubmission, when: datetime) -> tuple[list[Any], list[Any]]:
    responses = [answer.response for answer in submission.answers]
    submission_row = [core.format_timestamp(when), Status.INPUT.value, "", "", *responses]
    response_row: list[Any] = ["", Status.UNPROCESSED.value, False, False, submission.character]
    response_row.extend([""] * (len(responses) - 1))
    return submission_row, response_row


def build_submission_notice(submission: FormSubmission) -> tuple[str, str]:
    subject = f"New Downtime Form Submitted - {submission.respondent_email or 'unknown'}"
    items = "".join(
        f"<li><b>{html_text(answer.title)}:</b> {html_text(answer.response)}</li>"
        for answer in submission.answers
    )
    return subject, f"<h2>New Downtime Submission</h2><ul>{items}</ul>"


async def record_submission(
    submission: FormSubmission,
    *,
    settings_provider: Callable[[], DowntimeSettings] | None = None,
    tab_factory: Callable[[str, Sequence[str]], DowntimeTab] | None = None,
    characters_loader: Callable[[], list[roster.CharacterProfile]] | None = None,
    narrators_loader: Callable[[], list[roster.NarratorProfile]] | None = None,
    sender: WebhookSender | None = None,
    mailer: Callable[..., Any] | None = None,
    smtp_provider: Callable[[], SmtpSettings] | None = None,
    clock: Callable[[], datetime] | None = None,
) -> IntakeResult:
    """Append the submission/response pair and notify staff.

    Sheet failures are reported to the ST webhook and re-raised.  A failed
    notice email is only recorded as a warning.
    """

    if not submission.character:
        raise IntakeError("the first answer (character name) is empty")
    settings = await arun(settings_provider or load_settings)
    when = submission.submitted_at or (clock or (lambda: datetime.now(get_timezone())))()
    sheet_name = settings.active_sheet_name

    try:
        result = await _write_rows(
            submission, sheet_name, when, tab_factory or ensure_downtime_tab,
            characters_loader or roster.load_characters,
        )
    except Exception as exc:
        log.exception("intake failed", extra={"sheet": sheet_name, "character": submission.character})
        await _report_failure(settings, sender or get_sender(), submission, sheet_name, exc)
        raise

    narrators = await arun(narrators_loader or roster.load_narrators)
    # Staff filling the form on a player's behalf are logged under their narrator name.
    actor = roster.narrator_name_by_email(submission.respondent_email, narrators)
    await alog_audit(
        "Form Submission",
        sheet_name,
        f"Row: {result.response_row}, Char: {submission.character}, From: {submission.respondent_email}",
        user=actor or submission.respondent_email or "form",
    )

    recipient = get_submissions_email()
    smtp = (smtp_provider or get_smtp_settings)()
    if recipient and smtp.configured:
        subject, body = build_submission_notice(submission)
        try:
            await (mailer or asend_email)(recipient, subject, body, smtp=smtp)
            result.notice_sent = True
        except (ConfigError, OSError) as exc:
            # smtplib.SMTPException subclasses OSError.
            log.warning("submission notice failed", exc_info=True, extra={"sheet": sheet_name})
            result.warnings.append(f"notice email failed: {exc}")
    return result


async def _write_rows(
    submission: FormSubmission,
    sheet_name: str,
    when: datetime,
    tab_factory: Callable[[str, Sequence[str]], DowntimeTab],
    characters_loader: Callable[[], list[roster.CharacterProfile]],
) -> IntakeResult:
    titles = [answer.title for answer in submission.answers]
    tab = await arun(tab_factory, sheet_name, titles)
    sub_row, resp_row = build_submission_rows(submission, when)
    response_row = await arun(tab.append_pair, sub_row, resp_row)

    answer_width = len(submission.answers) - 1
    if answer_width > 0:
        await arun(tab.shade, response_row, COL_CHARACTER + 1, NEW_RESPONSE_COLOR, width=answer_width)

    characters = await arun(characters_loader)
    validation = roster.validate_character_name(submission.character, characters)
    await arun(tab.shade, response_row, COL_CHARACTER, validation.color)
    log.info(
        "submission recorded",
        extra={"sheet": tab.name, "row": response_row, "matched": validation.is_match},
    )
    return IntakeResult(
        sheet=tab.name,
        response_row=response_row,
        character=submission.character,
        name_color=validation.color,
    )


async def _report_failure(
    settings: DowntimeSettings,
    sender: WebhookSender,
    submission: FormSubmission,
    sheet_name: str,
    exc: BaseException,
) -> None:
    if is_placeholder(settings.st_webhook):
        log.warning("intake failure not reported: ST_WEBHOOK unset")
        return
    message = (
        f"⚠️ **Downtime intake failed** for '{submission.character}' on sheet '{sheet_name}': "
        f"{type(exc).__name__}: {exc}"
    )
    await sender.send(settings.st_webhook, message, "Intake Failure")
