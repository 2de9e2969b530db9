"""SMTP email transport."""

from __future__ import annotations

import asyncio
import html
import logging
import re
import smtplib
from email.message import EmailMessage
from typing import Optional, Sequence

from shared.config import ConfigError, SmtpSettings, get_smtp_settings
from shared.redaction import mask_email

log = logging.getLogger("dtm.mailer")

EMAIL_RE = re.compile(r"^\S+@\S+\.\S+$")
SMTP_TIMEOUT_SEC = 20


def is_valid_email(address: object) -> bool:
    return bool(EMAIL_RE.match(str(address or "").strip()))


def html_text(value: object) -> str:
    """Escape *value* for HTML and keep its line breaks."""

    return html.escape(str(value)).replace("\n", "<br>")


def send_email(
    recipients: str | Sequence[str],
    subject: str,
    html_body: str,
    *,
    text_body: Optional[str] = None,
    smtp: SmtpSettings | None = None,
) -> None:
    """Send one message; raises ``ConfigError`` or the SMTP error on failure."""

    settings = smtp or get_smtp_settings()
    if not settings.configured:
        raise ConfigError("SMTP is not configured (SMTP_HOST and SMTP_FROM are required).")

    to = [recipients] if isinstance(recipients, str) else list(recipients)
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = settings.sender
    msg["To"] = ", ".join(to)
    msg.set_content(text_body or re.sub(r"<[^>]+>", "", html_body.replace("<br>", "\n")))
    msg.add_alternative(html_body, subtype="html")

    with smtplib.SMTP(settings.host, settings.port, timeout=SMTP_TIMEOUT_SEC) as client:
        if settings.use_tls:
            client.starttls()
        if settings.username and settings.password:
            client.login(settings.username, settings.password)
        client.send_message(msg)
    log.info(
        "email sent",
        extra={"subject": subject, "to": ",".join(mask_email(addr) for addr in to)},
    )


async def asend_email(
    recipients: str | Sequence[str],
    subject: str,
    html_body: str,
    *,
    text_body: Optional[str] = None,
    smtp: SmtpSettings | None = None,
) -> None:
    await asyncio.to_thread(
        send_email, recipients, subject, html_body, text_body=text_body, smtp=smtp
    )
