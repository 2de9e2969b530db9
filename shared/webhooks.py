"""Discord webhook delivery with chunking, test-mode routing and retries.

``WebhookSender.send`` is the only way the bot posts to Discord.  It never
raises for delivery problems: the boolean result tells the caller whether
every chunk landed, and the caller decides what to stamp on the sheet.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import random
from typing import Any, Awaitable, Callable, Mapping, Optional

import aiohttp

from shared.config import DowntimeSettings, is_placeholder, load_settings
from shared.redaction import sanitize_text
from shared.sheets.async_adapter import arun

log = logging.getLogger("dtm.webhooks")

MAX_MESSAGE_LENGTH = 1800
MAX_RETRIES = 2
INITIAL_BACKOFF_MS = 1000
MAX_BACKOFF_MS = 60000
RETRY_AFTER_PAD_MS = 500
INTER_CHUNK_DELAY_MS = 200
REQUEST_TIMEOUT_SEC = 15

TEST_MODE_PREFIX = "🧪 **[TEST MODE]** 🧪\n"
CONTINUATION_PREFIX = "\n"

SleepFunc = Callable[[float], Awaitable[Any]]


def split_message(message: str, prefix: str = "", *, limit: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split *message* into chunks of at most *limit* characters.

    The first chunk carries *prefix*; later chunks start with a newline.
    Splits prefer the last newline within budget, then the last space, then a
    hard cut.  Text after a split is left-trimmed.
    """

    full = prefix + message
    if len(full) <= limit:
        return [full]

    chunks: list[str] = []
    remaining = message
    first = True
    while remaining:
        chunk_prefix = prefix if first else CONTINUATION_PREFIX
        available = max(1, limit - len(chunk_prefix))
        if len(remaining) <= available:
            body = remaining
            remaining = ""
        else:
            split_at = remaining.rfind("\n", 0, available + 1)
            if split_at <= 0:
                split_at = remaining.rfind(" ", 0, available + 1)
            if split_at <= 0:
                split_at = available
            body = remaining[:split_at]
            remaining = remaining[split_at:].lstrip()
        body = body.rstrip()
        if body:
            chunks.append(chunk_prefix + body)
        first = False
    return chunks


def with_wait_flag(url: str) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}wait=true"


def build_payload(content: str, username: Optional[str] = None, avatar_url: Optional[str] = None) -> dict[str, str]:
    payload = {"content": content}
    if username:
        payload["username"] = username
    if avatar_url:
        if avatar_url.startswith(("http://", "https://")):
            payload["avatar_url"] = avatar_url
        else:
            log.warning("webhook:avatar_skipped • reason=not_http • value=%s", avatar_url)
    return payload


def backoff_ms(attempt: int, jitter: float) -> float:
    """Exponential backoff with up to one second of jitter, capped at a minute."""

    return min(INITIAL_BACKOFF_MS * (2**attempt) + jitter * 1000, MAX_BACKOFF_MS)


def retry_after_seconds(headers: Mapping[str, str], body: str) -> float:
    """Return the server-requested wait in seconds, ``0`` when none was given."""

    raw = None
    for key, value in headers.items():
        if str(key).lower() == "retry-after":
            raw = value
            break
    if raw is None:
        try:
            data = json.loads(body or "")
        except ValueError:
            data = None
        if isinstance(data, Mapping):
            raw = data.get("retry_after")
    if raw is None:
        return 0.0
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0.0
    return value if value > 0 and math.isfinite(value) else 0.0


class WebhookSender:
    """Posts messages to Discord webhooks."""

    def __init__(
        self,
        *,
        session: aiohttp.ClientSession | None = None,
        settings_provider: Callable[[], DowntimeSettings] | None = None,
        sleep: SleepFunc | None = None,
        jitter: Callable[[], float] | None = None,
    ) -> None:
        self._session = session
        self._settings_provider = settings_provider or load_settings
        self._sleep = sleep or asyncio.sleep
        self._jitter = jitter or random.random

    async def _pause(self, delay_ms: float) -> None:
        await self._sleep(delay_ms / 1000.0)

    async def send(
        self,
        url: Optional[str],
        message: Optional[str],
        context: str = "General",
        username: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> bool:
        """Deliver *message* to *url*; ``True`` only when every chunk was accepted."""

        if not url or not message:
            log.warning("webhook:skipped • ctx=%s • reason=missing_url_or_message", context)
            return False

        settings = await arun(self._settings_provider)
        target = url
        prefix = ""
        test_url = settings.active_test_webhook()
        if test_url:
            target = test_url
            prefix = TEST_MODE_PREFIX
            log.info("webhook:test_mode • ctx=%s • original=%s", context, sanitize_text(url))
        elif settings.test_mode:
            log.warning(
                "webhook:test_mode_inactive • ctx=%s • reason=test_webhook_unset", context
            )

        if is_placeholder(target):
            log.warning("webhook:refused • ctx=%s • reason=placeholder_url", context)
            return False

        chunks = split_message(message, prefix)
        endpoint = with_wait_flag(target)
        log.info(
            "webhook:sending • ctx=%s • chunks=%d • length=%d • url=%s",
            context,
            len(chunks),
            len(prefix) + len(message),
            sanitize_text(endpoint),
        )

        if self._session is not None:
            return await self._send_chunks(self._session, endpoint, chunks, context, username, avatar_url)
        timeout = aiohttp.ClientTimeout(total=REQUEST_TIMEOUT_SEC)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            return await self._send_chunks(session, endpoint, chunks, context, username, avatar_url)

    async def _send_chunks(
        self,
        session: aiohttp.ClientSession,
        endpoint: str,
        chunks: list[str],
        context: str,
        username: Optional[str],
        avatar_url: Optional[str],
    ) -> bool:
        total = len(chunks)
        for index, chunk in enumerate(chunks, start=1):
            if not chunk.strip():
                continue
            payload = build_payload(chunk, username, avatar_url)
            if not await self._deliver_chunk(session, endpoint, payload, context, index, total):
                log.error("webhook:failed • ctx=%s • chunk=%d/%d • remaining_aborted", context, index, total)
                return False
            if index < total:
                await self._pause(INTER_CHUNK_DELAY_MS)
        log.info("webhook:delivered • ctx=%s • chunks=%d", context, total)
        return True

    async def _deliver_chunk(
        self,
        session: aiohttp.ClientSession,
        endpoint: str,
        payload: Mapping[str, str],
        context: str,
        index: int,
        total: int,
    ) -> bool:
        for attempt in range(MAX_RETRIES + 1):
            delay: float
            try:
                async with session.post(endpoint, json=dict(payload)) as resp:
                    status = resp.status
                    if 200 <= status < 300:
                        log.debug("webhook:chunk_ok • ctx=%s • chunk=%d/%d • status=%s", context, index, total, status)
                        return True
                    body = await resp.text()
                    if status == 429:
                        wait_s = retry_after_seconds(resp.headers, body)
                        fallback = backoff_ms(attempt, self._jitter())
                        if wait_s > 0:
                            delay = max(math.ceil(wait_s * 1000) + RETRY_AFTER_PAD_MS, fallback)
                        else:
                            delay = fallback
                        log.warning(
                            "webhook:rate_limited • ctx=%s • chunk=%d/%d • attempt=%d • wait_ms=%d",
                            context,
                            index,
                            total,
                            attempt + 1,
                            delay,
                        )
                    elif 500 <= status < 600:
                        delay = backoff_ms(attempt, self._jitter())
                        log.warning(
                            "webhook:server_error • ctx=%s • chunk=%d/%d • attempt=%d • status=%s",
                            context,
                            index,
                            total,
                            attempt + 1,
                            status,
                        )
                    else:
                        log.error(
                            "webhook:client_error • ctx=%s • chunk=%d/%d • status=%s • body=%s",
                            context,
                            index,
                            total,
                            status,
                            sanitize_text(body[:300]),
                        )
                        return False
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                delay = backoff_ms(attempt, self._jitter())
                log.warning(
                    "webhook:transport_error • ctx=%s • chunk=%d/%d • attempt=%d • reason=%s",
                    context,
                    index,
                    total,
                    attempt + 1,
                    sanitize_text(repr(exc)),
                )
            if attempt < MAX_RETRIES:
                await self._pause(delay)
        log.error("webhook:retries_exhausted • ctx=%s • chunk=%d/%d", context, index, total)
        return False


_DEFAULT_SENDER: WebhookSender | None = None


def get_sender() -> WebhookSender:
    global _DEFAULT_SENDER
    if _DEFAULT_SENDER is None:
        _DEFAULT_SENDER = WebhookSender()
    return _DEFAULT_SENDER

