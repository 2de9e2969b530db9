"""Runtime configuration helpers for the downtime bot.

Two layers are merged here:

* process environment (validated at import, like every deployment secret), and
* operator properties kept in the spreadsheet's ``Config`` tab.  Each property
  can be overridden by an environment variable of the same name, which is how
  local runs and tests pin webhooks without touching the sheet.
"""

from __future__ import annotations

import logging
import os
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from gspread.exceptions import WorksheetNotFound

from config import runtime as _runtime
from shared.redaction import mask_secret, mask_service_account, mask_webhook, sanitize_text
from shared.sheets import core

__all__ = [
    "CHANNEL_PROPERTIES",
    "ConfigError",
    "DEFAULT_SHEET_NAME",
    "DowntimeSettings",
    "PROPERTY_KEYS",
    "SmtpSettings",
    "get_bot_name",
    "get_command_prefix",
    "get_config_snapshot",
    "get_config_tab",
    "get_discord_token",
    "get_downtime_sheet_id",
    "get_env_name",
    "get_intake_token",
    "get_narrator_role_ids",
    "get_smtp_settings",
    "get_submissions_email",
    "get_timezone",
    "invalidate_settings",
    "is_placeholder",
    "load_settings",
    "set_property",
]

log = logging.getLogger("dtm.config")

# ===== Config Schema (authoritative) =====
_REQUIRED_ENV = (
    "GSPREAD_CREDENTIALS",
    "DOWNTIME_SHEET_ID",
)


def _require_env(name: str) -> str:
    value = os.getenv(name)
    if value is None or str(value).strip() == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


for _name in _REQUIRED_ENV:
    _require_env(_name)

_MISSING_VALUE = "—"
_INT_RE = re.compile(r"\d+")
_TRUE_WORDS = {"1", "true", "yes", "on"}
_FALSE_WORDS = {"0", "false", "no", "off"}

PLACEHOLDER_MARKER = "YOUR_"
DEFAULT_SHEET_NAME = "Current Downtime"

PROP_ST_WEBHOOK = "ST_WEBHOOK"
PROP_TEST_MODE = "DISCORD_TEST_MODE"
PROP_TEST_WEBHOOK = "TEST_WEBHOOK"
PROP_ANNOUNCEMENT_WEBHOOK = "ANNOUNCEMENT_WEBHOOK"
PROP_IC_CHAT_WEBHOOK = "IC_CHAT_WEBHOOK"
PROP_IC_NEWS_FEED_WEBHOOK = "IC_NEWS_FEED_WEBHOOK"
PROP_DOWNTIME_YEAR = "DOWNTIME_YEAR"
PROP_DOWNTIME_MONTH = "DOWNTIME_MONTH"
PROP_LARP_NAME = "LARP_NAME"
PROP_TASK_COLOR = "TASK_COLOR_HEX"

PROPERTY_KEYS = (
    PROP_ST_WEBHOOK,
    PROP_TEST_MODE,
    PROP_TEST_WEBHOOK,
    PROP_ANNOUNCEMENT_WEBHOOK,
    PROP_IC_CHAT_WEBHOOK,
    PROP_IC_NEWS_FEED_WEBHOOK,
    PROP_DOWNTIME_YEAR,
    PROP_DOWNTIME_MONTH,
    PROP_LARP_NAME,
    PROP_TASK_COLOR,
)

CHANNEL_PROPERTIES: Mapping[str, str] = {
    "#announcements": PROP_ANNOUNCEMENT_WEBHOOK,
    "#ic-chat": PROP_IC_CHAT_WEBHOOK,
    "#ic-news-feed": PROP_IC_NEWS_FEED_WEBHOOK,
}

_SECRET_KEYS = {
    "DISCORD_TOKEN",
    "GSPREAD_CREDENTIALS",
    "SMTP_PASSWORD",
    "INTAKE_TOKEN",
}


class ConfigError(RuntimeError):
    """Raised when an operation needs configuration that is missing or a placeholder."""


def is_placeholder(value: object) -> bool:
    """Return ``True`` when *value* is empty or still a ``YOUR_...`` template."""

    text = "" if value is None else str(value).strip()
    return not text or PLACEHOLDER_MARKER in text


def _truthy(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in _TRUE_WORDS


@dataclass(frozen=True)
class DowntimeSettings:
    """Immutable snapshot of the operator properties."""

    properties: Mapping[str, str] = field(default_factory=dict)

    def get(self, key: str, default: str = "") -> str:
        value = self.properties.get(key)
        if value is None:
            return default
        text = str(value).strip()
        return text if text else default

    @property
    def st_webhook(self) -> str:
        return self.get(PROP_ST_WEBHOOK)

    @property
    def test_mode(self) -> bool:
        return _truthy(self.get(PROP_TEST_MODE))

    @property
    def test_webhook(self) -> str:
        return self.get(PROP_TEST_WEBHOOK)

    @property
    def larp_name(self) -> str:
        return self.get(PROP_LARP_NAME, "Downtime")

    @property
    def active_sheet_name(self) -> str:
        month = self.get(PROP_DOWNTIME_MONTH)
        year = self.get(PROP_DOWNTIME_YEAR)
        if month and year:
            return f"{month} {year}"
        return DEFAULT_SHEET_NAME

    def active_test_webhook(self) -> Optional[str]:
        """Return the test webhook when test mode is on and a real URL is set."""

        if not self.test_mode:
            return None
        url = self.test_webhook
        if is_placeholder(url):
            return None
        return url

    def require_st_webhook(self) -> str:
        url = self.st_webhook
        if is_placeholder(url):
            raise ConfigError(
                f"{PROP_ST_WEBHOOK} is not configured; set it in the Config tab."
            )
        return url

    def channel_webhook(self, channel: str) -> Optional[str]:
        """Return the configured webhook for *channel*, ``None`` when unusable."""

        key = CHANNEL_PROPERTIES.get(str(channel or "").strip().lower())
        if key is None:
            return None
        url = self.get(key)
        return None if is_placeholder(url) else url

    def configured_channels(self) -> Dict[str, str]:
        channels: Dict[str, str] = {}
        for channel in CHANNEL_PROPERTIES:
            url = self.channel_webhook(channel)
            if url:
                channels[channel] = url
        return channels


_SETTINGS_LOCK = threading.Lock()
_SETTINGS: Optional[DowntimeSettings] = None
_SETTINGS_LOADED_AT = 0.0


def get_downtime_sheet_id() -> str:
    return (os.getenv("DOWNTIME_SHEET_ID") or "").strip()


def get_config_tab() -> str:
    return (os.getenv("CONFIG_TAB") or "Config").strip() or "Config"


def _read_config_tab() -> Dict[str, str]:
    sheet_id = get_downtime_sheet_id()
    tab = get_config_tab()
    try:
        values = core.get_config_dict(sheet_id, tab, force=True)
    except WorksheetNotFound:
        log.warning("config: %s tab missing; using environment only", tab)
        return {}
    normalized: Dict[str, str] = {}
    for key, value in values.items():
        key_norm = (key or "").strip().upper()
        if key_norm:
            normalized[key_norm] = value
    return normalized


def load_settings(*, force: bool = False) -> DowntimeSettings:
    """Return the cached :class:`DowntimeSettings`, reloading after the TTL."""

    global _SETTINGS, _SETTINGS_LOADED_AT

    ttl = _runtime.get_settings_cache_ttl_sec()
    now = time.monotonic()
    with _SETTINGS_LOCK:
        if (
            not force
            and _SETTINGS is not None
            and ttl > 0
            and now - _SETTINGS_LOADED_AT < ttl
        ):
            return _SETTINGS

        merged: Dict[str, str] = {}
        sheet_values = _read_config_tab()
        for key in PROPERTY_KEYS:
            if key in sheet_values:
                merged[key] = sheet_values[key]
            override = os.getenv(key)
            if override is not None and override.strip():
                merged[key] = override.strip()

        _SETTINGS = DowntimeSettings(properties=merged)
        _SETTINGS_LOADED_AT = now
        log.info(
            "settings loaded",
            extra={
                "keys": len(merged),
                "test_mode": _SETTINGS.test_mode,
                "active_sheet": _SETTINGS.active_sheet_name,
            },
        )
        return _SETTINGS


def invalidate_settings() -> None:
    global _SETTINGS
    with _SETTINGS_LOCK:
        _SETTINGS = None


def set_property(key: str, value: object) -> str:
    """Persist an operator property into the Config tab and drop the cache."""

    key_norm = str(key or "").strip().upper()
    if key_norm not in PROPERTY_KEYS:
        raise KeyError(f"unknown property: {key}")
    result = core.upsert_row(
        get_downtime_sheet_id(),
        get_config_tab(),
        {"Key": key_norm, "Value": "" if value is None else str(value)},
        key_columns=("Key",),
    )
    invalidate_settings()
    if os.getenv(key_norm):
        log.warning(
            "config: %s written to sheet but an environment override is set", key_norm
        )
    log.info("property %s", result, extra={"key": key_norm})
    return result


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_WORDS:
        return True
    if value in _FALSE_WORDS:
        return False
    return default


def _int_set(raw: str | None) -> Set[int]:
    values: Set[int] = set()
    if not raw:
        return values
    for match in _INT_RE.finditer(raw):
        try:
            values.add(int(match.group(0)))
        except (TypeError, ValueError):
            continue
    return values


def get_discord_token() -> str:
    return (os.getenv("DISCORD_TOKEN") or "").strip()


def get_env_name() -> str:
    return _runtime.get_env_name()


def get_bot_name() -> str:
    return _runtime.get_bot_name()


def get_command_prefix() -> str:
    return _runtime.get_command_prefix()


def get_narrator_role_ids() -> Set[int]:
    return _int_set(os.getenv("NARRATOR_ROLE_IDS"))


def get_timezone() -> ZoneInfo:
    """Return the spreadsheet timezone, falling back to UTC when unknown."""

    name = (_runtime.get_timezone() or "UTC").strip() or "UTC"
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError:
        log.warning("config: TIMEZONE=%s unknown; using UTC", name)
        return ZoneInfo("UTC")


def get_submissions_email() -> str:
    return (os.getenv("SUBMISSIONS_EMAIL") or "").strip()


def get_intake_token() -> str:
    return (os.getenv("INTAKE_TOKEN") or "").strip()


@dataclass(frozen=True)
class SmtpSettings:
    host: str
    port: int
    username: str
    password: str
    sender: str
    use_tls: bool

    @property
    def configured(self) -> bool:
        return bool(self.host and self.sender)


def get_smtp_settings() -> SmtpSettings:
    try:
        port = int(os.getenv("SMTP_PORT") or 587)
    except ValueError:
        log.warning("config: SMTP_PORT invalid; using 587")
        port = 587
    username = (os.getenv("SMTP_USERNAME") or "").strip()
    return SmtpSettings(
        host=(os.getenv("SMTP_HOST") or "").strip(),
        port=port,
        username=username,
        password=os.getenv("SMTP_PASSWORD") or "",
        sender=(os.getenv("SMTP_FROM") or username).strip(),
        use_tls=_env_bool("SMTP_USE_TLS", True),
    )


def _redact_value(key: str, value: object) -> str:
    """Best-effort redaction for config logging."""

    key_upper = str(key).upper()
    if value in (None, "", [], (), {}, set()):
        return _MISSING_VALUE

    if key_upper in _SECRET_KEYS or "TOKEN" in key_upper or "PASSWORD" in key_upper:
        text = str(value).strip()
        if "service_account" in text and "private_key" in text:
            return mask_service_account(text)
        return mask_secret(text)

    if key_upper.endswith("WEBHOOK"):
        text = str(value)
        if is_placeholder(text):
            return f"placeholder ({text})"
        return mask_webhook(text)

    return str(sanitize_text(value))


def get_config_snapshot(settings: DowntimeSettings | None = None) -> Dict[str, str]:
    """Return env and property values with secrets masked, ready for logging."""

    smtp = get_smtp_settings()
    snapshot: Dict[str, object] = {
        "ENV_NAME": get_env_name(),
        "BOT_NAME": get_bot_name(),
        "DISCORD_TOKEN": get_discord_token(),
        "GSPREAD_CREDENTIALS": os.getenv("GSPREAD_CREDENTIALS", ""),
        "DOWNTIME_SHEET_ID": get_downtime_sheet_id(),
        "CONFIG_TAB": get_config_tab(),
        "TIMEZONE": _runtime.get_timezone(),
        "NARRATOR_ROLE_IDS": sorted(get_narrator_role_ids()),
        "SMTP_HOST": smtp.host,
        "SMTP_PASSWORD": smtp.password,
        "SUBMISSIONS_EMAIL": get_submissions_email(),
        "INTAKE_TOKEN": get_intake_token(),
        "SCHEDULED_POLL_INTERVAL_SEC": _runtime.get_scheduled_poll_interval_sec(),
    }
    if settings is not None:
        for key in PROPERTY_KEYS:
            snapshot[key] = settings.get(key)
    return {key: _redact_value(key, value) for key, value in snapshot.items()}
