from __future__ import annotations

# config/runtime.py
import os
from typing import Optional


def get_port(default: int = 10000) -> int:
    """
    Returns the port for the aiohttp health/intake server.
    Render provides $PORT; locally we fall back to 10000.
    """
    try:
        return int(os.getenv("PORT", str(default)))
    except ValueError:
        return default


def get_env_name(default: str = "dev") -> str:
    return os.getenv("ENV_NAME", default)


def get_bot_name(default: str = "Downtime-Bot") -> str:
    return os.getenv("BOT_NAME", default)


def _coerce_int(value: Optional[str], fallback: int) -> int:
    try:
        if value is None:
            raise TypeError
        return int(value)
    except (TypeError, ValueError):
        return fallback


def get_command_prefix(default: str = "!") -> str:
    return os.getenv("COMMAND_PREFIX", default)


def get_scheduled_poll_interval_sec(default: int = 3600) -> int:
    """
    Seconds between scheduled-message scans.

    The sheet is polled hourly unless SCHEDULED_POLL_INTERVAL_SEC overrides it;
    values below one minute are clamped to 60.
    """

    value = _coerce_int(os.getenv("SCHEDULED_POLL_INTERVAL_SEC"), default)
    return max(60, value)


def get_settings_cache_ttl_sec(default: int = 300) -> int:
    """Lifetime of the cached Config-tab snapshot."""

    return max(0, _coerce_int(os.getenv("SETTINGS_CACHE_TTL_SEC"), default))


def get_timezone(default: str = "UTC") -> str:
    """IANA timezone name used to interpret spreadsheet dates."""

    return os.getenv("TIMEZONE", default)
