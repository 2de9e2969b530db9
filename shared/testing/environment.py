"""Utilities for seeding environment variables required by the test suite."""

from __future__ import annotations

import os


_REQUIRED_ENV_FOR_TESTS = {
    "DISCORD_TOKEN": "test-token",
    "GSPREAD_CREDENTIALS": "{}",
    "DOWNTIME_SHEET_ID": "test-sheet",
    "TIMEZONE": "UTC",
    "SETTINGS_CACHE_TTL_SEC": "0",
}


def apply_required_test_environment() -> None:
    """Populate the minimum environment expected by the test suite."""

    for key, value in _REQUIRED_ENV_FOR_TESTS.items():
        os.environ.setdefault(key, value)
