"""Pytest configuration for shared test fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


def _ensure_project_root_on_path(source_file: Path) -> None:
    """Add the repository root to ``sys.path`` when running from subpackages."""

    for candidate in [source_file.parent, *source_file.parents]:
        shared_dir = candidate / "shared"
        if shared_dir.is_dir():
            project_root = str(candidate)
            if project_root not in sys.path:
                sys.path.insert(0, project_root)
            break


_ensure_project_root_on_path(Path(__file__).resolve())

from shared.testing.environment import apply_required_test_environment

apply_required_test_environment()

from shared.testing.fakes import FakeWorksheet, RecordingSender, make_settings  # noqa: E402

HEADER = [
    "Timestamp",
    "Status",
    "Send Discord",
    "Send Email",
    "Character Name",
    "Downtime 1",
    "Downtime 2",
    "Influence: Elite",
    "Influence: Underworld",
    "Resources",
]


@pytest.fixture
def period_rows() -> list[list]:
    """Header plus two character pairs on a ``March 2025`` tab."""

    return [
        list(HEADER),
        [45700.5, "input", "", "", "Alice", "Patrol the docks", "Feed at the club", "Lean on the mayor", "", "Buy a car"],
        ["", "processed/pending", False, False, "Alice", "", "You fed well.", "The mayor listens.", "", ""],
        [45701.25, "input", "", "", "Bob", "Investigate the murders", "", "", "Ask the gangs", ""],
        ["", "sent", True, False, "Bob", "You find a clue.", "", "", "The gangs refuse.", ""],
    ]


@pytest.fixture
def worksheet(period_rows) -> FakeWorksheet:
    return FakeWorksheet(period_rows, title="March 2025")


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def settings():
    return make_settings(
        ST_WEBHOOK="https://discord.com/api/webhooks/1/st-token",
        DOWNTIME_MONTH="March",
        DOWNTIME_YEAR="2025",
        ANNOUNCEMENT_WEBHOOK="https://discord.com/api/webhooks/2/announce",
        IC_CHAT_WEBHOOK="https://discord.com/api/webhooks/3/YOUR_WEBHOOK",
    )


@pytest.fixture
def no_audit(monkeypatch):
    """Record audit rows instead of writing the Log tab."""

    calls: list[tuple] = []

    def _fake_log_audit(action, sheet_name, details="", *, user="bot", sheet_id=None):
        calls.append((action, sheet_name, details, user))
        return True

    monkeypatch.setattr("shared.sheets.audit.log_audit", _fake_log_audit)
    return calls
