"""Result types returned by every send operation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True, slots=True)
class Sent:
    detail: str = ""
    # False when delivery worked but the sheet row could not be stamped.
    stamped: bool = True


@dataclass(frozen=True, slots=True)
class Skipped:
    reason: str


@dataclass(frozen=True, slots=True)
class Failed:
    error: str


Outcome = Union[Sent, Skipped, Failed]


def describe(outcome: Outcome) -> str:
    """One-line operator summary of *outcome*."""

    if isinstance(outcome, Sent):
        text = f"✅ Sent{': ' + outcome.detail if outcome.detail else ''}"
        if not outcome.stamped:
            text += " (⚠️ the sheet row could not be marked sent; stamp it by hand)"
        return text
    if isinstance(outcome, Skipped):
        return f"⏭️ Skipped: {outcome.reason}"
    return f"❌ Failed: {outcome.error}"
