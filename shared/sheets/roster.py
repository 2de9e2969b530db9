"""Read-only reference data: characters, NPC personas and narrators.

All lookups are case-insensitive on trimmed names.  The parsers work on raw
value grids so they can be exercised without a spreadsheet; the ``load_*``
helpers fetch the grids through :mod:`shared.sheets.core`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence

from shared.sheets import core

log = logging.getLogger("dtm.sheets.roster")

CHARACTERS_TAB = "Characters"
NPCS_TAB = "NPCs"
NARRATORS_TAB = "narrators"

CHAR_NAME_COL = 1
CHAR_APPROVAL_COL = 8
CHAR_WEBHOOK_COL = 24
NPC_AVATAR_COL = 25

WEBHOOK_PREFIX = "https://discord"

COLOR_VALID = "#CCFFCC"
COLOR_NO_WEBHOOK = "#FFCCCC"
COLOR_NO_MATCH = "#FFDAB9"


def _cell(row: Sequence[Any], col: int) -> str:
    if col - 1 < len(row):
        value = row[col - 1]
        return "" if value is None else str(value).strip()
    return ""


def _key(name: object) -> str:
    return str(name or "").strip().lower()


@dataclass(frozen=True, slots=True)
class CharacterProfile:
    name: str
    approval: str = ""
    webhook: Optional[str] = None

    @property
    def approved(self) -> bool:
        return self.approval.lower() == "approved"


@dataclass(frozen=True, slots=True)
class NpcProfile:
    name: str
    avatar_url: str = ""


@dataclass(frozen=True, slots=True)
class NarratorProfile:
    name: str
    email: str


@dataclass(frozen=True, slots=True)
class NameValidation:
    is_match: bool
    has_webhook: bool

    @property
    def color(self) -> str:
        if self.is_match and self.has_webhook:
            return COLOR_VALID
        if self.is_match:
            return COLOR_NO_WEBHOOK
        return COLOR_NO_MATCH


def parse_characters(grid: Sequence[Sequence[Any]]) -> list[CharacterProfile]:
    """Parse the ``Characters`` grid (header row skipped)."""

    characters: list[CharacterProfile] = []
    for row in list(grid)[1:]:
        name = _cell(row, CHAR_NAME_COL)
        if not name:
            continue
        webhook = _cell(row, CHAR_WEBHOOK_COL)
        characters.append(
            CharacterProfile(
                name=name,
                approval=_cell(row, CHAR_APPROVAL_COL),
                webhook=webhook if webhook.startswith(WEBHOOK_PREFIX) else None,
            )
        )
    return characters


def parse_npcs(grid: Sequence[Sequence[Any]]) -> list[NpcProfile]:
    npcs: list[NpcProfile] = []
    for row in list(grid)[1:]:
        name = _cell(row, CHAR_NAME_COL)
        if name:
            npcs.append(NpcProfile(name=name, avatar_url=_cell(row, NPC_AVATAR_COL)))
    return npcs


def parse_narrators(grid: Sequence[Sequence[Any]]) -> list[NarratorProfile]:
    """Parse the ``narrators`` tab using its ``Name``/``Email`` header columns."""

    rows = list(grid)
    if not rows:
        return []
    headers = [_key(cell) for cell in rows[0]]
    try:
        name_idx = headers.index("name")
        email_idx = headers.index("email")
    except ValueError:
        log.warning("narrators tab is missing a Name or Email column")
        return []
    narrators: list[NarratorProfile] = []
    for row in rows[1:]:
        name = _cell(row, name_idx + 1)
        email = _cell(row, email_idx + 1)
        if name and email:
            narrators.append(NarratorProfile(name=name, email=email))
    return narrators


def find_character(name: object, characters: Iterable[CharacterProfile]) -> Optional[CharacterProfile]:
    target = _key(name)
    if not target:
        return None
    for character in characters:
        if _key(character.name) == target:
            return character
    return None


def find_npc(name: object, npcs: Iterable[NpcProfile]) -> Optional[NpcProfile]:
    target = _key(name)
    if not target:
        return None
    for npc in npcs:
        if _key(npc.name) == target:
            return npc
    return None


def validate_character_name(name: object, characters: Iterable[CharacterProfile]) -> NameValidation:
    match = find_character(name, characters)
    if match is None:
        return NameValidation(is_match=False, has_webhook=False)
    return NameValidation(is_match=True, has_webhook=match.webhook is not None)


def count_approved(characters: Iterable[CharacterProfile]) -> int:
    return sum(1 for character in characters if character.approved)


def narrator_name_by_email(email: object, narrators: Iterable[NarratorProfile]) -> Optional[str]:
    target = _key(email)
    if not target:
        return None
    for narrator in narrators:
        if _key(narrator.email) == target:
            return narrator.name
    return None


def _load_grid(tab: str, sheet_id: Optional[str]) -> list[list[Any]]:
    from shared.config import get_downtime_sheet_id

    worksheet = core.get_worksheet(sheet_id or get_downtime_sheet_id(), tab)
    return core.read_grid(worksheet)


def load_characters(sheet_id: Optional[str] = None) -> list[CharacterProfile]:
    characters = parse_characters(_load_grid(CHARACTERS_TAB, sheet_id))
    log.debug("loaded %d characters", len(characters))
    return characters


def load_npcs(sheet_id: Optional[str] = None) -> list[NpcProfile]:
    return parse_npcs(_load_grid(NPCS_TAB, sheet_id))


def load_narrators(sheet_id: Optional[str] = None) -> list[NarratorProfile]:
    return parse_narrators(_load_grid(NARRATORS_TAB, sheet_id))
