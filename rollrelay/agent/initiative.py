"""Passive initiative ingestion from the tabletop chat log.

The structured parser reads roll templates (inline rolls plus an initiative
caption). The free-form parser is a best-effort heuristic over plain chat text
and will miss phrasings outside the families it knows.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence

from rollrelay.agent.tabletop import ChatEntry, ChatLog
from rollrelay.subscription import Unsubscribe


ANNOUNCEMENT_MARKERS = ("⚔️", "⚔", "🎯", "🔄", "🛑")
MIN_INITIATIVE = 0
MAX_INITIATIVE = 50

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InitiativeDeclaration:
    name: str
    value: int


class InitiativeParser(Protocol):
    def parse(self, entry: ChatEntry) -> InitiativeDeclaration | None:
        """Return the declaration carried by the entry, if any."""


def is_announcement(text: str) -> bool:
    """True for the tracker's own marked announcements."""
    return (text or "").lstrip().startswith(ANNOUNCEMENT_MARKERS)


def _clean_name(name: str) -> str:
    return re.sub(r"\s+", " ", name).strip(" \t:-–'\"")


class InlineRollInitiativeParser:
    _TITLE_NAME = re.compile(r"^\s*(?P<name>.+?)\s*[-–:]\s*initiative\b", re.IGNORECASE)

    def parse(self, entry: ChatEntry) -> InitiativeDeclaration | None:
        if not entry.inline_rolls:
            return None
        caption = entry.title or entry.text
        if "initiative" not in (caption or "").lower():
            return None

        match = self._TITLE_NAME.match(caption)
        name = match.group("name") if match else entry.speaker
        if not name:
            return None
        return InitiativeDeclaration(name=_clean_name(name), value=entry.inline_rolls[-1].total)


class FreeformInitiativeParser:
    _PATTERNS = (
        re.compile(r"^(?P<name>.+?)\s+rolls?\s+initiative\s*[:=]?\s*(?P<value>-?\d+)\b", re.IGNORECASE),
        re.compile(r"^(?P<name>.+?)\s*[-–:]\s*initiative\s*[:=]?\s*(?P<value>-?\d+)\b", re.IGNORECASE),
        re.compile(r"initiative\s+for\s+(?P<name>.+?)\s*[:=]\s*(?P<value>-?\d+)\b", re.IGNORECASE),
    )

    def parse(self, entry: ChatEntry) -> InitiativeDeclaration | None:
        text = (entry.text or "").strip()
        for pattern in self._PATTERNS:
            match = pattern.search(text)
            if match is None:
                continue
            name = _clean_name(match.group("name"))
            if name:
                return InitiativeDeclaration(name=name, value=int(match.group("value")))
        return None


DEFAULT_PARSERS: tuple[InitiativeParser, ...] = (InlineRollInitiativeParser(), FreeformInitiativeParser())


def parse_initiative(
    entry: ChatEntry,
    parsers: Sequence[InitiativeParser] = DEFAULT_PARSERS,
) -> InitiativeDeclaration | None:
    if is_announcement(entry.text) or is_announcement(entry.title or ""):
        return None
    for parser in parsers:
        declaration = parser.parse(entry)
        if declaration is None:
            continue
        if MIN_INITIATIVE <= declaration.value <= MAX_INITIATIVE:
            return declaration
        logger.info(
            "initiative_out_of_range",
            extra={"combatant": declaration.name, "value": declaration.value},
        )
    return None


class InitiativeWatcher:
    def __init__(
        self,
        chat_log: ChatLog,
        on_declaration: Callable[[InitiativeDeclaration], None],
        parsers: Sequence[InitiativeParser] = DEFAULT_PARSERS,
    ) -> None:
        self._chat_log = chat_log
        self._on_declaration = on_declaration
        self._parsers = tuple(parsers)
        self._unsubscribe: Unsubscribe | None = None

    @property
    def watching(self) -> bool:
        return self._unsubscribe is not None

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._chat_log.subscribe(self._on_entry)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_entry(self, entry: ChatEntry) -> None:
        declaration = parse_initiative(entry, self._parsers)
        if declaration is not None:
            self._on_declaration(declaration)
