"""The boundary between the bridge agent and the tabletop it drives."""

from __future__ import annotations

import random
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from rollrelay.dice import parse_tabletop_formula, roll
from rollrelay.subscription import Listener, Topic, Unsubscribe


CHAT_HISTORY_LIMIT = 200


@dataclass(frozen=True)
class InlineRoll:
    formula: str
    total: int
    rolls: tuple[int, ...] = ()


@dataclass(frozen=True)
class ChatEntry:
    """One message appended to the tabletop chat log."""

    text: str
    speaker: str | None = None
    title: str | None = None
    inline_rolls: tuple[InlineRoll, ...] = ()


class DirectiveKind(str, Enum):
    CHAT = "chat"
    ROLL = "roll"
    ACTION = "action"
    HEAL = "heal"
    DAMAGE = "damage"
    REST = "rest"


@dataclass(frozen=True)
class ExecutionDirective:
    kind: DirectiveKind
    text: str
    data: dict[str, Any] = field(default_factory=dict)
    record_id: str | None = None


class Tabletop(Protocol):
    async def apply(self, directive: ExecutionDirective) -> None:
        """Carry out a directive on the table; raise when it cannot be applied."""


class ChatLog:
    def __init__(self, history_limit: int = CHAT_HISTORY_LIMIT) -> None:
        self._topic: Topic[ChatEntry] = Topic()
        self._history: deque[ChatEntry] = deque(maxlen=history_limit)

    def subscribe(self, listener: Listener[ChatEntry]) -> Unsubscribe:
        return self._topic.subscribe(listener)

    def append(self, entry: ChatEntry) -> None:
        self._history.append(entry)
        self._topic.publish(entry)

    @property
    def entries(self) -> list[ChatEntry]:
        return list(self._history)

    @property
    def listener_count(self) -> int:
        return self._topic.listener_count


class LocalTabletop:
    """In-process table used when no page bridge is attached.

    Roll directives are evaluated here and the inline roll is appended to the
    chat log, the same way a real table echoes a roll template.
    """

    def __init__(
        self,
        chat_log: ChatLog | None = None,
        *,
        speaker: str = "rollrelay",
        rng: random.Random | None = None,
    ) -> None:
        self.chat_log = chat_log or ChatLog()
        self.applied: list[ExecutionDirective] = []
        self._speaker = speaker
        self._rng = rng

    async def apply(self, directive: ExecutionDirective) -> None:
        self.applied.append(directive)
        speaker = directive.data.get("character_name") or self._speaker
        if directive.kind != DirectiveKind.ROLL:
            self.chat_log.append(ChatEntry(text=directive.text, speaker=speaker))
            return

        formula = str(directive.data["formula"])
        parsed, mode = parse_tabletop_formula(formula)
        result = roll(parsed, mode=mode, rng=self._rng)
        self.chat_log.append(
            ChatEntry(
                text=directive.text,
                speaker=speaker,
                title=directive.data.get("roll_name"),
                inline_rolls=(InlineRoll(formula=formula, total=result.total, rolls=tuple(result.rolls)),),
            )
        )
