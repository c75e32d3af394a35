"""Initiative order and turn state machine for one combat."""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from enum import Enum

from rollrelay.backend.models import TurnEventType
from rollrelay.errors import TurnOrderError


class CombatPhase(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"


class CombatantSource(str, Enum):
    MANUAL = "manual"
    OBSERVED = "observed"


@dataclass(frozen=True)
class Combatant:
    name: str
    initiative: int
    source: CombatantSource = CombatantSource.MANUAL


@dataclass(frozen=True)
class TurnState:
    combatants: tuple[Combatant, ...]
    current_index: int
    round: int
    phase: CombatPhase

    @property
    def active(self) -> Combatant | None:
        if self.phase != CombatPhase.ACTIVE or not self.combatants:
            return None
        return self.combatants[self.current_index]


@dataclass(frozen=True)
class TurnTransition:
    event_type: TurnEventType
    round: int
    combatant_name: str | None = None


class TurnTracker:
    """Pure state machine: every mutator returns the transitions it caused.

    While active, ``0 <= current_index < len(combatants)`` and ``round >= 1``.
    Combatants stay sorted by initiative, highest first; ties keep the order in
    which the names were first added.
    """

    def __init__(self) -> None:
        self._combatants: list[Combatant] = []
        self._first_seen: dict[str, int] = {}
        self._sequence = itertools.count()
        self._current_index = 0
        self._round = 1
        self._phase = CombatPhase.IDLE

    @property
    def state(self) -> TurnState:
        return TurnState(
            combatants=tuple(self._combatants),
            current_index=self._current_index,
            round=self._round,
            phase=self._phase,
        )

    @property
    def phase(self) -> CombatPhase:
        return self._phase

    @property
    def round(self) -> int:
        return self._round

    @property
    def combatants(self) -> list[Combatant]:
        return list(self._combatants)

    @property
    def active_combatant(self) -> Combatant | None:
        return self.state.active

    def start_combat(self) -> list[TurnTransition]:
        if not self._combatants:
            raise TurnOrderError("Add at least one combatant before starting combat")
        self._phase = CombatPhase.ACTIVE
        self._current_index = 0
        self._round = 1
        return [
            TurnTransition(TurnEventType.COMBAT_START, round=self._round),
            self._turn_start(),
        ]

    def next_turn(self) -> list[TurnTransition]:
        if self._phase != CombatPhase.ACTIVE:
            return []
        transitions = [self._turn_end()]
        self._current_index += 1
        if self._current_index >= len(self._combatants):
            self._current_index = 0
            self._round += 1
            transitions.append(TurnTransition(TurnEventType.ROUND_CHANGE, round=self._round))
        transitions.append(self._turn_start())
        return transitions

    def prev_turn(self) -> list[TurnTransition]:
        if self._phase != CombatPhase.ACTIVE:
            return []
        transitions = [self._turn_end()]
        self._current_index -= 1
        if self._current_index < 0:
            self._current_index = len(self._combatants) - 1
            previous_round = self._round
            self._round = max(1, self._round - 1)
            if self._round != previous_round:
                transitions.append(TurnTransition(TurnEventType.ROUND_CHANGE, round=self._round))
        transitions.append(self._turn_start())
        return transitions

    def add_combatant(
        self,
        name: str,
        initiative: int,
        source: CombatantSource = CombatantSource.MANUAL,
    ) -> list[TurnTransition]:
        """Insert or update a combatant; the active combatant keeps the turn."""
        cleaned = (name or "").strip()
        if not cleaned:
            raise TurnOrderError("Combatant name must not be empty")
        active = self.active_combatant

        combatant = Combatant(name=cleaned, initiative=int(initiative), source=source)
        existing = self._index_of(cleaned)
        if existing is None:
            self._first_seen.setdefault(cleaned, next(self._sequence))
            self._combatants.append(combatant)
        else:
            self._combatants[existing] = combatant
        self._combatants.sort(key=lambda c: (-c.initiative, self._first_seen[c.name]))

        if active is not None:
            self._current_index = self._index_of(active.name)
        return []

    def remove_combatant(self, name: str) -> list[TurnTransition]:
        index = self._index_of(name)
        if index is None:
            return []
        was_active = self._phase == CombatPhase.ACTIVE and index == self._current_index
        del self._combatants[index]
        self._first_seen.pop(name, None)

        if not self._combatants:
            was_running = self._phase == CombatPhase.ACTIVE
            ended_round = self._round
            self._reset()
            if was_running:
                return [TurnTransition(TurnEventType.COMBAT_END, round=ended_round)]
            return []

        if index < self._current_index:
            self._current_index -= 1
        if self._current_index >= len(self._combatants):
            self._current_index = 0
        if was_active:
            return [self._turn_start()]
        return []

    def clear_all(self) -> list[TurnTransition]:
        was_running = self._phase == CombatPhase.ACTIVE
        ended_round = self._round
        self._combatants.clear()
        self._first_seen.clear()
        self._reset()
        if was_running:
            return [TurnTransition(TurnEventType.COMBAT_END, round=ended_round)]
        return []

    def _reset(self) -> None:
        self._phase = CombatPhase.IDLE
        self._current_index = 0
        self._round = 1

    def _index_of(self, name: str) -> int | None:
        for index, combatant in enumerate(self._combatants):
            if combatant.name == name:
                return index
        return None

    def _turn_start(self) -> TurnTransition:
        return TurnTransition(
            TurnEventType.TURN_START,
            round=self._round,
            combatant_name=self._combatants[self._current_index].name,
        )

    def _turn_end(self) -> TurnTransition:
        return TurnTransition(
            TurnEventType.TURN_END,
            round=self._round,
            combatant_name=self._combatants[self._current_index].name,
        )
