"""Async combat session: tracker transitions fanned out to the store, table and observers."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from rollrelay.agent.initiative import InitiativeDeclaration, InitiativeWatcher
from rollrelay.agent.observers import ObserverRegistry
from rollrelay.agent.tabletop import ChatLog, DirectiveKind, ExecutionDirective, Tabletop
from rollrelay.agent.turns import CombatantSource, TurnTracker, TurnTransition
from rollrelay.backend.models import TurnEventType
from rollrelay.backend.state import build_turn_event
from rollrelay.backend.store import RelayStore


def announcement_for(transition: TurnTransition) -> str | None:
    """Marked chat text for a transition; the markers keep ingestion from reading it back."""
    if transition.event_type == TurnEventType.COMBAT_START:
        return "⚔️ Combat started"
    if transition.event_type == TurnEventType.TURN_START:
        return f"🎯 It's {transition.combatant_name}'s turn"
    if transition.event_type == TurnEventType.ROUND_CHANGE:
        return f"🔄 Round {transition.round}"
    if transition.event_type == TurnEventType.COMBAT_END:
        return "🛑 Combat ended"
    return None


class CombatSession:
    def __init__(
        self,
        tracker: TurnTracker | None = None,
        *,
        store: RelayStore | None = None,
        pairing_id: str | None = None,
        tabletop: Tabletop | None = None,
        registry_factory: Callable[[], ObserverRegistry] = ObserverRegistry,
        logger: logging.Logger | None = None,
    ) -> None:
        self.tracker = tracker or TurnTracker()
        self._store = store
        self._pairing_id = pairing_id
        self._tabletop = tabletop
        self._registry_factory = registry_factory
        self._registry = registry_factory()
        self._watcher: InitiativeWatcher | None = None
        self._logger = logger or logging.getLogger(__name__)

    @property
    def registry(self) -> ObserverRegistry:
        return self._registry

    async def start_combat(self) -> list[TurnTransition]:
        return await self._dispatch(self.tracker.start_combat())

    async def next_turn(self) -> list[TurnTransition]:
        return await self._dispatch(self.tracker.next_turn())

    async def prev_turn(self) -> list[TurnTransition]:
        return await self._dispatch(self.tracker.prev_turn())

    async def add_combatant(
        self,
        name: str,
        initiative: int,
        source: CombatantSource = CombatantSource.MANUAL,
    ) -> list[TurnTransition]:
        return await self._dispatch(self.tracker.add_combatant(name, initiative, source))

    async def remove_combatant(self, name: str) -> list[TurnTransition]:
        return await self._dispatch(self.tracker.remove_combatant(name))

    async def clear_all(self) -> list[TurnTransition]:
        """End combat and replace the observer registry with a fresh one."""
        transitions = await self._dispatch(self.tracker.clear_all())
        self._registry.dispose()
        self._registry = self._registry_factory()
        return transitions

    def attach_chat_log(self, chat_log: ChatLog) -> InitiativeWatcher:
        if self._watcher is not None:
            self._watcher.stop()
        self._watcher = InitiativeWatcher(chat_log, self._ingest)
        self._watcher.start()
        return self._watcher

    def detach_chat_log(self) -> None:
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None

    def _ingest(self, declaration: InitiativeDeclaration) -> None:
        self.tracker.add_combatant(declaration.name, declaration.value, CombatantSource.OBSERVED)
        self._logger.info(
            "initiative_ingested",
            extra={"combatant": declaration.name, "initiative": declaration.value},
        )

    async def _dispatch(self, transitions: list[TurnTransition]) -> list[TurnTransition]:
        for transition in transitions:
            await self._post(transition)
            await self._announce(transition)
            if transition.event_type == TurnEventType.TURN_START:
                self._registry.notify(transition.combatant_name)
            elif transition.event_type == TurnEventType.COMBAT_END:
                self._registry.notify(None)
        return transitions

    async def _post(self, transition: TurnTransition) -> None:
        if self._store is None or self._pairing_id is None:
            return
        event = build_turn_event(
            pairing_id=self._pairing_id,
            event_type=transition.event_type,
            round_number=transition.round,
            combatant_name=transition.combatant_name,
        )
        try:
            await asyncio.to_thread(self._store.create_turn_event, event)
        except Exception as exc:  # noqa: BLE001 - turn posting is best effort.
            self._logger.warning(
                "turn_event_store_failed",
                extra={"event_type": transition.event_type.value, "error": repr(exc)},
            )

    async def _announce(self, transition: TurnTransition) -> None:
        text = announcement_for(transition)
        if text is None or self._tabletop is None:
            return
        try:
            await self._tabletop.apply(ExecutionDirective(kind=DirectiveKind.CHAT, text=text))
        except Exception as exc:  # noqa: BLE001 - announcements never block a transition.
            self._logger.warning(
                "turn_announcement_failed",
                extra={"event_type": transition.event_type.value, "error": repr(exc)},
            )
