import asyncio

from rollrelay.agent.combat import CombatSession, announcement_for
from rollrelay.agent.tabletop import ChatEntry, ChatLog, DirectiveKind, LocalTabletop
from rollrelay.agent.turns import CombatantSource, TurnTransition
from rollrelay.backend.models import TurnEventStatus, TurnEventType
from rollrelay.backend.store import InMemoryRelayStore


class _RecordingObserver:
    def __init__(self) -> None:
        self.messages: list[dict] = []

    def send(self, message: dict) -> None:
        self.messages.append(message)


class _FailingStore(InMemoryRelayStore):
    def create_turn_event(self, event):
        raise ConnectionError("relay store offline")


def _session(store: InMemoryRelayStore | None = None) -> tuple[CombatSession, LocalTabletop, str | None]:
    pairing_id = None
    if store is not None:
        pairing_id = store.create_pairing(agent_ref="agent-1").id
    tabletop = LocalTabletop()
    return CombatSession(store=store, pairing_id=pairing_id, tabletop=tabletop), tabletop, pairing_id


def test_announcements_carry_markers() -> None:
    assert announcement_for(TurnTransition(TurnEventType.COMBAT_START, 1)) == "⚔️ Combat started"
    assert announcement_for(TurnTransition(TurnEventType.TURN_START, 1, "Goblin")) == "🎯 It's Goblin's turn"
    assert announcement_for(TurnTransition(TurnEventType.ROUND_CHANGE, 3)) == "🔄 Round 3"
    assert announcement_for(TurnTransition(TurnEventType.COMBAT_END, 2)) == "🛑 Combat ended"
    assert announcement_for(TurnTransition(TurnEventType.TURN_END, 1, "Goblin")) is None


def test_transitions_are_posted_and_announced() -> None:
    store = InMemoryRelayStore()
    session, tabletop, pairing_id = _session(store)

    async def _run() -> None:
        await session.add_combatant("Goblin", 12)
        await session.add_combatant("Aria", 18)
        await session.start_combat()
        await session.next_turn()

    asyncio.run(_run())

    events = store.list_turn_events(TurnEventStatus.PENDING, pairing_id=pairing_id)
    assert [e.event_type for e in events] == [
        TurnEventType.COMBAT_START,
        TurnEventType.TURN_START,
        TurnEventType.TURN_END,
        TurnEventType.TURN_START,
    ]
    assert events[-1].combatant_name == "Goblin"
    chat = [d.text for d in tabletop.applied if d.kind == DirectiveKind.CHAT]
    assert chat == ["⚔️ Combat started", "🎯 It's Aria's turn", "🎯 It's Goblin's turn"]


def test_store_failures_do_not_block_the_turn() -> None:
    session, tabletop, _ = _session(_FailingStore())

    async def _run() -> list:
        await session.add_combatant("Goblin", 12)
        return await session.start_combat()

    transitions = asyncio.run(_run())

    assert len(transitions) == 2
    assert session.tracker.active_combatant.name == "Goblin"
    assert tabletop.applied[-1].text == "🎯 It's Goblin's turn"


def test_observers_follow_the_active_combatant() -> None:
    session, _, _ = _session()
    aria = _RecordingObserver()
    goblin = _RecordingObserver()
    session.registry.register("Aria", aria)
    session.registry.register("Goblin", goblin)

    async def _run() -> None:
        await session.add_combatant("Aria", 18)
        await session.add_combatant("Goblin", 12)
        await session.start_combat()
        await session.next_turn()
        await session.clear_all()

    asyncio.run(_run())

    assert [m["type"] for m in aria.messages] == ["activateTurn", "deactivateTurn", "deactivateTurn"]
    assert [m["type"] for m in goblin.messages] == ["deactivateTurn", "activateTurn", "deactivateTurn"]


def test_clear_all_replaces_the_observer_registry() -> None:
    session, _, _ = _session()
    old_registry = session.registry
    session.registry.register("Aria", _RecordingObserver())

    asyncio.run(session.clear_all())

    assert old_registry.disposed
    assert session.registry is not old_registry
    assert session.registry.names == []


def test_chat_log_declarations_are_ingested_but_announcements_are_not() -> None:
    session, _, _ = _session()
    chat_log = ChatLog()
    session.attach_chat_log(chat_log)

    chat_log.append(ChatEntry(text="Thorin rolls initiative: 14"))
    chat_log.append(ChatEntry(text="🎯 It's Mira's turn - initiative 9"))
    session.detach_chat_log()
    chat_log.append(ChatEntry(text="Mira rolls initiative: 11"))

    combatants = session.tracker.combatants
    assert [c.name for c in combatants] == ["Thorin"]
    assert combatants[0].source == CombatantSource.OBSERVED
    assert chat_log.listener_count == 0
