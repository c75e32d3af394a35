import random

import pytest

from rollrelay.agent.turns import CombatPhase, CombatantSource, TurnTracker
from rollrelay.backend.models import TurnEventType
from rollrelay.errors import TurnOrderError


def _tracker(*entries: tuple[str, int]) -> TurnTracker:
    tracker = TurnTracker()
    for name, initiative in entries:
        tracker.add_combatant(name, initiative)
    return tracker


def _names(tracker: TurnTracker) -> list[str]:
    return [c.name for c in tracker.combatants]


def test_combatants_are_sorted_by_initiative_descending() -> None:
    tracker = _tracker(("A", 21), ("B", 22), ("C", 15))

    assert [c.initiative for c in tracker.combatants] == [22, 21, 15]
    assert _names(tracker) == ["B", "A", "C"]


def test_ties_keep_first_insertion_order() -> None:
    tracker = _tracker(("Zed", 10), ("Amy", 10), ("Bob", 12))

    assert _names(tracker) == ["Bob", "Zed", "Amy"]


def test_start_combat_requires_a_combatant() -> None:
    with pytest.raises(TurnOrderError):
        TurnTracker().start_combat()


def test_start_combat_emits_combat_start_then_first_turn() -> None:
    tracker = _tracker(("A", 10), ("B", 15))

    transitions = tracker.start_combat()

    assert [t.event_type for t in transitions] == [TurnEventType.COMBAT_START, TurnEventType.TURN_START]
    assert transitions[1].combatant_name == "B"
    assert tracker.state.phase == CombatPhase.ACTIVE
    assert tracker.state.round == 1


def test_next_turn_wraps_into_the_next_round() -> None:
    tracker = _tracker(("A", 3), ("B", 2), ("C", 1))
    tracker.start_combat()

    tracker.next_turn()
    tracker.next_turn()
    transitions = tracker.next_turn()

    assert tracker.round == 2
    assert tracker.state.current_index == 0
    assert [t.event_type for t in transitions] == [
        TurnEventType.TURN_END,
        TurnEventType.ROUND_CHANGE,
        TurnEventType.TURN_START,
    ]
    assert transitions[1].round == 2


def test_prev_turn_never_drops_below_round_one() -> None:
    tracker = _tracker(("A", 3), ("B", 2))
    tracker.start_combat()

    transitions = tracker.prev_turn()

    assert tracker.round == 1
    assert tracker.active_combatant.name == "B"
    assert TurnEventType.ROUND_CHANGE not in [t.event_type for t in transitions]


def test_prev_turn_is_the_only_way_back_a_round() -> None:
    tracker = _tracker(("A", 3), ("B", 2))
    tracker.start_combat()
    tracker.next_turn()
    tracker.next_turn()

    transitions = tracker.prev_turn()

    assert tracker.round == 1
    assert tracker.active_combatant.name == "B"
    assert [t.event_type for t in transitions][1] == TurnEventType.ROUND_CHANGE


def test_turn_changes_are_noops_while_idle() -> None:
    tracker = _tracker(("A", 3))

    assert tracker.next_turn() == []
    assert tracker.prev_turn() == []
    assert tracker.round == 1


def test_adding_an_existing_name_updates_in_place() -> None:
    tracker = _tracker(("A", 10), ("B", 5))

    tracker.add_combatant("B", 20, CombatantSource.OBSERVED)

    assert _names(tracker) == ["B", "A"]
    assert len(tracker.combatants) == 2
    assert tracker.combatants[0].source == CombatantSource.OBSERVED


def test_adding_during_combat_keeps_the_active_combatant() -> None:
    tracker = _tracker(("A", 10), ("B", 5))
    tracker.start_combat()
    tracker.next_turn()

    tracker.add_combatant("C", 30)

    assert tracker.active_combatant.name == "B"
    assert _names(tracker) == ["C", "A", "B"]


def test_removing_the_active_combatant_starts_the_next_turn() -> None:
    tracker = _tracker(("A", 3), ("B", 2), ("C", 1))
    tracker.start_combat()
    tracker.next_turn()

    transitions = tracker.remove_combatant("B")

    assert [t.event_type for t in transitions] == [TurnEventType.TURN_START]
    assert transitions[0].combatant_name == "C"


def test_removing_the_last_in_order_while_active_wraps_to_the_top() -> None:
    tracker = _tracker(("A", 3), ("B", 2))
    tracker.start_combat()
    tracker.next_turn()

    tracker.remove_combatant("B")

    assert tracker.state.current_index == 0
    assert tracker.active_combatant.name == "A"


def test_removing_a_combatant_before_the_active_one_keeps_the_turn() -> None:
    tracker = _tracker(("A", 3), ("B", 2), ("C", 1))
    tracker.start_combat()
    tracker.next_turn()
    tracker.next_turn()

    assert tracker.remove_combatant("A") == []
    assert tracker.active_combatant.name == "C"


def test_removing_everyone_ends_combat() -> None:
    tracker = _tracker(("A", 3))
    tracker.start_combat()

    transitions = tracker.remove_combatant("A")

    assert [t.event_type for t in transitions] == [TurnEventType.COMBAT_END]
    assert tracker.phase == CombatPhase.IDLE


def test_clear_all_resets_state() -> None:
    tracker = _tracker(("A", 3), ("B", 2))
    tracker.start_combat()
    tracker.next_turn()
    tracker.next_turn()

    transitions = tracker.clear_all()

    assert [t.event_type for t in transitions] == [TurnEventType.COMBAT_END]
    assert tracker.state.combatants == ()
    assert tracker.round == 1
    assert tracker.phase == CombatPhase.IDLE
    assert tracker.clear_all() == []


def test_index_and_round_invariants_hold_under_random_operations() -> None:
    rng = random.Random(42)
    tracker = TurnTracker()
    names = [f"C{i}" for i in range(6)]
    previous_round = 1

    for _ in range(2000):
        operation = rng.choice(["add", "add", "remove", "next", "prev", "start", "clear"])
        if operation == "add":
            tracker.add_combatant(rng.choice(names), rng.randint(0, 30))
        elif operation == "remove":
            tracker.remove_combatant(rng.choice(names))
        elif operation == "next":
            tracker.next_turn()
        elif operation == "prev":
            before = tracker.round
            tracker.prev_turn()
            assert tracker.round in (before, max(1, before - 1))
        elif operation == "start" and tracker.combatants:
            tracker.start_combat()
        elif operation == "clear":
            tracker.clear_all()

        state = tracker.state
        assert state.round >= 1
        assert len({c.name for c in state.combatants}) == len(state.combatants)
        assert [c.initiative for c in state.combatants] == sorted(
            (c.initiative for c in state.combatants), reverse=True
        )
        if state.phase == CombatPhase.ACTIVE:
            assert 0 <= state.current_index < len(state.combatants)
        if operation == "next" and state.phase == CombatPhase.ACTIVE:
            assert state.round >= previous_round
        previous_round = state.round


def test_a_removed_combatant_rejoins_as_a_new_insertion() -> None:
    tracker = _tracker(("A", 10), ("B", 10))

    tracker.remove_combatant("A")
    tracker.add_combatant("A", 10)

    assert _names(tracker) == ["B", "A"]
