from datetime import datetime, timezone

from rollrelay.backend.models import (
    ActionFlags,
    RecordKind,
    RecordStatus,
    TurnEventType,
    can_transition,
    pairing_from_dict,
    pairing_to_dict,
    record_from_dict,
    record_to_dict,
    sources_for,
    turn_event_from_dict,
    turn_event_to_dict,
)
from rollrelay.backend.state import build_pairing, build_record, build_turn_event


NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_only_forward_transitions_are_allowed() -> None:
    assert can_transition(RecordStatus.PENDING, RecordStatus.PROCESSING)
    assert can_transition(RecordStatus.PENDING, RecordStatus.TIMEOUT)
    assert can_transition(RecordStatus.PROCESSING, RecordStatus.DELIVERED)
    assert can_transition(RecordStatus.PROCESSING, RecordStatus.FAILED)
    assert can_transition(RecordStatus.PROCESSING, RecordStatus.TIMEOUT)
    assert not can_transition(RecordStatus.PENDING, RecordStatus.DELIVERED)
    assert not can_transition(RecordStatus.PROCESSING, RecordStatus.PENDING)


def test_terminal_statuses_never_transition() -> None:
    for terminal in (RecordStatus.DELIVERED, RecordStatus.FAILED, RecordStatus.TIMEOUT):
        assert terminal.is_terminal
        for target in RecordStatus:
            assert not can_transition(terminal, target)


def test_sources_for_timeout_include_pending_and_processing() -> None:
    assert set(sources_for(RecordStatus.TIMEOUT)) == {RecordStatus.PENDING, RecordStatus.PROCESSING}
    assert sources_for(RecordStatus.PENDING) == []


def test_record_with_status_keeps_existing_result_and_stamps_processed_at() -> None:
    record = build_record("p-1", RecordKind.ROLL, "issuer-1", {"formula": "1d20"}, now=NOW)

    updated = record.with_status(RecordStatus.PROCESSING, now=NOW).with_status(
        RecordStatus.DELIVERED, now=NOW, result={"total": 18}
    )

    assert updated.result == {"total": 18}
    assert updated.processed_at == NOW
    assert updated.is_terminal


def test_serializers_preserve_wire_fields() -> None:
    pairing = build_pairing(code="ABC234", agent_ref="agent-1", now=NOW)
    record = build_record(pairing.id, RecordKind.HEAL, "issuer-1", {"amount": 5}, now=NOW)
    event = build_turn_event(
        pairing.id,
        TurnEventType.TURN_START,
        1,
        combatant_name="Goblin",
        action_flags=ActionFlags(bonus=False),
        now=NOW,
    )

    pairing_data = pairing_to_dict(pairing)
    record_data = record_to_dict(record)
    event_data = turn_event_to_dict(event)

    assert pairing_data["status"] == "pending"
    assert pairing_data["created_at"] == "2024-01-01T12:00:00+00:00"
    assert record_data["kind"] == "heal"
    assert event_data["action_flags"] == {"action": True, "bonus": False, "movement": True, "reaction": True}
    assert pairing_from_dict(pairing_data) == pairing
    assert record_from_dict(record_data) == record
    assert turn_event_from_dict(event_data) == event
