"""Builders for freshly created pairings, relay records and turn events."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
import uuid

from rollrelay.backend.models import (
    ActionFlags,
    Pairing,
    PairingStatus,
    RecordKind,
    RecordStatus,
    RelayRecord,
    TurnEvent,
    TurnEventStatus,
    TurnEventType,
)


PAIRING_TTL = timedelta(minutes=30)
ROLL_TTL = timedelta(seconds=30)
ACTION_TTL = timedelta(minutes=5)
TURN_EVENT_TTL = timedelta(minutes=1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def record_ttl(kind: RecordKind) -> timedelta:
    return ROLL_TTL if kind == RecordKind.ROLL else ACTION_TTL


def build_pairing(code: str, agent_ref: str, now: datetime | None = None) -> Pairing:
    created = now or utc_now()
    return Pairing(
        id=str(uuid.uuid4()),
        code=code,
        agent_ref=agent_ref,
        status=PairingStatus.PENDING,
        created_at=created,
        expires_at=created + PAIRING_TTL,
    )


def build_record(
    pairing_id: str,
    kind: RecordKind,
    issuer_ref: str,
    payload: dict[str, Any],
    now: datetime | None = None,
    ttl: timedelta | None = None,
) -> RelayRecord:
    """Return a pending record; rolls live 30 seconds, everything else 5 minutes."""
    created = now or utc_now()
    return RelayRecord(
        id=str(uuid.uuid4()),
        pairing_id=pairing_id,
        kind=kind,
        issuer_ref=issuer_ref,
        payload=dict(payload),
        status=RecordStatus.PENDING,
        created_at=created,
        expires_at=created + (ttl if ttl is not None else record_ttl(kind)),
    )


def build_turn_event(
    pairing_id: str,
    event_type: TurnEventType,
    round_number: int,
    combatant_name: str | None = None,
    action_flags: ActionFlags | None = None,
    now: datetime | None = None,
) -> TurnEvent:
    created = now or utc_now()
    return TurnEvent(
        id=str(uuid.uuid4()),
        pairing_id=pairing_id,
        event_type=event_type,
        combatant_name=combatant_name,
        round=round_number,
        action_flags=action_flags or ActionFlags(),
        status=TurnEventStatus.PENDING,
        created_at=created,
        expires_at=created + TURN_EVENT_TTL,
    )
