"""Domain models for pairings, relay records and turn events."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any


class PairingStatus(str, Enum):
    PENDING = "pending"
    CONNECTED = "connected"
    EXPIRED = "expired"


class RecordKind(str, Enum):
    ROLL = "roll"
    ACTION = "action"
    REST = "rest"
    HEAL = "heal"
    DAMAGE = "damage"
    USE = "use"


class RecordStatus(str, Enum):
    """Lifecycle of a relay record."""

    PENDING = "pending"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RecordStatus.DELIVERED, RecordStatus.FAILED, RecordStatus.TIMEOUT})

ALLOWED_TRANSITIONS: dict[RecordStatus, frozenset[RecordStatus]] = {
    RecordStatus.PENDING: frozenset({RecordStatus.PROCESSING, RecordStatus.TIMEOUT}),
    RecordStatus.PROCESSING: frozenset({RecordStatus.DELIVERED, RecordStatus.FAILED, RecordStatus.TIMEOUT}),
    RecordStatus.DELIVERED: frozenset(),
    RecordStatus.FAILED: frozenset(),
    RecordStatus.TIMEOUT: frozenset(),
}


def can_transition(current: RecordStatus, target: RecordStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def sources_for(target: RecordStatus) -> list[RecordStatus]:
    """Statuses a record may hold for a write of ``target`` to be accepted."""
    return [status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets]


class TurnEventType(str, Enum):
    TURN_START = "turn_start"
    TURN_END = "turn_end"
    ROUND_CHANGE = "round_change"
    COMBAT_START = "combat_start"
    COMBAT_END = "combat_end"


class TurnEventStatus(str, Enum):
    PENDING = "pending"
    POSTED = "posted"
    FAILED = "failed"
    EXPIRED = "expired"


@dataclass(frozen=True)
class ActionFlags:
    action: bool = True
    bonus: bool = True
    movement: bool = True
    reaction: bool = True


@dataclass(frozen=True)
class Pairing:
    id: str
    code: str
    agent_ref: str
    status: PairingStatus
    created_at: datetime
    expires_at: datetime
    issuer_ref: str | None = None
    connected_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.status == PairingStatus.EXPIRED or (
            self.status == PairingStatus.PENDING and self.expires_at <= now
        )


@dataclass(frozen=True)
class RelayRecord:
    id: str
    pairing_id: str
    kind: RecordKind
    issuer_ref: str
    payload: dict[str, Any]
    status: RecordStatus
    created_at: datetime
    expires_at: datetime
    result: dict[str, Any] | None = None
    error: str | None = None
    processed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def with_status(
        self,
        status: RecordStatus,
        now: datetime,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> "RelayRecord":
        return replace(
            self,
            status=status,
            result=result if result is not None else self.result,
            error=error if error is not None else self.error,
            processed_at=now,
        )


@dataclass(frozen=True)
class TurnEvent:
    id: str
    pairing_id: str
    event_type: TurnEventType
    round: int
    status: TurnEventStatus
    created_at: datetime
    expires_at: datetime
    combatant_name: str | None = None
    action_flags: ActionFlags = field(default_factory=ActionFlags)
    posted_at: datetime | None = None


@dataclass(frozen=True)
class SweepReport:
    timed_out: int = 0
    expired_pairings: int = 0
    expired_turn_events: int = 0
    purged: int = 0


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_time(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def pairing_to_dict(pairing: Pairing) -> dict[str, Any]:
    return {
        "id": pairing.id,
        "code": pairing.code,
        "agent_ref": pairing.agent_ref,
        "issuer_ref": pairing.issuer_ref,
        "status": pairing.status.value,
        "created_at": _iso(pairing.created_at),
        "connected_at": _iso(pairing.connected_at),
        "expires_at": _iso(pairing.expires_at),
    }


def pairing_from_dict(data: dict[str, Any]) -> Pairing:
    return Pairing(
        id=str(data["id"]),
        code=str(data["code"]),
        agent_ref=str(data["agent_ref"]),
        issuer_ref=data.get("issuer_ref"),
        status=PairingStatus(data["status"]),
        created_at=_parse_time(data["created_at"]),
        connected_at=_parse_time(data.get("connected_at")),
        expires_at=_parse_time(data["expires_at"]),
    )


def record_to_dict(record: RelayRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "pairing_id": record.pairing_id,
        "kind": record.kind.value,
        "issuer_ref": record.issuer_ref,
        "payload": dict(record.payload),
        "status": record.status.value,
        "result": record.result,
        "error": record.error,
        "created_at": _iso(record.created_at),
        "processed_at": _iso(record.processed_at),
        "expires_at": _iso(record.expires_at),
    }


def record_from_dict(data: dict[str, Any]) -> RelayRecord:
    return RelayRecord(
        id=str(data["id"]),
        pairing_id=str(data["pairing_id"]),
        kind=RecordKind(data["kind"]),
        issuer_ref=str(data["issuer_ref"]),
        payload=dict(data.get("payload") or {}),
        status=RecordStatus(data["status"]),
        result=data.get("result"),
        error=data.get("error"),
        created_at=_parse_time(data["created_at"]),
        processed_at=_parse_time(data.get("processed_at")),
        expires_at=_parse_time(data["expires_at"]),
    )


def turn_event_to_dict(event: TurnEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "pairing_id": event.pairing_id,
        "event_type": event.event_type.value,
        "combatant_name": event.combatant_name,
        "round": event.round,
        "action_flags": asdict(event.action_flags),
        "status": event.status.value,
        "created_at": _iso(event.created_at),
        "expires_at": _iso(event.expires_at),
        "posted_at": _iso(event.posted_at),
    }


def turn_event_from_dict(data: dict[str, Any]) -> TurnEvent:
    flags = data.get("action_flags") or {}
    return TurnEvent(
        id=str(data["id"]),
        pairing_id=str(data["pairing_id"]),
        event_type=TurnEventType(data["event_type"]),
        combatant_name=data.get("combatant_name"),
        round=int(data["round"]),
        action_flags=ActionFlags(**flags),
        status=TurnEventStatus(data["status"]),
        created_at=_parse_time(data["created_at"]),
        expires_at=_parse_time(data["expires_at"]),
        posted_at=_parse_time(data.get("posted_at")),
    )
