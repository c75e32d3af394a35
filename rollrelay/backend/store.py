"""Persistence interfaces and implementations for the relay store."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
import json
import threading
from typing import Any, Protocol

from rollrelay.backend.models import (
    ActionFlags,
    Pairing,
    PairingStatus,
    RecordKind,
    RecordStatus,
    RelayRecord,
    SweepReport,
    TurnEvent,
    TurnEventStatus,
    TurnEventType,
    can_transition,
    sources_for,
)
from rollrelay.backend.security import generate_pairing_code, normalize_pairing_code
from rollrelay.backend.state import build_pairing, utc_now
from rollrelay.errors import PairingCodeInvalidError, PairingCodeUsedError


DEFAULT_RETENTION = timedelta(hours=24)
EXPIRED_ERROR = "expired before delivery"


class RelayStore(Protocol):
    def create_pairing(self, agent_ref: str) -> Pairing:
        """Create a pending pairing with a fresh single-use code."""

    def get_pairing(self, pairing_id: str) -> Pairing | None:
        """Return the pairing with this id."""

    def find_pairing_by_code(self, code: str) -> Pairing | None:
        """Return the pairing holding this code."""

    def connect_pairing(self, code: str, issuer_ref: str) -> Pairing:
        """Complete a pending pairing for an issuer; raise on unknown, expired or used codes."""

    def find_connected_pairing(self, issuer_ref: str) -> Pairing | None:
        """Return the newest connected pairing for an issuer."""

    def disconnect_pairing(self, pairing_id: str) -> Pairing | None:
        """Expire a pairing; return None when it does not exist."""

    def create_record(self, record: RelayRecord) -> RelayRecord:
        """Durably insert a pending record."""

    def get_record(self, record_id: str) -> RelayRecord | None:
        """Return the record with this id."""

    def list_records(self, pairing_id: str, status: RecordStatus, limit: int = 5) -> list[RelayRecord]:
        """Return records of a pairing in a status, oldest first."""

    def transition_record(
        self,
        record_id: str,
        status: RecordStatus,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> RelayRecord | None:
        """Move a record along its lifecycle; return None when the write is rejected."""

    def create_turn_event(self, event: TurnEvent) -> TurnEvent:
        """Insert a pending turn event."""

    def list_turn_events(
        self,
        status: TurnEventStatus,
        pairing_id: str | None = None,
        limit: int = 10,
    ) -> list[TurnEvent]:
        """Return turn events in a status, oldest first."""

    def mark_turn_event(self, event_id: str, status: TurnEventStatus) -> TurnEvent | None:
        """Resolve a pending turn event; return None when it is unknown or already resolved."""

    def sweep_expired(self, now: datetime | None = None, retention: timedelta = DEFAULT_RETENTION) -> SweepReport:
        """Time out expired work, expire stale pairings and purge old terminal rows."""


@dataclass
class InMemoryRelayStore:
    """Process-local store; safe to call from worker threads."""

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self._pairings: dict[str, Pairing] = {}
        self._records: dict[str, RelayRecord] = {}
        self._turn_events: dict[str, TurnEvent] = {}

    def create_pairing(self, agent_ref: str) -> Pairing:
        with self._lock:
            codes_in_use = {p.code for p in self._pairings.values() if p.status != PairingStatus.EXPIRED}
            code = generate_pairing_code()
            while code in codes_in_use:
                code = generate_pairing_code()
            pairing = build_pairing(code=code, agent_ref=agent_ref)
            self._pairings[pairing.id] = pairing
            return pairing

    def get_pairing(self, pairing_id: str) -> Pairing | None:
        with self._lock:
            return self._pairings.get(pairing_id)

    def find_pairing_by_code(self, code: str) -> Pairing | None:
        with self._lock:
            return self._find_by_code(normalize_pairing_code(code))

    def connect_pairing(self, code: str, issuer_ref: str) -> Pairing:
        normalized = normalize_pairing_code(code)
        now = utc_now()
        with self._lock:
            pairing = self._find_by_code(normalized)
            if pairing is None or pairing.is_expired(now):
                raise PairingCodeInvalidError(normalized)
            if pairing.status == PairingStatus.CONNECTED:
                raise PairingCodeUsedError(normalized)
            connected = replace(
                pairing,
                status=PairingStatus.CONNECTED,
                issuer_ref=issuer_ref,
                connected_at=now,
            )
            self._pairings[connected.id] = connected
            return connected

    def find_connected_pairing(self, issuer_ref: str) -> Pairing | None:
        with self._lock:
            matches = [
                p
                for p in self._pairings.values()
                if p.issuer_ref == issuer_ref and p.status == PairingStatus.CONNECTED
            ]
        if not matches:
            return None
        return max(matches, key=lambda p: p.connected_at or p.created_at)

    def disconnect_pairing(self, pairing_id: str) -> Pairing | None:
        with self._lock:
            pairing = self._pairings.get(pairing_id)
            if pairing is None:
                return None
            expired = replace(pairing, status=PairingStatus.EXPIRED)
            self._pairings[pairing_id] = expired
            return expired

    def create_record(self, record: RelayRecord) -> RelayRecord:
        with self._lock:
            self._records[record.id] = record
            return record

    def get_record(self, record_id: str) -> RelayRecord | None:
        with self._lock:
            return self._records.get(record_id)

    def list_records(self, pairing_id: str, status: RecordStatus, limit: int = 5) -> list[RelayRecord]:
        with self._lock:
            matches = [r for r in self._records.values() if r.pairing_id == pairing_id and r.status == status]
        matches.sort(key=lambda r: r.created_at)
        return matches[:limit]

    def transition_record(
        self,
        record_id: str,
        status: RecordStatus,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> RelayRecord | None:
        with self._lock:
            record = self._records.get(record_id)
            if record is None or not can_transition(record.status, status):
                return None
            updated = record.with_status(status, now=utc_now(), result=result, error=error)
            self._records[record_id] = updated
            return updated

    def create_turn_event(self, event: TurnEvent) -> TurnEvent:
        with self._lock:
            self._turn_events[event.id] = event
            return event

    def list_turn_events(
        self,
        status: TurnEventStatus,
        pairing_id: str | None = None,
        limit: int = 10,
    ) -> list[TurnEvent]:
        with self._lock:
            matches = [
                e
                for e in self._turn_events.values()
                if e.status == status and (pairing_id is None or e.pairing_id == pairing_id)
            ]
        matches.sort(key=lambda e: e.created_at)
        return matches[:limit]

    def mark_turn_event(self, event_id: str, status: TurnEventStatus) -> TurnEvent | None:
        with self._lock:
            event = self._turn_events.get(event_id)
            if event is None or event.status != TurnEventStatus.PENDING:
                return None
            updated = replace(event, status=status, posted_at=utc_now())
            self._turn_events[event_id] = updated
            return updated

    def sweep_expired(self, now: datetime | None = None, retention: timedelta = DEFAULT_RETENTION) -> SweepReport:
        current = now or utc_now()
        cutoff = current - retention
        timed_out = expired_pairings = expired_turn_events = purged = 0
        with self._lock:
            for record_id, record in list(self._records.items()):
                if not record.is_terminal and record.is_expired(current):
                    self._records[record_id] = record.with_status(
                        RecordStatus.TIMEOUT, now=current, error=EXPIRED_ERROR
                    )
                    timed_out += 1
                elif record.is_terminal and (record.processed_at or record.created_at) < cutoff:
                    del self._records[record_id]
                    purged += 1

            for pairing_id, pairing in list(self._pairings.items()):
                if pairing.status == PairingStatus.PENDING and pairing.expires_at <= current:
                    self._pairings[pairing_id] = replace(pairing, status=PairingStatus.EXPIRED)
                    expired_pairings += 1

            for event_id, event in list(self._turn_events.items()):
                if event.status == TurnEventStatus.PENDING and event.expires_at <= current:
                    self._turn_events[event_id] = replace(event, status=TurnEventStatus.EXPIRED)
                    expired_turn_events += 1
                elif event.status != TurnEventStatus.PENDING and event.created_at < cutoff:
                    del self._turn_events[event_id]
                    purged += 1

        return SweepReport(
            timed_out=timed_out,
            expired_pairings=expired_pairings,
            expired_turn_events=expired_turn_events,
            purged=purged,
        )

    def _find_by_code(self, code: str) -> Pairing | None:
        matches = [p for p in self._pairings.values() if p.code == code]
        if not matches:
            return None
        return max(matches, key=lambda p: p.created_at)


PAIRING_COLUMNS = "id, code, agent_ref, issuer_ref, status, created_at, connected_at, expires_at"
RECORD_COLUMNS = (
    "id, pairing_id, kind, issuer_ref, payload, status, result, error, created_at, processed_at, expires_at"
)
TURN_EVENT_COLUMNS = (
    "id, pairing_id, event_type, combatant_name, round, action_flags, status, created_at, expires_at, posted_at"
)


def _json_value(value: Any) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def _pairing_from_row(row: tuple) -> Pairing:
    pairing_id, code, agent_ref, issuer_ref, status, created_at, connected_at, expires_at = row
    return Pairing(
        id=str(pairing_id),
        code=code,
        agent_ref=agent_ref,
        issuer_ref=issuer_ref,
        status=PairingStatus(status),
        created_at=created_at,
        connected_at=connected_at,
        expires_at=expires_at,
    )


def _record_from_row(row: tuple) -> RelayRecord:
    (
        record_id,
        pairing_id,
        kind,
        issuer_ref,
        payload,
        status,
        result,
        error,
        created_at,
        processed_at,
        expires_at,
    ) = row
    return RelayRecord(
        id=str(record_id),
        pairing_id=str(pairing_id),
        kind=RecordKind(kind),
        issuer_ref=issuer_ref,
        payload=_json_value(payload) or {},
        status=RecordStatus(status),
        result=_json_value(result),
        error=error,
        created_at=created_at,
        processed_at=processed_at,
        expires_at=expires_at,
    )


def _turn_event_from_row(row: tuple) -> TurnEvent:
    (
        event_id,
        pairing_id,
        event_type,
        combatant_name,
        round_number,
        action_flags,
        status,
        created_at,
        expires_at,
        posted_at,
    ) = row
    return TurnEvent(
        id=str(event_id),
        pairing_id=str(pairing_id),
        event_type=TurnEventType(event_type),
        combatant_name=combatant_name,
        round=int(round_number),
        action_flags=ActionFlags(**(_json_value(action_flags) or {})),
        status=TurnEventStatus(status),
        created_at=created_at,
        expires_at=expires_at,
        posted_at=posted_at,
    )


@dataclass
class PostgresRelayStore:
    database_url: str

    def _connect(self) -> Any:
        import psycopg

        return psycopg.connect(self.database_url)

    def _fetch_one(self, sql: str, params: tuple) -> tuple | None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            conn.commit()
        return row

    def _fetch_all(self, sql: str, params: tuple) -> list[tuple]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
        return list(rows)

    def create_pairing(self, agent_ref: str) -> Pairing:
        code = generate_pairing_code()
        while self.find_pairing_by_code(code) is not None:
            code = generate_pairing_code()
        pairing = build_pairing(code=code, agent_ref=agent_ref)
        self._fetch_one(
            f"""
            INSERT INTO relay_pairings ({PAIRING_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                pairing.id,
                pairing.code,
                pairing.agent_ref,
                None,
                pairing.status.value,
                pairing.created_at,
                None,
                pairing.expires_at,
            ),
        )
        return pairing

    def get_pairing(self, pairing_id: str) -> Pairing | None:
        row = self._fetch_one(f"SELECT {PAIRING_COLUMNS} FROM relay_pairings WHERE id = %s", (pairing_id,))
        return _pairing_from_row(row) if row is not None else None

    def find_pairing_by_code(self, code: str) -> Pairing | None:
        row = self._fetch_one(
            f"""
            SELECT {PAIRING_COLUMNS} FROM relay_pairings
            WHERE code = %s
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (normalize_pairing_code(code),),
        )
        return _pairing_from_row(row) if row is not None else None

    def connect_pairing(self, code: str, issuer_ref: str) -> Pairing:
        normalized = normalize_pairing_code(code)
        now = utc_now()
        row = self._fetch_one(
            f"""
            UPDATE relay_pairings
            SET status = 'connected', issuer_ref = %s, connected_at = %s
            WHERE code = %s AND status = 'pending' AND expires_at > %s
            RETURNING {PAIRING_COLUMNS}
            """,
            (issuer_ref, now, normalized, now),
        )
        if row is not None:
            return _pairing_from_row(row)

        existing = self.find_pairing_by_code(normalized)
        if existing is not None and existing.status == PairingStatus.CONNECTED:
            raise PairingCodeUsedError(normalized)
        raise PairingCodeInvalidError(normalized)

    def find_connected_pairing(self, issuer_ref: str) -> Pairing | None:
        row = self._fetch_one(
            f"""
            SELECT {PAIRING_COLUMNS} FROM relay_pairings
            WHERE issuer_ref = %s AND status = 'connected'
            ORDER BY connected_at DESC
            LIMIT 1
            """,
            (issuer_ref,),
        )
        return _pairing_from_row(row) if row is not None else None

    def disconnect_pairing(self, pairing_id: str) -> Pairing | None:
        row = self._fetch_one(
            f"""
            UPDATE relay_pairings SET status = 'expired'
            WHERE id = %s
            RETURNING {PAIRING_COLUMNS}
            """,
            (pairing_id,),
        )
        return _pairing_from_row(row) if row is not None else None

    def create_record(self, record: RelayRecord) -> RelayRecord:
        self._fetch_one(
            f"""
            INSERT INTO relay_records ({RECORD_COLUMNS})
            VALUES (%s, %s, %s, %s, %s::jsonb, %s, NULL, NULL, %s, NULL, %s)
            RETURNING id
            """,
            (
                record.id,
                record.pairing_id,
                record.kind.value,
                record.issuer_ref,
                json.dumps(record.payload),
                record.status.value,
                record.created_at,
                record.expires_at,
            ),
        )
        return record

    def get_record(self, record_id: str) -> RelayRecord | None:
        row = self._fetch_one(f"SELECT {RECORD_COLUMNS} FROM relay_records WHERE id = %s", (record_id,))
        return _record_from_row(row) if row is not None else None

    def list_records(self, pairing_id: str, status: RecordStatus, limit: int = 5) -> list[RelayRecord]:
        rows = self._fetch_all(
            f"""
            SELECT {RECORD_COLUMNS} FROM relay_records
            WHERE pairing_id = %s AND status = %s
            ORDER BY created_at ASC
            LIMIT %s
            """,
            (pairing_id, status.value, limit),
        )
        return [_record_from_row(row) for row in rows]

    def transition_record(
        self,
        record_id: str,
        status: RecordStatus,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> RelayRecord | None:
        allowed_from = [source.value for source in sources_for(status)]
        if not allowed_from:
            return None
        row = self._fetch_one(
            f"""
            UPDATE relay_records
            SET status = %s,
                result = COALESCE(%s::jsonb, result),
                error = COALESCE(%s, error),
                processed_at = %s
            WHERE id = %s AND status = ANY(%s)
            RETURNING {RECORD_COLUMNS}
            """,
            (
                status.value,
                json.dumps(result) if result is not None else None,
                error,
                utc_now(),
                record_id,
                allowed_from,
            ),
        )
        return _record_from_row(row) if row is not None else None

    def create_turn_event(self, event: TurnEvent) -> TurnEvent:
        self._fetch_one(
            f"""
            INSERT INTO relay_turn_events ({TURN_EVENT_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s, NULL)
            RETURNING id
            """,
            (
                event.id,
                event.pairing_id,
                event.event_type.value,
                event.combatant_name,
                event.round,
                json.dumps(
                    {
                        "action": event.action_flags.action,
                        "bonus": event.action_flags.bonus,
                        "movement": event.action_flags.movement,
                        "reaction": event.action_flags.reaction,
                    }
                ),
                event.status.value,
                event.created_at,
                event.expires_at,
            ),
        )
        return event

    def list_turn_events(
        self,
        status: TurnEventStatus,
        pairing_id: str | None = None,
        limit: int = 10,
    ) -> list[TurnEvent]:
        if pairing_id is None:
            rows = self._fetch_all(
                f"""
                SELECT {TURN_EVENT_COLUMNS} FROM relay_turn_events
                WHERE status = %s
                ORDER BY created_at ASC
                LIMIT %s
                """,
                (status.value, limit),
            )
        else:
            rows = self._fetch_all(
                f"""
                SELECT {TURN_EVENT_COLUMNS} FROM relay_turn_events
                WHERE status = %s AND pairing_id = %s
                ORDER BY created_at ASC
                LIMIT %s
                """,
                (status.value, pairing_id, limit),
            )
        return [_turn_event_from_row(row) for row in rows]

    def mark_turn_event(self, event_id: str, status: TurnEventStatus) -> TurnEvent | None:
        row = self._fetch_one(
            f"""
            UPDATE relay_turn_events
            SET status = %s, posted_at = %s
            WHERE id = %s AND status = 'pending'
            RETURNING {TURN_EVENT_COLUMNS}
            """,
            (status.value, utc_now(), event_id),
        )
        return _turn_event_from_row(row) if row is not None else None

    def sweep_expired(self, now: datetime | None = None, retention: timedelta = DEFAULT_RETENTION) -> SweepReport:
        current = now or utc_now()
        cutoff = current - retention
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE relay_records
                    SET status = 'timeout', error = COALESCE(error, %s), processed_at = %s
                    WHERE status IN ('pending', 'processing') AND expires_at <= %s
                    """,
                    (EXPIRED_ERROR, current, current),
                )
                timed_out = cur.rowcount
                cur.execute(
                    """
                    UPDATE relay_pairings SET status = 'expired'
                    WHERE status = 'pending' AND expires_at <= %s
                    """,
                    (current,),
                )
                expired_pairings = cur.rowcount
                cur.execute(
                    """
                    UPDATE relay_turn_events SET status = 'expired'
                    WHERE status = 'pending' AND expires_at <= %s
                    """,
                    (current,),
                )
                expired_turn_events = cur.rowcount
                cur.execute(
                    """
                    DELETE FROM relay_records
                    WHERE status IN ('delivered', 'failed', 'timeout')
                      AND COALESCE(processed_at, created_at) < %s
                    """,
                    (cutoff,),
                )
                purged = cur.rowcount
                cur.execute(
                    """
                    DELETE FROM relay_turn_events
                    WHERE status <> 'pending' AND created_at < %s
                    """,
                    (cutoff,),
                )
                purged += cur.rowcount
            conn.commit()

        return SweepReport(
            timed_out=timed_out,
            expired_pairings=expired_pairings,
            expired_turn_events=expired_turn_events,
            purged=purged,
        )


def create_store(database_url: str | None) -> RelayStore:
    if database_url:
        return PostgresRelayStore(database_url=database_url)
    return InMemoryRelayStore()
