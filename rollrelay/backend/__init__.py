"""Relay store service: models, persistence and the HTTP/websocket surface."""

from .models import Pairing, RecordKind, RecordStatus, RelayRecord, SweepReport, TurnEvent
from .security import generate_pairing_code, verify_service_key
from .state import build_pairing, build_record, build_turn_event
from .store import InMemoryRelayStore, PostgresRelayStore, RelayStore, create_store

__all__ = [
    "build_pairing",
    "build_record",
    "build_turn_event",
    "create_store",
    "generate_pairing_code",
    "InMemoryRelayStore",
    "Pairing",
    "PostgresRelayStore",
    "RecordKind",
    "RecordStatus",
    "RelayRecord",
    "RelayStore",
    "SweepReport",
    "TurnEvent",
    "verify_service_key",
]
