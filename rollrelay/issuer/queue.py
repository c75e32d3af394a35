"""Issuer side of the relay: publish a record, then wait for its outcome."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from rollrelay.backend.models import Pairing, PairingStatus, RecordKind, RecordStatus, RelayRecord
from rollrelay.backend.state import build_record
from rollrelay.backend.store import RelayStore
from rollrelay.config import RelaySettings
from rollrelay.dice import normalize_mode, parse_formula, roll
from rollrelay.errors import ConfigurationError, NotPairedError, WatchTimeoutError
from rollrelay.issuer.client import HttpRelayStore
from rollrelay.subscription import polling_source, resolve_once


class Broadcaster(Protocol):
    async def publish(self, pairing_id: str, message: dict[str, Any]) -> None:
        """Send a best-effort hint to the agent listening on a pairing."""


class OutcomeSource(str, Enum):
    BRIDGE = "bridge"
    LOCAL_TIMEOUT = "local_timeout"


@dataclass(frozen=True)
class RollRequest:
    issuer_ref: str
    formula: str
    roll_name: str = "Roll"
    mode: str = "normal"
    character_name: str | None = None
    check_type: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "formula": self.formula,
            "roll_name": self.roll_name,
            "mode": normalize_mode(self.mode),
            "character_name": self.character_name,
            "check_type": self.check_type,
        }


@dataclass(frozen=True)
class ActionRequest:
    issuer_ref: str
    kind: RecordKind
    action_name: str
    payload: dict[str, Any] = field(default_factory=dict)
    character_name: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            **self.payload,
            "action_name": self.action_name,
            "character_name": self.character_name,
        }


@dataclass(frozen=True)
class RelayOutcome:
    record_id: str
    status: RecordStatus
    source: OutcomeSource
    result: dict[str, Any] | None = None
    error: str | None = None

    @property
    def authoritative(self) -> bool:
        """True when the tabletop itself produced the result."""
        return self.source == OutcomeSource.BRIDGE and self.status == RecordStatus.DELIVERED


def describe_outcome(outcome: RelayOutcome) -> str:
    if outcome.authoritative:
        return "Rolled in the tabletop"
    if outcome.status == RecordStatus.FAILED:
        return f"The tabletop could not run this: {outcome.error or 'unknown error'}"
    if outcome.result is not None:
        return "Rolled locally (tabletop unavailable)"
    return "The tabletop did not answer in time"


class RelayQueue:
    """Publishes relay records and waits, bounded, for a terminal status."""

    def __init__(
        self,
        store: RelayStore,
        *,
        broadcaster: Broadcaster | None = None,
        poll_interval_s: float = 1.0,
        default_timeout_s: float = 30.0,
        rng: random.Random | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._broadcaster = broadcaster
        self._poll_interval_s = poll_interval_s
        self._default_timeout_s = default_timeout_s
        self._rng = rng
        self._logger = logger or logging.getLogger(__name__)

    async def publish(self, record: RelayRecord) -> RelayRecord:
        """Durably insert the record, then hint the agent if a broadcaster is attached."""
        stored = await asyncio.to_thread(self._store.create_record, record)
        self._logger.info(
            "record_published",
            extra={"record_id": stored.id, "pairing_id": stored.pairing_id, "kind": stored.kind.value},
        )
        if self._broadcaster is not None:
            try:
                await self._broadcaster.publish(
                    stored.pairing_id,
                    {
                        "type": "record.created",
                        "record_id": stored.id,
                        "pairing_id": stored.pairing_id,
                        "kind": stored.kind.value,
                    },
                )
            except Exception as exc:  # noqa: BLE001 - the durable insert already succeeded.
                self._logger.warning("record_broadcast_failed", extra={"record_id": stored.id, "error": repr(exc)})
        return stored

    async def await_outcome(
        self,
        record_id: str,
        timeout_s: float | None = None,
        fallback_result: dict[str, Any] | None = None,
    ) -> RelayOutcome:
        timeout = self._default_timeout_s if timeout_s is None else timeout_s

        async def fetch_terminal() -> RelayRecord | None:
            record = await asyncio.to_thread(self._store.get_record, record_id)
            if record is not None and record.is_terminal:
                return record
            return None

        try:
            record = await resolve_once(
                polling_source(fetch_terminal, self._poll_interval_s, fatal=(ConfigurationError,)),
                timeout_s=timeout,
            )
        except WatchTimeoutError:
            return await self._expire(record_id, timeout, fallback_result)

        return self._from_record(record, fallback_result)

    async def _expire(
        self,
        record_id: str,
        timeout_s: float,
        fallback_result: dict[str, Any] | None,
    ) -> RelayOutcome:
        error = f"No answer from the tabletop within {timeout_s:g}s"
        try:
            updated = await asyncio.to_thread(
                self._store.transition_record, record_id, RecordStatus.TIMEOUT, None, error
            )
        except Exception as exc:  # noqa: BLE001 - the sweeper times the record out later.
            self._logger.warning("record_timeout_write_failed", extra={"record_id": record_id, "error": repr(exc)})
        else:
            if updated is None:
                current = await asyncio.to_thread(self._store.get_record, record_id)
                if current is not None and current.is_terminal:
                    self._logger.info(
                        "record_resolved_during_timeout",
                        extra={"record_id": record_id, "status": current.status.value},
                    )
                    return self._from_record(current, fallback_result)

        self._logger.info("record_timed_out", extra={"record_id": record_id, "timeout_s": timeout_s})
        return RelayOutcome(
            record_id=record_id,
            status=RecordStatus.TIMEOUT,
            source=OutcomeSource.LOCAL_TIMEOUT,
            result=fallback_result,
            error=error,
        )

    def _from_record(self, record: RelayRecord, fallback_result: dict[str, Any] | None) -> RelayOutcome:
        if record.status == RecordStatus.TIMEOUT:
            return RelayOutcome(
                record_id=record.id,
                status=record.status,
                source=OutcomeSource.LOCAL_TIMEOUT,
                result=fallback_result,
                error=record.error,
            )
        return RelayOutcome(
            record_id=record.id,
            status=record.status,
            source=OutcomeSource.BRIDGE,
            result=record.result,
            error=record.error,
        )

    async def relay_roll(self, pairing: Pairing, request: RollRequest) -> RelayOutcome:
        """Roll locally as a fallback, relay the roll and return the best outcome."""
        self._require_connected(pairing, request.issuer_ref)
        formula = parse_formula(request.formula)
        fallback = roll(formula, mode=request.mode, rng=self._rng)
        record = build_record(
            pairing_id=pairing.id,
            kind=RecordKind.ROLL,
            issuer_ref=request.issuer_ref,
            payload=request.to_payload(),
        )
        await self.publish(record)
        return await self.await_outcome(record.id, fallback_result=fallback.to_dict())

    async def relay_action(self, pairing: Pairing, request: ActionRequest) -> RelayOutcome:
        if request.kind == RecordKind.ROLL:
            raise ValueError("Use relay_roll for roll records")
        self._require_connected(pairing, request.issuer_ref)
        record = build_record(
            pairing_id=pairing.id,
            kind=request.kind,
            issuer_ref=request.issuer_ref,
            payload=request.to_payload(),
        )
        await self.publish(record)
        return await self.await_outcome(record.id)

    async def resolve_pairing(self, issuer_ref: str) -> Pairing:
        pairing = await asyncio.to_thread(self._store.find_connected_pairing, issuer_ref)
        if pairing is None:
            raise NotPairedError(issuer_ref)
        return pairing

    async def connect(self, code: str, issuer_ref: str) -> Pairing:
        pairing = await asyncio.to_thread(self._store.connect_pairing, code, issuer_ref)
        self._logger.info("pairing_connected", extra={"pairing_id": pairing.id, "issuer_ref": issuer_ref})
        return pairing

    @staticmethod
    def _require_connected(pairing: Pairing, issuer_ref: str) -> None:
        if pairing.status != PairingStatus.CONNECTED:
            raise NotPairedError(issuer_ref)


def create_relay_queue(settings: RelaySettings, broadcaster: Broadcaster | None = None) -> RelayQueue:
    """Build a queue over the configured relay service; fail fast when none is set."""
    if not settings.store_url:
        raise ConfigurationError()
    store = HttpRelayStore(base_url=settings.store_url, service_key=settings.service_key)
    return RelayQueue(
        store,
        broadcaster=broadcaster,
        poll_interval_s=settings.poll_interval_s,
        default_timeout_s=settings.outcome_timeout_s,
    )
