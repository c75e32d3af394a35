"""HTTP client implementing ``RelayStore`` against the relay service."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

import httpx

from rollrelay.backend.models import (
    Pairing,
    RecordStatus,
    RelayRecord,
    SweepReport,
    TurnEvent,
    TurnEventStatus,
    pairing_from_dict,
    record_from_dict,
    record_to_dict,
    turn_event_from_dict,
    turn_event_to_dict,
)
from rollrelay.backend.security import SERVICE_KEY_HEADER, normalize_pairing_code
from rollrelay.backend.store import DEFAULT_RETENTION
from rollrelay.errors import (
    ConfigurationError,
    PairingCodeInvalidError,
    PairingCodeUsedError,
    RelayError,
    StoreUnauthorizedError,
    StoreUnavailableError,
    TransientTransportError,
)


logger = logging.getLogger(__name__)


@dataclass
class HttpRelayStore:
    """Blocking store client; async callers reach it through ``asyncio.to_thread``.

    Connection errors, timeouts and 5xx answers are retried with exponential
    backoff (``backoff_s * 2 ** (attempt - 1)``) up to ``max_attempts``.
    """

    base_url: str
    service_key: str | None = None
    client: httpx.Client | None = None
    max_attempts: int = 3
    backoff_s: float = 0.5
    timeout_s: float = 10.0
    sleep: Callable[[float], None] = time.sleep

    def __post_init__(self) -> None:
        if not self.base_url:
            raise ConfigurationError()
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.client is None:
            self.client = httpx.Client(base_url=self.base_url.rstrip("/"), timeout=self.timeout_s)

    def close(self) -> None:
        if self.client is not None:
            self.client.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        headers = {SERVICE_KEY_HEADER: self.service_key} if self.service_key else {}
        last_error: TransientTransportError | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = self.client.request(method, path, json=json, params=params, headers=headers)
            except httpx.TransportError as exc:
                last_error = TransientTransportError(f"{method} {path} failed: {exc}")
            else:
                if response.status_code in (401, 403):
                    raise StoreUnauthorizedError("The relay store rejected the configured service key.")
                if response.status_code < 500:
                    return response
                last_error = TransientTransportError(f"{method} {path} answered {response.status_code}")

            logger.warning(
                "store_request_failed",
                extra={"method": method, "path": path, "attempt": attempt, "error": str(last_error)},
            )
            if attempt < self.max_attempts:
                self.sleep(self.backoff_s * 2 ** (attempt - 1))

        raise StoreUnavailableError(
            f"The relay store did not answer after {self.max_attempts} attempts."
        ) from last_error

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        if response.status_code >= 400:
            raise RelayError(f"Relay store answered {response.status_code}: {response.text}")
        return response.json()

    def create_pairing(self, agent_ref: str) -> Pairing:
        response = self._request("POST", "/api/pairings", json={"agent_ref": agent_ref})
        return pairing_from_dict(self._json(response)["pairing"])

    def get_pairing(self, pairing_id: str) -> Pairing | None:
        response = self._request("GET", f"/api/pairings/{pairing_id}")
        if response.status_code == 404:
            return None
        return pairing_from_dict(self._json(response)["pairing"])

    def find_pairing_by_code(self, code: str) -> Pairing | None:
        response = self._request("GET", f"/api/pairings/by-code/{normalize_pairing_code(code)}")
        if response.status_code == 404:
            return None
        return pairing_from_dict(self._json(response)["pairing"])

    def connect_pairing(self, code: str, issuer_ref: str) -> Pairing:
        response = self._request(
            "POST",
            "/api/pairings/connect",
            json={"code": code, "issuer_ref": issuer_ref},
        )
        if response.status_code == 404:
            raise PairingCodeInvalidError(normalize_pairing_code(code))
        if response.status_code == 409:
            raise PairingCodeUsedError(normalize_pairing_code(code))
        return pairing_from_dict(self._json(response)["pairing"])

    def find_connected_pairing(self, issuer_ref: str) -> Pairing | None:
        response = self._request("GET", "/api/pairings", params={"issuer_ref": issuer_ref})
        if response.status_code == 404:
            return None
        return pairing_from_dict(self._json(response)["pairing"])

    def disconnect_pairing(self, pairing_id: str) -> Pairing | None:
        response = self._request("POST", f"/api/pairings/{pairing_id}/disconnect")
        if response.status_code == 404:
            return None
        return pairing_from_dict(self._json(response)["pairing"])

    def create_record(self, record: RelayRecord) -> RelayRecord:
        response = self._request("POST", "/api/records", json={"record": record_to_dict(record)})
        return record_from_dict(self._json(response)["record"])

    def get_record(self, record_id: str) -> RelayRecord | None:
        response = self._request("GET", f"/api/records/{record_id}")
        if response.status_code == 404:
            return None
        return record_from_dict(self._json(response)["record"])

    def list_records(self, pairing_id: str, status: RecordStatus, limit: int = 5) -> list[RelayRecord]:
        response = self._request(
            "GET",
            "/api/records",
            params={"pairing_id": pairing_id, "status": status.value, "limit": limit},
        )
        return [record_from_dict(item) for item in self._json(response)["records"]]

    def transition_record(
        self,
        record_id: str,
        status: RecordStatus,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> RelayRecord | None:
        response = self._request(
            "PATCH",
            f"/api/records/{record_id}",
            json={"status": status.value, "result": result, "error": error},
        )
        if response.status_code in (404, 409):
            return None
        return record_from_dict(self._json(response)["record"])

    def create_turn_event(self, event: TurnEvent) -> TurnEvent:
        response = self._request("POST", "/api/turns", json={"event": turn_event_to_dict(event)})
        return turn_event_from_dict(self._json(response)["event"])

    def list_turn_events(
        self,
        status: TurnEventStatus,
        pairing_id: str | None = None,
        limit: int = 10,
    ) -> list[TurnEvent]:
        params: dict[str, Any] = {"status": status.value, "limit": limit}
        if pairing_id is not None:
            params["pairing_id"] = pairing_id
        response = self._request("GET", "/api/turns", params=params)
        return [turn_event_from_dict(item) for item in self._json(response)["events"]]

    def mark_turn_event(self, event_id: str, status: TurnEventStatus) -> TurnEvent | None:
        response = self._request("PATCH", f"/api/turns/{event_id}", json={"status": status.value})
        if response.status_code in (404, 409):
            return None
        return turn_event_from_dict(self._json(response)["event"])

    def sweep_expired(self, now: datetime | None = None, retention: timedelta = DEFAULT_RETENTION) -> SweepReport:
        """Trigger one sweep on the service; it applies its own clock and retention."""
        data = self._json(self._request("POST", "/api/maintenance/sweep"))
        return SweepReport(
            timed_out=int(data["timed_out"]),
            expired_pairings=int(data["expired_pairings"]),
            expired_turn_events=int(data["expired_turn_events"]),
            purged=int(data["purged"]),
        )
