"""FastAPI endpoints for pairings, relay records, turn events and websocket wake-ups."""

from __future__ import annotations

import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from rollrelay.backend.models import (
    RecordStatus,
    TurnEventStatus,
    pairing_to_dict,
    record_from_dict,
    record_to_dict,
    turn_event_from_dict,
    turn_event_to_dict,
)
from rollrelay.backend.security import SERVICE_KEY_HEADER, verify_service_key
from rollrelay.backend.store import DEFAULT_RETENTION, RelayStore, create_store
from rollrelay.backend.sweeper import ExpirySweeper
from rollrelay.config import load_settings
from rollrelay.errors import PairingCodeInvalidError, PairingCodeUsedError


logger = logging.getLogger(__name__)


class CreatePairingRequest(BaseModel):
    agent_ref: str = Field(min_length=1, max_length=200)


class ConnectPairingRequest(BaseModel):
    code: str = Field(min_length=1, max_length=16)
    issuer_ref: str = Field(min_length=1, max_length=200)


class PairingResponse(BaseModel):
    pairing: dict[str, Any]


class RecordEnvelope(BaseModel):
    record: dict[str, Any]


class RecordResponse(BaseModel):
    record: dict[str, Any]


class RecordListResponse(BaseModel):
    records: list[dict[str, Any]]


class RecordTransitionRequest(BaseModel):
    status: RecordStatus
    result: dict[str, Any] | None = None
    error: str | None = Field(default=None, max_length=2000)


class TurnEventEnvelope(BaseModel):
    event: dict[str, Any]


class TurnEventResponse(BaseModel):
    event: dict[str, Any]


class TurnEventListResponse(BaseModel):
    events: list[dict[str, Any]]


class TurnEventMarkRequest(BaseModel):
    status: TurnEventStatus


class SweepResponse(BaseModel):
    timed_out: int
    expired_pairings: int
    expired_turn_events: int
    purged: int


class RelayBroadcastHub:
    """Per-pairing websocket fan-out; a hint channel, never the source of truth."""

    def __init__(self) -> None:
        self._connections: dict[str, set[WebSocket]] = defaultdict(set)

    async def connect(self, pairing_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections[pairing_id].add(websocket)

    def disconnect(self, pairing_id: str, websocket: WebSocket) -> None:
        connections = self._connections.get(pairing_id)
        if connections is None:
            return
        connections.discard(websocket)
        if not connections:
            self._connections.pop(pairing_id, None)

    def connection_count(self, pairing_id: str) -> int:
        return len(self._connections.get(pairing_id, set()))

    async def publish(self, pairing_id: str, message: dict[str, Any]) -> None:
        stale_connections: list[WebSocket] = []
        for websocket in list(self._connections.get(pairing_id, set())):
            try:
                await websocket.send_json(message)
            except RuntimeError:
                stale_connections.append(websocket)
        for websocket in stale_connections:
            self.disconnect(pairing_id=pairing_id, websocket=websocket)


def create_app(
    store: RelayStore | None = None,
    service_key: str | None = None,
    sweep_interval_s: float = 0,
    retention: timedelta = DEFAULT_RETENTION,
) -> FastAPI:
    relay_store = store if store is not None else create_store(None)
    broadcast_hub = RelayBroadcastHub()
    sweeper = ExpirySweeper(relay_store, interval_s=sweep_interval_s or 30.0, retention=retention)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if sweep_interval_s > 0:
            await sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()

    app = FastAPI(title="Roll Relay API", version="0.3.0", lifespan=lifespan)
    app.state.broadcast_hub = broadcast_hub
    app.state.sweeper = sweeper

    def get_store() -> RelayStore:
        return relay_store

    def require_service_key(provided: str | None = Header(default=None, alias=SERVICE_KEY_HEADER)) -> None:
        if not verify_service_key(provided, service_key):
            raise HTTPException(status_code=401, detail="Invalid relay service key")

    router = APIRouter(prefix="/api", dependencies=[Depends(require_service_key)])

    @router.post("/pairings", response_model=PairingResponse)
    def create_pairing(
        payload: CreatePairingRequest,
        local_store: RelayStore = Depends(get_store),
    ) -> PairingResponse:
        pairing = local_store.create_pairing(agent_ref=payload.agent_ref)
        logger.info("pairing_created", extra={"pairing_id": pairing.id, "agent_ref": pairing.agent_ref})
        return PairingResponse(pairing=pairing_to_dict(pairing))

    @router.post("/pairings/connect", response_model=PairingResponse)
    def connect_pairing(
        payload: ConnectPairingRequest,
        local_store: RelayStore = Depends(get_store),
    ) -> PairingResponse:
        try:
            pairing = local_store.connect_pairing(code=payload.code, issuer_ref=payload.issuer_ref)
        except PairingCodeInvalidError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except PairingCodeUsedError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        logger.info("pairing_connected", extra={"pairing_id": pairing.id, "issuer_ref": pairing.issuer_ref})
        return PairingResponse(pairing=pairing_to_dict(pairing))

    @router.get("/pairings", response_model=PairingResponse)
    def find_connected_pairing(
        issuer_ref: str = Query(min_length=1),
        local_store: RelayStore = Depends(get_store),
    ) -> PairingResponse:
        pairing = local_store.find_connected_pairing(issuer_ref=issuer_ref)
        if pairing is None:
            raise HTTPException(status_code=404, detail="No connected pairing for issuer")
        return PairingResponse(pairing=pairing_to_dict(pairing))

    @router.get("/pairings/by-code/{code}", response_model=PairingResponse)
    def find_pairing_by_code(
        code: str,
        local_store: RelayStore = Depends(get_store),
    ) -> PairingResponse:
        pairing = local_store.find_pairing_by_code(code=code)
        if pairing is None:
            raise HTTPException(status_code=404, detail="Pairing code not found")
        return PairingResponse(pairing=pairing_to_dict(pairing))

    @router.get("/pairings/{pairing_id}", response_model=PairingResponse)
    def get_pairing(
        pairing_id: str,
        local_store: RelayStore = Depends(get_store),
    ) -> PairingResponse:
        pairing = local_store.get_pairing(pairing_id=pairing_id)
        if pairing is None:
            raise HTTPException(status_code=404, detail="Pairing not found")
        return PairingResponse(pairing=pairing_to_dict(pairing))

    @router.post("/pairings/{pairing_id}/disconnect", response_model=PairingResponse)
    def disconnect_pairing(
        pairing_id: str,
        local_store: RelayStore = Depends(get_store),
    ) -> PairingResponse:
        pairing = local_store.disconnect_pairing(pairing_id=pairing_id)
        if pairing is None:
            raise HTTPException(status_code=404, detail="Pairing not found")
        logger.info("pairing_disconnected", extra={"pairing_id": pairing_id})
        return PairingResponse(pairing=pairing_to_dict(pairing))

    @router.post("/records", response_model=RecordResponse)
    async def create_record(
        payload: RecordEnvelope,
        local_store: RelayStore = Depends(get_store),
    ) -> RecordResponse:
        try:
            record = record_from_dict(payload.record)
        except (KeyError, TypeError, ValueError) as exc:
            raise HTTPException(status_code=422, detail=f"Malformed record: {exc}") from exc
        if record.status != RecordStatus.PENDING:
            raise HTTPException(status_code=422, detail="New records must be pending")
        if local_store.get_pairing(pairing_id=record.pairing_id) is None:
            raise HTTPException(status_code=404, detail="Pairing not found")

        stored = local_store.create_record(record)
        await broadcast_hub.publish(
            pairing_id=stored.pairing_id,
            message={
                "type": "record.created",
                "record_id": stored.id,
                "pairing_id": stored.pairing_id,
                "kind": stored.kind.value,
            },
        )
        return RecordResponse(record=record_to_dict(stored))

    @router.get("/records", response_model=RecordListResponse)
    def list_records(
        pairing_id: str = Query(min_length=1),
        status: RecordStatus = Query(default=RecordStatus.PENDING),
        limit: int = Query(default=5, ge=1, le=100),
        local_store: RelayStore = Depends(get_store),
    ) -> RecordListResponse:
        records = local_store.list_records(pairing_id=pairing_id, status=status, limit=limit)
        return RecordListResponse(records=[record_to_dict(record) for record in records])

    @router.get("/records/{record_id}", response_model=RecordResponse)
    def get_record(
        record_id: str,
        local_store: RelayStore = Depends(get_store),
    ) -> RecordResponse:
        record = local_store.get_record(record_id=record_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Record not found")
        return RecordResponse(record=record_to_dict(record))

    @router.patch("/records/{record_id}", response_model=RecordResponse)
    def transition_record(
        record_id: str,
        payload: RecordTransitionRequest,
        local_store: RelayStore = Depends(get_store),
    ) -> RecordResponse:
        record = local_store.transition_record(
            record_id=record_id,
            status=payload.status,
            result=payload.result,
            error=payload.error,
        )
        if record is None:
            raise HTTPException(status_code=409, detail="Transition rejected")
        return RecordResponse(record=record_to_dict(record))

    @router.post("/turns", response_model=TurnEventResponse)
    async def create_turn_event(
        payload: TurnEventEnvelope,
        local_store: RelayStore = Depends(get_store),
    ) -> TurnEventResponse:
        try:
            event = turn_event_from_dict(payload.event)
        except (KeyError, TypeError, ValueError) as exc:
            raise HTTPException(status_code=422, detail=f"Malformed turn event: {exc}") from exc

        stored = local_store.create_turn_event(event)
        event_data = turn_event_to_dict(stored)
        await broadcast_hub.publish(
            pairing_id=stored.pairing_id,
            message={"type": "turn.created", "event": event_data},
        )
        return TurnEventResponse(event=event_data)

    @router.get("/turns", response_model=TurnEventListResponse)
    def list_turn_events(
        status: TurnEventStatus = Query(default=TurnEventStatus.PENDING),
        pairing_id: str | None = Query(default=None),
        limit: int = Query(default=10, ge=1, le=100),
        local_store: RelayStore = Depends(get_store),
    ) -> TurnEventListResponse:
        events = local_store.list_turn_events(status=status, pairing_id=pairing_id, limit=limit)
        return TurnEventListResponse(events=[turn_event_to_dict(event) for event in events])

    @router.patch("/turns/{event_id}", response_model=TurnEventResponse)
    def mark_turn_event(
        event_id: str,
        payload: TurnEventMarkRequest,
        local_store: RelayStore = Depends(get_store),
    ) -> TurnEventResponse:
        if payload.status == TurnEventStatus.PENDING:
            raise HTTPException(status_code=422, detail="Turn events cannot be reset to pending")
        event = local_store.mark_turn_event(event_id=event_id, status=payload.status)
        if event is None:
            raise HTTPException(status_code=409, detail="Turn event already resolved")
        return TurnEventResponse(event=turn_event_to_dict(event))

    @router.post("/maintenance/sweep", response_model=SweepResponse)
    async def sweep() -> SweepResponse:
        report = await sweeper.run_once()
        return SweepResponse(
            timed_out=report.timed_out,
            expired_pairings=report.expired_pairings,
            expired_turn_events=report.expired_turn_events,
            purged=report.purged,
        )

    app.include_router(router)

    @app.websocket("/ws/pairings/{pairing_id}")
    async def pairing_ws(
        websocket: WebSocket,
        pairing_id: str,
        local_store: RelayStore = Depends(get_store),
    ) -> None:
        if not verify_service_key(websocket.query_params.get("key"), service_key):
            await websocket.close(code=1008)
            return
        pairing = local_store.get_pairing(pairing_id=pairing_id)
        if pairing is None:
            await websocket.close(code=1008)
            return

        await broadcast_hub.connect(pairing_id=pairing_id, websocket=websocket)
        await websocket.send_json({"type": "pairing.state", "pairing": pairing_to_dict(pairing)})

        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            broadcast_hub.disconnect(pairing_id=pairing_id, websocket=websocket)

    return app


def create_app_from_settings() -> FastAPI:
    settings = load_settings()
    return create_app(
        store=create_store(settings.database_url),
        service_key=settings.service_key,
        sweep_interval_s=settings.sweep_interval_s,
        retention=timedelta(seconds=settings.retention_s),
    )


app = create_app_from_settings()
