"""Agent side of the relay: claim pending records, execute them, report the outcome."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any

from rollrelay.agent.tabletop import ChatEntry, ChatLog, DirectiveKind, ExecutionDirective, Tabletop
from rollrelay.backend.models import RecordKind, RecordStatus, RelayRecord
from rollrelay.backend.state import utc_now
from rollrelay.backend.store import RelayStore
from rollrelay.dice import normalize_mode, parse_formula, roll, same_formula, tabletop_formula
from rollrelay.errors import ExecutionError, FormulaError, WatchTimeoutError
from rollrelay.subscription import resolve_once


REST_TYPES = ("short", "long")


def _positive_amount(payload: dict[str, Any]) -> int:
    amount = payload.get("amount")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ExecutionError(f"Amount must be a positive whole number, got {amount!r}")
    return amount


def _actor(payload: dict[str, Any]) -> str:
    return str(payload.get("character_name") or "Someone")


def roll_tag(record_id: str) -> str:
    """Marker carried in a roll directive's text; its chat echo must repeat it."""
    return f"#{record_id[:8]}"


class ExecutionBridge:
    """Executes the relay records of one pairing against a tabletop.

    Every claimed record ends ``delivered`` or ``failed``; a failure in one
    record never stops the loop or leaves the record ``processing``.
    """

    def __init__(
        self,
        store: RelayStore,
        pairing_id: str,
        *,
        tabletop: Tabletop | None = None,
        chat_log: ChatLog | None = None,
        local_rolls: bool = False,
        poll_interval_s: float = 2.0,
        batch_size: int = 5,
        watch_timeout_s: float = 5.0,
        rng: random.Random | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._pairing_id = pairing_id
        self._tabletop = tabletop
        self._chat_log = chat_log
        self._local_rolls = local_rolls
        self._poll_interval_s = poll_interval_s
        self._batch_size = batch_size
        self._watch_timeout_s = watch_timeout_s
        self._rng = rng
        self._logger = logger or logging.getLogger(__name__)
        self._wake = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def pairing_id(self) -> str:
        return self._pairing_id

    async def claim_next(self) -> RelayRecord | None:
        records = await asyncio.to_thread(
            self._store.list_records, self._pairing_id, RecordStatus.PENDING, self._batch_size
        )
        now = utc_now()
        for record in records:
            if record.is_expired(now):
                self._logger.info("record_skipped_expired", extra={"record_id": record.id})
                continue
            claimed = await asyncio.to_thread(self._store.transition_record, record.id, RecordStatus.PROCESSING)
            if claimed is not None:
                self._logger.info("record_claimed", extra={"record_id": claimed.id, "kind": claimed.kind.value})
                return claimed
        return None

    async def mark_delivered(self, record_id: str, result: dict[str, Any]) -> RelayRecord | None:
        updated = await asyncio.to_thread(
            self._store.transition_record, record_id, RecordStatus.DELIVERED, result, None
        )
        if updated is None:
            self._logger.warning("record_delivery_rejected", extra={"record_id": record_id})
        return updated

    async def mark_failed(self, record_id: str, error: str) -> RelayRecord | None:
        updated = await asyncio.to_thread(self._store.transition_record, record_id, RecordStatus.FAILED, None, error)
        if updated is None:
            self._logger.warning("record_failure_rejected", extra={"record_id": record_id})
        return updated

    async def execute(self, record: RelayRecord) -> dict[str, Any]:
        if self._tabletop is None:
            raise ExecutionError("No tabletop is attached to the bridge agent")

        payload = record.payload
        if record.kind == RecordKind.ROLL:
            if self._local_rolls:
                return await self._execute_local_roll(record)
            return await self._execute_observed_roll(record)
        if record.kind in (RecordKind.ACTION, RecordKind.USE):
            action_name = payload.get("action_name")
            if not action_name:
                raise ExecutionError("Action records need an action_name")
            await self._apply(record, DirectiveKind.ACTION, f"{_actor(payload)} uses {action_name}")
            return {"action_name": action_name, "applied": True}
        if record.kind == RecordKind.HEAL:
            amount = _positive_amount(payload)
            await self._apply(record, DirectiveKind.HEAL, f"{_actor(payload)} heals {amount} HP")
            return {"amount": amount, "applied": True}
        if record.kind == RecordKind.DAMAGE:
            amount = _positive_amount(payload)
            await self._apply(record, DirectiveKind.DAMAGE, f"{_actor(payload)} takes {amount} damage")
            return {"amount": amount, "applied": True}
        if record.kind == RecordKind.REST:
            rest_type = str(payload.get("rest_type") or "").lower()
            if rest_type not in REST_TYPES:
                raise ExecutionError(f"Rest type must be short or long, got {payload.get('rest_type')!r}")
            await self._apply(record, DirectiveKind.REST, f"{_actor(payload)} takes a {rest_type} rest")
            return {"rest_type": rest_type, "applied": True}
        raise ExecutionError(f"Unsupported record kind: {record.kind.value}")

    async def _apply(self, record: RelayRecord, kind: DirectiveKind, text: str) -> None:
        await self._tabletop.apply(ExecutionDirective(kind=kind, text=text, data=dict(record.payload), record_id=record.id))

    async def _execute_observed_roll(self, record: RelayRecord) -> dict[str, Any]:
        if self._chat_log is None:
            raise ExecutionError("No chat log is attached; cannot observe the roll")
        payload = record.payload
        mode = normalize_mode(payload.get("mode"))
        expected = tabletop_formula(str(payload.get("formula", "")), mode)
        roll_name = payload.get("roll_name") or "Roll"
        tag = roll_tag(record.id)
        directive = ExecutionDirective(
            kind=DirectiveKind.ROLL,
            text=f"{roll_name} {tag}: [[{expected}]]",
            data={**payload, "formula": expected},
            record_id=record.id,
        )

        def matches(entry: ChatEntry) -> bool:
            if tag not in entry.text:
                return False
            return any(same_formula(inline.formula, expected) for inline in entry.inline_rolls)

        async def submit() -> None:
            await self._tabletop.apply(directive)

        try:
            entry = await resolve_once(
                self._chat_log.subscribe,
                timeout_s=self._watch_timeout_s,
                accept=matches,
                trigger=submit,
            )
        except WatchTimeoutError as exc:
            raise ExecutionError(f"The tabletop did not show the roll within {self._watch_timeout_s:g}s") from exc

        inline = next(inline for inline in entry.inline_rolls if same_formula(inline.formula, expected))
        return {
            "formula": inline.formula,
            "total": inline.total,
            "rolls": list(inline.rolls),
            "roll_name": roll_name,
            "mode": mode,
            "source": "tabletop",
        }

    async def _execute_local_roll(self, record: RelayRecord) -> dict[str, Any]:
        payload = record.payload
        result = roll(parse_formula(str(payload.get("formula", ""))), mode=payload.get("mode"), rng=self._rng)
        roll_name = payload.get("roll_name") or "Roll"
        await self._apply(
            record,
            DirectiveKind.CHAT,
            f"{roll_name}: {result.formula} {result.kept} = {result.total}",
        )
        return {**result.to_dict(), "roll_name": roll_name, "source": "local"}

    async def process(self, record: RelayRecord) -> RelayRecord | None:
        try:
            result = await self.execute(record)
        except (ExecutionError, FormulaError) as exc:
            self._logger.warning("record_failed", extra={"record_id": record.id, "error": str(exc)})
            return await self.mark_failed(record.id, str(exc))
        except Exception as exc:  # noqa: BLE001 - any tabletop failure becomes a failed record.
            self._logger.exception("record_execution_crashed", extra={"record_id": record.id})
            return await self.mark_failed(record.id, f"{type(exc).__name__}: {exc}")

        self._logger.info("record_delivered", extra={"record_id": record.id, "kind": record.kind.value})
        return await self.mark_delivered(record.id, result)

    async def process_pending(self) -> int:
        """Claim everything claimable and run each record in its own task."""
        tasks: list[asyncio.Task[RelayRecord | None]] = []
        while True:
            record = await self.claim_next()
            if record is None:
                break
            tasks.append(asyncio.create_task(self.process(record), name=f"relay-record-{record.id}"))

        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                self._logger.error("record_report_failed", extra={"error": repr(outcome)})
        return len(tasks)

    def wake(self) -> None:
        """Skip the rest of the current poll wait; used for broadcast hints."""
        self._wake.set()

    async def run(self) -> None:
        while True:
            self._wake.clear()
            try:
                await self.process_pending()
            except Exception:  # noqa: BLE001 - the next poll retries.
                self._logger.exception("bridge_poll_failed", extra={"pairing_id": self._pairing_id})
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._poll_interval_s)
            except asyncio.TimeoutError:
                pass

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self.run(), name="execution-bridge")
        self._logger.info("bridge_started", extra={"pairing_id": self._pairing_id})

    async def stop(self) -> None:
        if not self._task:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

        self._logger.info("bridge_stopped", extra={"pairing_id": self._pairing_id})
