"""Periodic expiry sweep over the relay store."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from rollrelay.backend.models import SweepReport
from rollrelay.backend.store import DEFAULT_RETENTION, RelayStore


DEFAULT_SWEEP_INTERVAL_S = 30.0


class ExpirySweeper:
    """Runs ``sweep_expired`` on a fixed interval in a background task."""

    def __init__(
        self,
        store: RelayStore,
        *,
        interval_s: float = DEFAULT_SWEEP_INTERVAL_S,
        retention: timedelta = DEFAULT_RETENTION,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._interval_s = interval_s
        self._retention = retention
        self._logger = logger or logging.getLogger(__name__)
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> SweepReport:
        report = await asyncio.to_thread(self._store.sweep_expired, None, self._retention)
        if report.timed_out or report.expired_pairings or report.expired_turn_events or report.purged:
            self._logger.info(
                "sweep_completed",
                extra={
                    "timed_out": report.timed_out,
                    "expired_pairings": report.expired_pairings,
                    "expired_turn_events": report.expired_turn_events,
                    "purged": report.purged,
                },
            )
        return report

    async def run(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:  # noqa: BLE001 - a failed sweep is retried on the next tick.
                self._logger.exception("sweep_failed")
            await asyncio.sleep(self._interval_s)

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run(), name="relay-expiry-sweeper")
        self._logger.info("sweeper_started", extra={"interval_s": self._interval_s})

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

        self._logger.info("sweeper_stopped")
