"""Posts pending turn events from the relay store to the issuer's channel."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from rollrelay.backend.models import TurnEvent, TurnEventStatus
from rollrelay.backend.state import utc_now
from rollrelay.backend.store import RelayStore


Announce = Callable[[TurnEvent], Awaitable[None]]


class TurnFeed:
    def __init__(
        self,
        store: RelayStore,
        announce: Announce,
        *,
        pairing_id: str | None = None,
        poll_interval_s: float = 1.5,
        batch_size: int = 10,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._announce = announce
        self._pairing_id = pairing_id
        self._poll_interval_s = poll_interval_s
        self._batch_size = batch_size
        self._logger = logger or logging.getLogger(__name__)
        self._task: asyncio.Task[None] | None = None

    async def poll_once(self) -> int:
        """Handle one batch of pending events; return how many were posted."""
        events = await asyncio.to_thread(
            self._store.list_turn_events,
            TurnEventStatus.PENDING,
            self._pairing_id,
            self._batch_size,
        )
        posted = 0
        now = utc_now()
        for event in events:
            if event.expires_at <= now:
                await asyncio.to_thread(self._store.mark_turn_event, event.id, TurnEventStatus.EXPIRED)
                continue
            try:
                await self._announce(event)
            except Exception:  # noqa: BLE001 - one bad event must not stall the feed.
                self._logger.exception(
                    "turn_event_post_failed",
                    extra={"event_id": event.id, "event_type": event.event_type.value},
                )
                await asyncio.to_thread(self._store.mark_turn_event, event.id, TurnEventStatus.FAILED)
                continue
            await asyncio.to_thread(self._store.mark_turn_event, event.id, TurnEventStatus.POSTED)
            posted += 1
        return posted

    async def run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception:  # noqa: BLE001 - retried on the next tick.
                self._logger.exception("turn_feed_poll_failed")
            await asyncio.sleep(self._poll_interval_s)

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self.run(), name="turn-feed")
        self._logger.info("turn_feed_started", extra={"poll_interval_s": self._poll_interval_s})

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

        self._logger.info("turn_feed_stopped")
