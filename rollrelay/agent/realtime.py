"""Websocket wake-ups for the bridge agent.

Broadcasts only shorten the wait before the next claim; the claim loop polls
regardless, so a dropped connection costs latency and nothing else.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable
from urllib.parse import quote, urlsplit, urlunsplit

import websockets
import websockets.exceptions


RECORD_CREATED = "record.created"


def build_pairing_ws_url(base_url: str, pairing_id: str, service_key: str | None = None) -> str:
    """Turn the relay's http(s) base URL into the pairing's ws(s) topic URL."""
    parts = urlsplit(base_url.rstrip("/"))
    scheme = {"https": "wss", "http": "ws"}.get(parts.scheme, parts.scheme)
    path = f"{parts.path}/ws/pairings/{quote(pairing_id, safe='')}"
    query = f"key={quote(service_key, safe='')}" if service_key else ""
    return urlunsplit((scheme, parts.netloc, path, query, ""))


class RealtimeListener:
    def __init__(
        self,
        url: str,
        on_record: Callable[[dict[str, Any]], None],
        *,
        initial_delay_s: float = 1.0,
        max_delay_s: float = 60.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self._url = url
        self._on_record = on_record
        self._initial_delay_s = initial_delay_s
        self._max_delay_s = max_delay_s
        self._reconnect_delay_s = initial_delay_s
        self._logger = logger or logging.getLogger(__name__)
        self._task: asyncio.Task[None] | None = None

    @property
    def reconnect_delay_s(self) -> float:
        return self._reconnect_delay_s

    def handle_message(self, raw: str | bytes) -> bool:
        """Dispatch one websocket frame; return True when it announced a new record."""
        try:
            message = json.loads(raw)
        except ValueError:
            self._logger.warning("realtime_message_invalid", extra={"size": len(raw)})
            return False
        if not isinstance(message, dict) or message.get("type") != RECORD_CREATED:
            return False
        self._on_record(message)
        return True

    def next_delay(self) -> float:
        """Return the current backoff delay and double it for the next attempt."""
        delay = self._reconnect_delay_s
        self._reconnect_delay_s = min(self._reconnect_delay_s * 2, self._max_delay_s)
        return delay

    async def _listen_once(self) -> None:
        async with websockets.connect(self._url) as websocket:
            self._reconnect_delay_s = self._initial_delay_s
            self._logger.info("realtime_connected")
            async for raw in websocket:
                self.handle_message(raw)

    async def run(self) -> None:
        while True:
            try:
                await self._listen_once()
                error = "connection closed"
            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as exc:
                error = repr(exc)
            delay = self.next_delay()
            self._logger.warning("realtime_disconnected", extra={"error": error, "retry_in_s": delay})
            await asyncio.sleep(delay)

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self.run(), name="realtime-listener")

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
